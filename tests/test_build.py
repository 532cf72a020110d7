import dataclasses
from pathlib import Path

import pytest

from wasmtrunk.build import BuildSystem
from wasmtrunk.common import TrunkError
from wasmtrunk.config.rt import RtcBuild


def make_cfg(root: Path, html: str = "<html><head></head><body></body></html>") -> RtcBuild:
    root = root.resolve()
    target = root / "index.html"
    target.write_text(html, encoding="utf-8")
    dist = root / "dist"
    dist.mkdir()
    return RtcBuild(
        target=target,
        target_parent=root,
        release=False,
        public_url="/",
        final_dist=dist,
        staging_dist=dist / ".stage",
    )


def test_prepare_staging_dist_empties_stage(tmp_path):
    cfg = make_cfg(tmp_path)
    cfg.staging_dist.mkdir()
    (cfg.staging_dist / "old.txt").write_text("old")
    BuildSystem(cfg).prepare_staging_dist()
    assert cfg.staging_dist.is_dir()
    assert list(cfg.staging_dist.iterdir()) == []


def test_clean_final_keeps_only_stage(tmp_path):
    cfg = make_cfg(tmp_path)
    cfg.staging_dist.mkdir()
    (cfg.final_dist / "file.txt").write_text("x")
    (cfg.final_dist / "sub").mkdir()
    (cfg.final_dist / "sub" / "inner.txt").write_text("y")
    BuildSystem(cfg).clean_final()
    assert [p.name for p in cfg.final_dist.iterdir()] == [cfg.staging_dist.name]


def test_move_stage_to_final(tmp_path):
    cfg = make_cfg(tmp_path)
    cfg.staging_dist.mkdir()
    (cfg.staging_dist / "a.txt").write_text("a")
    (cfg.staging_dist / "sub").mkdir()
    (cfg.staging_dist / "sub" / "b.txt").write_text("b")
    BuildSystem(cfg).move_stage_to_final()
    assert (cfg.final_dist / "a.txt").read_text() == "a"
    assert (cfg.final_dist / "sub" / "b.txt").read_text() == "b"
    assert list(cfg.staging_dist.iterdir()) == []


def test_finalize_dist_replaces_contents(tmp_path):
    cfg = make_cfg(tmp_path)
    cfg.staging_dist.mkdir()
    (cfg.final_dist / "stale.txt").write_text("stale")
    (cfg.staging_dist / "index.html").write_text("<html></html>")
    BuildSystem(cfg).finalize_dist()
    assert sorted(p.name for p in cfg.final_dist.iterdir()) == ["index.html"]
    assert not cfg.staging_dist.exists()


def test_build_failure_leaves_final_dist_untouched(tmp_path):
    html = '<html><head><link data-trunk rel="rust"/><link data-trunk rel="rust"/></head></html>'
    cfg = make_cfg(tmp_path, html)
    (cfg.final_dist / "keep.txt").write_text("keep")
    with pytest.raises(TrunkError, match="error from HTML pipeline") as info:
        BuildSystem(cfg).build()
    assert "only one" in str(info.value.__cause__)
    assert (cfg.final_dist / "keep.txt").read_text() == "keep"


def test_missing_target_is_an_error(tmp_path):
    cfg = dataclasses.replace(make_cfg(tmp_path), target=tmp_path / "nope.html")
    with pytest.raises(TrunkError, match="canonical path"):
        BuildSystem(cfg)