import pytest
from bs4 import BeautifulSoup

from wasmtrunk.common import TrunkError
from wasmtrunk.config.rt import RtcBuild
from wasmtrunk.pipelines.copy_file import CopyFile, CopyFileOutput


def _cfg(tmp_path):
    dist = tmp_path / "dist"
    stage = dist / ".stage"
    stage.mkdir(parents=True)
    target = tmp_path / "index.html"
    target.write_text("<html></html>")
    return RtcBuild(
        target=target,
        target_parent=tmp_path,
        release=False,
        public_url="/",
        final_dist=dist,
        staging_dist=stage,
    )


def test_create_requires_href(tmp_path):
    with pytest.raises(TrunkError, match="rel=\"copyfile\""):
        CopyFile.create(_cfg(tmp_path), tmp_path, {}, 0)


def test_create_missing_file_raises(tmp_path):
    with pytest.raises(TrunkError, match="error getting canonical path"):
        CopyFile.create(_cfg(tmp_path), tmp_path, {"href": "nope.txt"}, 0)


def test_run_copies_file_unhashed(tmp_path):
    cfg = _cfg(tmp_path)
    (tmp_path / "files").mkdir()
    (tmp_path / "files" / "robots.txt").write_bytes(b"Disallow: /")
    output = CopyFile.create(cfg, tmp_path, {"href": "files/robots.txt"}, 1).run()
    assert output == CopyFileOutput(1)
    assert (cfg.staging_dist / "robots.txt").read_bytes() == b"Disallow: /"


def test_finalize_removes_only_own_link():
    dom = BeautifulSoup(
        '<head><link data-trunk-id="0" href="a"/><link data-trunk-id="1" href="b"/></head>',
        "html.parser",
    )
    CopyFileOutput(0).finalize(dom)
    assert [n["href"] for n in dom.select("link")] == ["b"]