"""The serve system: builds, watches and serves the application over HTTP."""

from __future__ import annotations

import asyncio
import logging
import threading
import webbrowser
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import SplitResult

import aiohttp
from aiohttp import web
from bs4 import BeautifulSoup

from wasmtrunk.common import SERVER, TrunkError
from wasmtrunk.config.rt import RtcServe
from wasmtrunk.watch import WatchSystem

log = logging.getLogger(__name__)

INDEX_HTML = "index.html"
WS_ROUTE = "/_trunk/ws"
RELOAD_MESSAGE = '{"reload": true}'
RELOAD_SCRIPT = """(function () {
  var protocol = window.location.protocol === "https:" ? "wss" : "ws";
  var socket = new WebSocket(protocol + "://" + window.location.host + "/_trunk/ws");
  socket.onmessage = function (event) {
    var msg = JSON.parse(event.data);
    if (msg.reload) {
      window.location.reload();
    }
  };
})();"""

_HOP_BY_HOP = frozenset({"connection", "keep-alive", "transfer-encoding", "upgrade"})
_SKIP_REQUEST_HEADERS = _HOP_BY_HOP | {"host", "content-length"}


class _Broadcast:
    """Thread-safe fan-out of "build done" notifications to asyncio subscribers."""

    def __init__(self, capacity: int = 8) -> None:
        self._capacity = capacity
        self._lock = threading.Lock()
        self._subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue[None]]] = []

    def subscribe(self) -> asyncio.Queue[None]:
        queue: asyncio.Queue[None] = asyncio.Queue(self._capacity)
        with self._lock:
            self._subscribers.append((asyncio.get_running_loop(), queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue[None]) -> None:
        with self._lock:
            self._subscribers = [item for item in self._subscribers if item[1] is not queue]

    def send(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for loop, queue in subscribers:
            try:
                loop.call_soon_threadsafe(self._put, queue)
            except RuntimeError:
                continue

    @staticmethod
    def _put(queue: asyncio.Queue[None]) -> None:
        try:
            queue.put_nowait(None)
        except asyncio.QueueFull:
            pass


@dataclass
class State:
    """Server state shared by all request handlers."""

    dist_dir: Path
    public_url: str
    no_autoreload: bool = False
    client: aiohttp.ClientSession | None = None
    build_done: _Broadcast = field(default_factory=_Broadcast)


STATE_KEY = web.AppKey("state", State)


def inject_reload_script(html: bytes, script: str = RELOAD_SCRIPT) -> bytes | None:
    """Append a ``<script>`` holding ``script`` to the document body; None if not UTF-8."""
    try:
        text = html.decode("utf-8")
    except UnicodeDecodeError:
        return None
    dom = BeautifulSoup(text, "html.parser")
    tag = BeautifulSoup(f"<script>{script}</script>", "html.parser").script
    (dom.body or dom).append(tag)
    return str(dom).encode("utf-8")


def _segments(path: str) -> list[str] | None:
    parts = [part for part in path.split("/") if part not in ("", ".")]
    if any(part == ".." for part in parts):
        return None
    return parts


def _resolve(dist_dir: Path, path: str) -> Path | None:
    parts = _segments(path)
    if parts is None:
        return None
    full = dist_dir.joinpath(*parts)
    if full.is_dir():
        full = full / INDEX_HTML
    return full if full.is_file() else None


async def serve_dist(request: web.Request) -> web.StreamResponse:
    """Serve a file from the dist dir, falling back to index.html for HTML requests."""
    state = request.app[STATE_KEY]
    dist_dir = Path(state.dist_dir)
    path = "/" + request.match_info.get("tail", "")

    parts = _segments(path)
    if parts is not None and not path.endswith("/") and dist_dir.joinpath(*parts).is_dir():
        raise web.HTTPMovedPermanently(request.path + "/")

    found = _resolve(dist_dir, path)
    if found is not None and path in ("/", INDEX_HTML) and not state.no_autoreload:
        try:
            data = found.read_bytes()
        except OSError as err:
            raise TrunkError("failed to read file") from err
        body = inject_reload_script(data, RELOAD_SCRIPT) or data
        return web.Response(body=body, headers={"Content-Type": "text/html"})
    if found is not None:
        return web.FileResponse(found)

    accept = request.headers.get("Accept")
    if accept is not None and ("*/*" in accept or "text/html" in accept):
        index = _resolve(dist_dir, INDEX_HTML)
        if index is not None:
            return web.FileResponse(index)
    raise web.HTTPNotFound()


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    """Send a reload message to the browser after every completed build."""
    state = request.app[STATE_KEY]
    ws = web.WebSocketResponse()
    rx = state.build_done.subscribe()
    try:
        await ws.prepare(request)
        log.debug("autoreload websocket opened")
        receiver = asyncio.ensure_future(ws.receive())
        while True:
            getter = asyncio.ensure_future(rx.get())
            done, _ = await asyncio.wait({receiver, getter}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                # Sending never fails on a closed socket, so reading is how closing is detected.
                getter.cancel()
                log.debug("autoreload websocket closed")
                break
            try:
                await ws.send_str(RELOAD_MESSAGE)
            except (ConnectionError, RuntimeError):
                receiver.cancel()
                break
    finally:
        state.build_done.unsubscribe(rx)
    return ws


def _listen_path(backend: SplitResult, rewrite: str | None) -> str:
    return rewrite if rewrite is not None else (backend.path or "/")


class _HttpProxy:
    """Forwards every request under a path prefix to a backend."""

    def __init__(self, backend: SplitResult, rewrite: str | None) -> None:
        self.backend = backend
        self.path = _listen_path(backend, rewrite)
        self._base = self.path.rstrip("/")

    def register(self, app: web.Application) -> None:
        pattern = f"{self._base}{{tail:(?:/.*)?}}" if self._base else "/{tail:.*}"
        app.router.add_route("*", pattern, self.handle)

    def _outbound_url(self, request: web.Request) -> str:
        raw_path = request.rel_url.raw_path
        remaining = raw_path[len(self._base):] if self._base else raw_path
        backend_path = self.backend.path or "/"
        head = backend_path.lstrip("/")
        tail = remaining.lstrip("/") if backend_path.endswith("/") else remaining
        query = request.rel_url.raw_query_string
        suffix = f"?{query}" if query else ""
        return f"{self.backend.scheme}://{self.backend.netloc}/{head}{tail}{suffix}"

    async def handle(self, request: web.Request) -> web.StreamResponse:
        state = request.app[STATE_KEY]
        if state.client is None:
            raise TrunkError("error accessing proxy handler state")
        headers = [
            (key, value)
            for key, value in request.headers.items()
            if key.lower() not in _SKIP_REQUEST_HEADERS
        ]
        if self.backend.hostname:
            headers.append(("Host", self.backend.hostname))
        body = await request.read()
        try:
            async with state.client.request(
                request.method, self._outbound_url(request), headers=headers, data=body or None
            ) as backend_res:
                response = web.StreamResponse(status=backend_res.status)
                for key, value in backend_res.headers.items():
                    if key.lower() not in _HOP_BY_HOP:
                        response.headers.add(key, value)
                await response.prepare(request)
                async for chunk in backend_res.content.iter_any():
                    await response.write(chunk)
                await response.write_eof()
                return response
        except aiohttp.ClientError as err:
            raise TrunkError("error proxying request to proxy backend") from err


class _WsProxy:
    """Relays WebSocket messages between the browser and a backend."""

    def __init__(self, backend: SplitResult, rewrite: str | None) -> None:
        self.backend = backend
        self.path = _listen_path(backend, rewrite)

    def register(self, app: web.Application) -> None:
        app.router.add_get(self.path, self.handle)

    @staticmethod
    async def _pump(source, sink, direction: str) -> None:
        try:
            async for msg in source:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await sink.send_str(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    await sink.send_bytes(msg.data)
                else:
                    break
        except (ConnectionError, RuntimeError) as err:
            log.error("error forwarding %s WebSocket message: %s", direction, err)
        finally:
            await sink.close()

    async def handle(self, request: web.Request) -> web.WebSocketResponse:
        state = request.app[STATE_KEY]
        frontend = web.WebSocketResponse()
        await frontend.prepare(request)
        log.debug("new websocket connection")
        if state.client is None:
            await frontend.close()
            return frontend
        try:
            backend = await state.client.ws_connect(self.backend.geturl())
        except (aiohttp.ClientError, ValueError) as err:
            log.error(
                "error establishing WebSocket connection to backend %s for proxy: %s",
                self.backend.geturl(),
                err,
            )
            await frontend.close()
            return frontend
        await asyncio.gather(
            self._pump(frontend, backend, "frontend to backend"),
            self._pump(backend, frontend, "backend to frontend"),
        )
        log.debug("websocket connection closed")
        return frontend


@web.middleware
async def _error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as err:
        log.error("error handling request: %s", err)
        return web.Response(status=500)


async def _client_ctx(app: web.Application):
    state = app[STATE_KEY]
    owned = state.client is None
    if owned:
        state.client = aiohttp.ClientSession(auto_decompress=False)
    try:
        yield
    finally:
        if owned and state.client is not None:
            await state.client.close()
            state.client = None


def make_app(state: State, cfg: RtcServe) -> web.Application:
    """Build the web app: proxies, the autoreload WebSocket and the static file server."""
    app = web.Application(middlewares=[_error_middleware])
    app[STATE_KEY] = state
    app.cleanup_ctx.append(_client_ctx)

    handlers: list[_HttpProxy | _WsProxy] = []
    if cfg.proxy_backend is not None:
        proxy_cls = _WsProxy if cfg.proxy_ws else _HttpProxy
        handlers.append(proxy_cls(cfg.proxy_backend, cfg.proxy_rewrite))
    elif cfg.proxies:
        for proxy in cfg.proxies:
            proxy_cls = _WsProxy if proxy.ws else _HttpProxy
            handlers.append(proxy_cls(proxy.backend, proxy.rewrite))

    # Later routes take precedence, so proxies are registered ahead of the static files.
    for handler in reversed(handlers):
        handler.register(app)
        kind = "websocket " if isinstance(handler, _WsProxy) else ""
        log.info("%s proxying %s%s -> %s", SERVER, kind, handler.path, handler.backend.geturl())

    app.router.add_get(WS_ROUTE, handle_ws)
    app.router.add_get(f"{state.public_url}{{tail:.*}}", serve_dist)
    log.info("%s serving static assets at -> %s", SERVER, state.public_url)
    return app


class ServeSystem:
    """Builds, watches and serves the application until shutdown is requested."""

    def __init__(self, cfg: RtcServe, shutdown: threading.Event) -> None:
        self.cfg = cfg
        self._shutdown = shutdown
        build = cfg.watch.build
        self.state = State(
            dist_dir=Path(build.final_dist),
            public_url=build.public_url,
            no_autoreload=cfg.no_autoreload,
        )
        self.watch = WatchSystem(cfg.watch, shutdown, self.state.build_done.send)
        self.http_addr = f"http://127.0.0.1:{cfg.port}{build.public_url}"

    def run(self) -> None:
        """Run an initial build, then watch and serve until shutdown."""
        try:
            self.watch.build()
        except Exception:
            pass
        watcher = threading.Thread(target=self.watch.run, name="watch", daemon=True)
        watcher.start()
        try:
            asyncio.run(self._serve())
        finally:
            self._shutdown.set()
            watcher.join()

    async def _serve(self) -> None:
        runner = web.AppRunner(make_app(self.state, self.cfg))
        await runner.setup()
        try:
            site = web.TCPSite(runner, "0.0.0.0", self.cfg.port)
            try:
                await site.start()
            except OSError as err:
                raise TrunkError(f"error binding server to port {self.cfg.port}") from err
            log.info("%s server listening at 0.0.0.0:%d", SERVER, self.cfg.port)
            if self.cfg.open and not webbrowser.open(self.http_addr):
                log.error("error opening browser")
            await asyncio.to_thread(self._shutdown.wait)
            log.debug("server is shutting down")
        finally:
            await runner.cleanup()