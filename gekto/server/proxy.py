"""Injection proxy: reverse proxy to the target app plus widget assets.

Every request that is not for the ``/__gekto/`` namespace goes to the
single upstream target. HTML responses are buffered and get the
widget snippet inserted; everything else streams through untouched.
WebSocket upgrades (the target's hot-reload channel) are piped
frame by frame to the upstream socket.
"""
from __future__ import annotations

import asyncio
import html
import logging
import re
import zlib
from pathlib import Path

import aiohttp
from aiohttp import WSMsgType, hdrs, web
from multidict import CIMultiDict

from gekto.engine.config import GektoConfig

logger = logging.getLogger(__name__)

WIDGET_JS_FILE = "gekto-widget.iife.js"
WIDGET_CSS_FILE = "style.css"
MISSING_BUNDLE_JS = "// Widget bundle not found"

_HOP_BY_HOP = frozenset(h.lower() for h in (
    hdrs.CONNECTION,
    hdrs.KEEP_ALIVE,
    hdrs.PROXY_AUTHENTICATE,
    hdrs.PROXY_AUTHORIZATION,
    hdrs.TE,
    hdrs.TRAILER,
    hdrs.TRANSFER_ENCODING,
    hdrs.UPGRADE,
))

# Dropped from forwarded requests so HTML comes back fresh and plain.
_REQUEST_SKIP = _HOP_BY_HOP | {
    "host",
    "content-length",
    "accept-encoding",
    "if-none-match",
    "if-modified-since",
}

_WS_REQUEST_SKIP = _REQUEST_SKIP | {
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
}

# Dropped from rewritten HTML responses: the body changed length and
# encoding, and a CSP would block the injected script.
_HTML_RESPONSE_SKIP = _HOP_BY_HOP | {
    "content-length",
    "content-encoding",
    "content-security-policy",
    "content-security-policy-report-only",
}

_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)
_HTML_CLOSE_RE = re.compile(r"</html\s*>", re.IGNORECASE)

STANDALONE_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Gekto</title>
    <style>
      * {{ margin: 0; padding: 0; box-sizing: border-box; }}
      body {{ background: #0a0a0a; min-height: 100vh; }}
    </style>
  </head>
  <body>
    {snippet}
  </body>
</html>
"""

ERROR_PAGE = """<html>
  <body style="font-family: system-ui; display: flex; align-items: center; justify-content: center; height: 100vh; margin: 0; background: linear-gradient(135deg, #ff6b6b, #ff8e53);">
    <div style="text-align: center; color: white;">
      <h1>Proxy Error</h1>
      <p>Could not connect to {target}</p>
      <pre style="background: rgba(0,0,0,0.2); padding: 10px; border-radius: 5px;">{error}</pre>
    </div>
  </body>
</html>
"""


def build_snippet(config: GektoConfig) -> str:
    """The fixed markup injected into every proxied HTML page."""
    if config.dev_mode:
        return (
            "\n<!-- Gekto Widget (dev) -->\n"
            f'<script type="module" id="gekto-widget" '
            f'src="{config.widget_dev_url}/src/main.tsx"></script>\n'
        )
    return (
        "\n<!-- Gekto Widget -->\n"
        '<script id="gekto-widget" src="/__gekto/widget.js"></script>\n'
    )


def _last_match(pattern: re.Pattern[str], text: str) -> re.Match[str] | None:
    last = None
    for last in pattern.finditer(text):
        pass
    return last


def inject_snippet(document: str, snippet: str) -> str:
    """Insert *snippet* before the closing body tag.

    Falls back to before ``</html>``, then to appending. The last
    occurrence wins so closing tags inside inline scripts are skipped.
    """
    match = _last_match(_BODY_CLOSE_RE, document) or _last_match(_HTML_CLOSE_RE, document)
    if match is None:
        return document + snippet
    return document[:match.start()] + snippet + document[match.start():]


def is_html(content_type: str) -> bool:
    return "text/html" in content_type.lower()


def _decode_body(raw: bytes, encoding: str) -> bytes | None:
    encoding = encoding.strip().lower()
    if not encoding or encoding == "identity":
        return raw
    if encoding in ("gzip", "x-gzip", "deflate"):
        try:
            # 47: accept gzip or zlib headers.
            return zlib.decompress(raw, 47)
        except zlib.error:
            try:
                return zlib.decompress(raw, -zlib.MAX_WBITS)
            except zlib.error:
                return None
    return None


def _filter_headers(headers, skip: frozenset[str] | set[str]) -> CIMultiDict[str]:
    filtered: CIMultiDict[str] = CIMultiDict()
    for key, value in headers.items():
        if key.lower() not in skip:
            filtered.add(key, value)
    return filtered


class InjectionProxy:
    """HTTP/WebSocket reverse proxy to one upstream target."""

    def __init__(self, config: GektoConfig):
        self.config = config
        self.snippet = build_snippet(config)
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                auto_decompress=False,
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=10),
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("InjectionProxy.start() was not called")
        return self._session

    @property
    def widget_dist(self) -> Path:
        return Path(self.config.widget_dist)

    @property
    def widget_src(self) -> Path:
        if self.config.widget_src:
            return Path(self.config.widget_src)
        return self.widget_dist.parent

    # ── Routes ──────────────────────────────────────────────────

    async def handle(self, request: web.Request) -> web.StreamResponse:
        """Catch-all: standalone page, WebSocket passthrough or HTTP proxy."""
        if self._is_ws_upgrade(request):
            if request.path.startswith("/__gekto/"):
                raise web.HTTPNotFound()
            return await self.proxy_websocket(request)
        if self.config.standalone and request.path in ("/", "/index.html"):
            return self.standalone_page()
        return await self.proxy_http(request)

    async def handle_widget_js(self, request: web.Request) -> web.StreamResponse:
        if self.config.dev_mode:
            loader = (
                "const script = document.createElement('script');\n"
                "script.type = 'module';\n"
                f"script.src = '{self.config.widget_dev_url}/src/main.tsx';\n"
                "document.head.appendChild(script);\n"
            )
            return self._asset_response(loader, "application/javascript")
        return self._asset_response(self._load_bundle_js(), "application/javascript")

    async def handle_widget_css(self, request: web.Request) -> web.StreamResponse:
        if self.config.dev_mode:
            return await self.proxy_widget_dev(request)
        path = self.widget_dist / WIDGET_CSS_FILE
        css = path.read_text("utf-8") if path.is_file() else ""
        return self._asset_response(css, "text/css")

    async def handle_widget_asset(self, request: web.Request) -> web.StreamResponse:
        if self.config.dev_mode:
            return await self.proxy_widget_dev(request)
        raise web.HTTPNotFound()

    def standalone_page(self) -> web.Response:
        return web.Response(
            text=STANDALONE_PAGE.format(snippet=self.snippet),
            content_type="text/html",
        )

    # ── Widget assets ───────────────────────────────────────────

    def _load_bundle_js(self) -> str:
        path = self.widget_dist / WIDGET_JS_FILE
        try:
            return path.read_text("utf-8")
        except OSError as exc:
            logger.error("Could not load widget bundle %s: %s", path, exc)
            return MISSING_BUNDLE_JS

    @staticmethod
    def _asset_response(text: str, content_type: str) -> web.Response:
        return web.Response(
            text=text,
            content_type=content_type,
            headers={hdrs.CACHE_CONTROL: "no-cache"},
        )

    async def proxy_widget_dev(self, request: web.Request) -> web.StreamResponse:
        """Forward a widget asset to the widget dev server."""
        tail = request.path[len("/__gekto/"):]
        url = f"{self.config.widget_dev_url}/@fs{self.widget_src.as_posix()}/{tail}"
        if request.query_string:
            url += "?" + request.query_string
        try:
            async with self.session.get(
                url,
                headers={hdrs.HOST: f"localhost:{self.config.widget_port}"},
            ) as upstream:
                body = await upstream.read()
                headers = _filter_headers(upstream.headers, _HOP_BY_HOP | {"content-length"})
                return web.Response(status=upstream.status, body=body, headers=headers)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Widget dev server unavailable (%s), serving bundle", exc)
            return self._asset_response(self._load_bundle_js(), "application/javascript")

    # ── HTTP ────────────────────────────────────────────────────

    def _target_host_header(self) -> str:
        return f"{self.config.target_host}:{self.config.target_port}"

    def _forward_headers(self, request: web.Request, skip: frozenset[str] | set[str]) -> CIMultiDict[str]:
        headers = _filter_headers(request.headers, skip)
        headers[hdrs.HOST] = self._target_host_header()
        return headers

    async def proxy_http(self, request: web.Request) -> web.StreamResponse:
        url = self.config.target_url + request.rel_url.raw_path_qs
        body = await request.read() if request.body_exists else None
        try:
            upstream = await self.session.request(
                request.method,
                url,
                headers=self._forward_headers(request, _REQUEST_SKIP),
                data=body,
                allow_redirects=False,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Upstream %s %s failed: %s", request.method, url, exc)
            return self.error_page(exc)

        async with upstream:
            if is_html(upstream.headers.get(hdrs.CONTENT_TYPE, "")):
                return await self._rewrite_html(upstream)
            return await self._stream(request, upstream)

    async def _rewrite_html(self, upstream: aiohttp.ClientResponse) -> web.Response:
        raw = await upstream.read()
        decoded = _decode_body(raw, upstream.headers.get(hdrs.CONTENT_ENCODING, ""))
        if decoded is None:
            logger.warning(
                "Cannot decode %s HTML body, forwarding without widget",
                upstream.headers.get(hdrs.CONTENT_ENCODING),
            )
            headers = _filter_headers(upstream.headers, _HOP_BY_HOP | {"content-length"})
            return web.Response(status=upstream.status, reason=upstream.reason, body=raw, headers=headers)

        charset = upstream.charset or "utf-8"
        try:
            text = decoded.decode(charset, errors="replace")
        except LookupError:
            charset = "utf-8"
            text = decoded.decode(charset, errors="replace")

        document = inject_snippet(text, self.snippet)
        headers = _filter_headers(upstream.headers, _HTML_RESPONSE_SKIP)
        return web.Response(
            status=upstream.status,
            reason=upstream.reason,
            body=document.encode(charset, errors="replace"),
            headers=headers,
        )

    async def _stream(self, request: web.Request, upstream: aiohttp.ClientResponse) -> web.StreamResponse:
        response = web.StreamResponse(
            status=upstream.status,
            reason=upstream.reason,
            headers=_filter_headers(upstream.headers, _HOP_BY_HOP),
        )
        await response.prepare(request)
        async for chunk in upstream.content.iter_any():
            await response.write(chunk)
        await response.write_eof()
        return response

    def error_page(self, exc: BaseException) -> web.Response:
        target = f"{self.config.target_host}:{self.config.target_port}"
        return web.Response(
            status=502,
            text=ERROR_PAGE.format(
                target=html.escape(target),
                error=html.escape(str(exc) or exc.__class__.__name__),
            ),
            content_type="text/html",
        )

    # ── WebSocket passthrough ───────────────────────────────────

    @staticmethod
    def _is_ws_upgrade(request: web.Request) -> bool:
        connection = request.headers.get(hdrs.CONNECTION, "").lower()
        upgrade = request.headers.get(hdrs.UPGRADE, "").lower()
        return "upgrade" in connection and upgrade == "websocket"

    async def proxy_websocket(self, request: web.Request) -> web.StreamResponse:
        url = (
            f"ws://{self.config.target_host}:{self.config.target_port}"
            f"{request.rel_url.raw_path_qs}"
        )
        requested = request.headers.get(hdrs.SEC_WEBSOCKET_PROTOCOL, "")
        protocols = tuple(p.strip() for p in requested.split(",") if p.strip())
        try:
            upstream = await self.session.ws_connect(
                url,
                protocols=protocols,
                headers=self._forward_headers(request, _WS_REQUEST_SKIP),
                autoping=True,
            )
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Upstream WebSocket %s failed: %s", url, exc)
            return self.error_page(exc)

        client = web.WebSocketResponse(
            protocols=(upstream.protocol,) if upstream.protocol else (),
            autoping=True,
        )
        await client.prepare(request)
        logger.debug("WebSocket passthrough opened %s", request.path)

        async def pump(source, sink) -> None:
            async for msg in source:
                if sink.closed:
                    break
                if msg.type == WSMsgType.TEXT:
                    await sink.send_str(msg.data)
                elif msg.type == WSMsgType.BINARY:
                    await sink.send_bytes(msg.data)
                elif msg.type == WSMsgType.ERROR:
                    break

        tasks = [
            asyncio.create_task(pump(client, upstream)),
            asyncio.create_task(pump(upstream, client)),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if not upstream.closed:
                await upstream.close()
            if not client.closed:
                await client.close()
            logger.debug("WebSocket passthrough closed %s", request.path)
        return client
