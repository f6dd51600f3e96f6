"""Gekto HTTP server.

One aiohttp application serving three things on the proxy port:

- ``/__gekto/agent``: the control-plane WebSocket
- ``/__gekto/*``: widget assets and a health endpoint
- everything else: the injection proxy to the target app

The pool, planner and connection registry are created here (or
injected for tests) and torn down with the application.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid

from aiohttp import web

from gekto.engine.config import GektoConfig
from gekto.engine.models import PlannerState
from gekto.engine.planner import PersistentPlanner
from gekto.engine.pool import AgentPool

from .connections import ConnectionRegistry
from .control import ControlPlane
from .proxy import InjectionProxy

logger = logging.getLogger(__name__)


class GektoServer:
    """Control plane + injection proxy on a single port."""

    def __init__(
        self,
        config: GektoConfig | None = None,
        *,
        pool: AgentPool | None = None,
        planner: PersistentPlanner | None = None,
        registry: ConnectionRegistry | None = None,
        init_planner: bool = True,
    ):
        self.config = config or GektoConfig()
        self.pool = pool or AgentPool(self.config)
        self.planner = planner or PersistentPlanner(self.config)
        self.registry = registry or ConnectionRegistry()
        self.control = ControlPlane(self.pool, self.planner, self.registry)
        self.proxy = InjectionProxy(self.config)
        self._init_planner = init_planner
        self._started_at = time.time()

        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._app.on_startup.append(self._on_startup)
        self._app.on_cleanup.append(self._on_cleanup)
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-gekto-request-id", str(uuid.uuid4())[:8])
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except web.HTTPException:
            raise
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/__gekto/agent", self.control.handle_ws)
        r.add_get("/__gekto/health", self._handle_health)
        r.add_get("/__gekto/widget.js", self.proxy.handle_widget_js)
        r.add_get("/__gekto/widget.css", self.proxy.handle_widget_css)
        r.add_get("/__gekto/{tail:.*}", self.proxy.handle_widget_asset)
        r.add_route("*", "/{tail:.*}", self.proxy.handle)

    # ── Lifecycle ──

    def _broadcast_planner_state(self, state: PlannerState) -> None:
        sent = self.registry.broadcast({"type": "gekto_state", "state": state.value})
        logger.debug("Planner state %s broadcast to %d clients", state.value, sent)

    async def _on_startup(self, app: web.Application) -> None:
        await self.proxy.start()
        if self._init_planner:
            await self.planner.init(self.config.working_dir, self._broadcast_planner_state)

    async def _on_cleanup(self, app: web.Application) -> None:
        logger.info("Gekto server cleaning up")
        await self.control.shutdown()
        await self.registry.close_all()
        await self.pool.shutdown()
        await self.planner.shutdown()
        await self.proxy.close()

    async def start(self) -> None:
        """Start listening and block until cancelled."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.proxy_port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is not None:
            self.config.proxy_port = actual_port
        logger.info(
            "Gekto listening on http://%s:%s -> %s (dev=%s, cwd=%s)",
            self.config.host, self.config.proxy_port, self.config.target_url,
            self.config.dev_mode, self.config.working_dir,
        )

        try:
            await asyncio.Event().wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await runner.cleanup()

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self.config.working_dir,
            "target": self.config.target_url,
            "mode": "dev" if self.config.dev_mode else "production",
            "sessions": len(self.pool.session_ids()),
            "clients": len(self.registry),
            "planner_state": self.planner.state.value,
        })
