"""
SKYGATE — Diagnostics HTTP API

Read-only status endpoints served on the debug bind address
(127.0.0.1:2221 by default).

Endpoints:

    GET /healthz    Liveness plus the number of open SSH sessions.
    GET /sessions   One entry per open SSH session.

There is no authentication; keep the debug address on loopback or behind
an authenticated proxy.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiohttp import web

if TYPE_CHECKING:
    from skygate.gateway.server import Gateway

logger = logging.getLogger("skygate.api")

GATEWAY_KEY = web.AppKey("gateway", object)


def _session_view(raw: dict[str, Any]) -> dict[str, Any]:
    return {
        "session_id": raw.get("session_id", ""),
        "peer": raw.get("peer"),
        "tenant": raw.get("team"),
        "worker": raw.get("worker"),
        "state": raw.get("state"),
        "forward_address": raw.get("forward_address"),
        "registered_at": raw.get("registered_at"),
        "last_heartbeat_at": raw.get("last_heartbeat_at"),
    }


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    gateway: Gateway = request.app[GATEWAY_KEY]
    return web.json_response({"status": "ok", "sessions": gateway.connection_count})


async def handle_sessions(request: web.Request) -> web.Response:
    gateway: Gateway = request.app[GATEWAY_KEY]
    sessions = [_session_view(item) for item in gateway.describe_sessions()]
    return web.json_response({"sessions": sessions, "count": len(sessions)})


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(gateway: "Gateway") -> web.Application:
    app = web.Application()
    app[GATEWAY_KEY] = gateway
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/sessions", handle_sessions)
    return app


async def start_diagnostics(gateway: "Gateway", host: str, port: int) -> web.AppRunner:
    """Start the diagnostics server and return the runner."""
    runner = web.AppRunner(create_app(gateway))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Diagnostics API listening on http://%s:%d", host, port)
    return runner
