"""``/health`` and ``/ready`` for the gateway process.

``/ready`` answers 503 until both the audit database and the agent config
store respond, listing each check as ``ok`` or ``fail``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


async def _check(target: Any, call: Callable[[Any], object]) -> str:
    if target is None:
        return "fail"
    try:
        await asyncio.to_thread(call, target)
    except Exception:
        return "fail"
    return "ok"


def register_health_routes(app: FastAPI) -> None:
    """Attach the liveness and readiness routes to *app*."""

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request) -> JSONResponse:
        services: dict[str, Any] = request.app.state.services
        checks = {
            "audit_db": await _check(
                services.get("audit_conn"), lambda conn: conn.execute("SELECT 1")
            ),
            "config_store": await _check(
                services.get("config_store"), lambda store: store.list()
            ),
        }
        all_ok = all(v == "ok" for v in checks.values())
        return JSONResponse(
            content={"status": "ready" if all_ok else "not_ready", "checks": checks},
            status_code=200 if all_ok else 503,
        )
