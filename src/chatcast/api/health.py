"""Health check endpoint.

Learn: Simple GET endpoint that verifies the server is running, the
dispatcher workers are up, and (when enabled) the Redis relay is live.
"""

from fastapi import APIRouter, Request

from chatcast import __version__

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and broadcast readiness."""
    checks = {"server": "ok", "version": __version__}

    service = getattr(request.app.state, "broadcast", None)
    if service is not None and service.running:
        checks["broadcast"] = "ok"
    else:
        checks["broadcast"] = "error: not running"

    relay = getattr(request.app.state, "relay", None)
    if relay is None:
        checks["relay"] = "disabled"
    elif relay.connected:
        checks["relay"] = "ok"
    else:
        checks["relay"] = "error: not connected"

    status = "healthy" if all(
        v in ("ok", "disabled") for k, v in checks.items() if k != "version"
    ) else "degraded"

    stats = service.registry.stats() if service is not None else {}
    return {
        "status": status,
        **checks,
        "connections": stats.get("connections", 0),
        "channels": stats.get("channels", 0),
    }
