"""HTTP trigger surface (aiohttp).

Routes::

    POST /dispatch            {"topic": str, "payload": object}
    POST /api/mqtt/publish    alias of /dispatch for existing store webhooks
    GET  /health              liveness, see :mod:`commandbridge._health`

``/dispatch`` responses:

- ``200`` ``{"success": true, "topic": …, "timestamp": …}``
- ``400`` missing topic/payload or unparseable body
- ``401`` bad or missing bearer credential (only when a secret is set)
- ``503`` broker disconnected (retryable)
- ``500`` any other publish failure

Error bodies are ``{"error": …, "error_type": …}``.

A successful dispatch whose payload carries a ``command_id`` is recorded
in the dedup cache shared with the poll reconciler.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Awaitable, Callable

from aiohttp import web

from commandbridge._dedup import DedupCache
from commandbridge._dispatcher import CommandDispatcher
from commandbridge._errors import (
    AuthError,
    BridgeError,
    ValidationError,
    build_error_payload,
)
from commandbridge._health import HealthReporter
from commandbridge._models import CommandId

logger = logging.getLogger(__name__)

TRIGGER_ROUTES: tuple[str, ...] = ("/dispatch", "/api/mqtt/publish")

DISPATCHER_KEY = web.AppKey("dispatcher", CommandDispatcher)
HEALTH_KEY = web.AppKey("health", HealthReporter)
SECRET_KEY = web.AppKey("secret", str)
DEDUP_KEY = web.AppKey("dedup", DedupCache)

_Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: _Handler) -> web.StreamResponse:
    """Render :class:`BridgeError` as structured JSON with its HTTP status."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except BridgeError as exc:
        status = exc.http_status
        if status >= 500:  # noqa: PLR2004
            logger.error("Publish failed: %s", exc)
        else:
            logger.warning("Rejected %s %s: %s", request.method, request.path, exc)
        return web.json_response(build_error_payload(exc).to_dict(), status=status)
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return web.json_response(build_error_payload(exc).to_dict(), status=500)


def _authorize(request: web.Request) -> None:
    secret = request.app.get(SECRET_KEY)
    if not secret:
        return
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(
        token.strip().encode(),
        secret.encode(),
    ):
        msg = "Unauthorized"
        raise AuthError(msg)


async def handle_dispatch(request: web.Request) -> web.Response:
    """Publish a command on behalf of an external trigger."""
    _authorize(request)

    try:
        body = await request.json()
    except ValueError:
        msg = "Request body must be JSON"
        raise ValidationError(msg) from None
    if not isinstance(body, dict):
        msg = "Request body must be a JSON object"
        raise ValidationError(msg)

    dispatcher = request.app[DISPATCHER_KEY]
    payload = body.get("payload")
    result = await dispatcher.dispatch(body.get("topic"), payload)

    dedup = request.app.get(DEDUP_KEY)
    command_id = _command_id_of(payload)
    if dedup is not None and command_id is not None:
        dedup.record_dispatch(command_id)
    return web.json_response(result.to_dict())


def _command_id_of(payload: object) -> CommandId | None:
    """The ``command_id`` of a dispatched command payload, if it names one."""
    if not isinstance(payload, dict):
        return None
    command_id = payload.get("command_id")
    if isinstance(command_id, bool) or not isinstance(command_id, CommandId):
        return None
    if command_id == "":
        return None
    return command_id


async def handle_health(request: web.Request) -> web.Response:
    """Report broker liveness and whether polling is active."""
    return web.json_response(request.app[HEALTH_KEY].snapshot().to_dict())


def build_http_app(
    dispatcher: CommandDispatcher,
    health: HealthReporter,
    *,
    secret: str | None = None,
    dedup: DedupCache | None = None,
) -> web.Application:
    """Create the aiohttp application for the trigger surface.

    Args:
        dispatcher: The shared dispatch path.
        health: Source of ``/health`` snapshots.
        secret: Shared bearer secret.  When ``None`` or empty, trigger
            authentication is disabled and a warning is logged.
        dedup: Cooldown cache shared with the poll reconciler.  A
            successful trigger dispatch whose payload carries a
            ``command_id`` is recorded there, so the next poll cycle
            does not send the same command again.
    """
    app = web.Application(middlewares=[error_middleware])
    app[DISPATCHER_KEY] = dispatcher
    app[HEALTH_KEY] = health
    if dedup is not None:
        app[DEDUP_KEY] = dedup
    if secret:
        app[SECRET_KEY] = secret
    else:
        logger.warning("HTTP__SECRET not set, allowing all dispatch requests")

    for path in TRIGGER_ROUTES:
        app.router.add_post(path, handle_dispatch)
    app.router.add_get("/health", handle_health)
    return app
