"""
HTTP Surface - aiohttp Application

ROUTES (participant, token only):
- POST /api/event                 - create event, queue invitations
- GET  /api/reveal?token=...      - reveal one assignment
- POST /api/wishlist              - update own wishlist, queue Santa notice

ROUTES (organizer, X-Organizer-Key):
- GET    /api/event/{event_id}/pairs.csv
- GET    /api/event/{event_id}/notifications
- POST   /api/event/{event_id}/notifications/{notification_id}/retry
- DELETE /api/event/{event_id}

ROUTES (anyone):
- GET /health

ERRORS:
- Client mistakes → 4xx with {"error": ...}
- Every bad token → the same 404 {"error": "Invalid link"}
- Storage/unexpected failures → 500 {"error": "Server error"}, details only in the log
"""

import asyncio
import json
import logging
from typing import Optional

from aiohttp import web

from . import utils
from .errors import InsufficientParticipants, InvalidToken, PersistenceFailure
from .messages import render_pairs_csv
from .notifications import NotificationQueue
from .secret_santa_checks import STORE_KEY, organizer_check
from .secret_santa_storage import SecretSantaStore
from .secret_santa_tokens import create_exchange, resolve, update_wishlist

logger = logging.getLogger("santa.web")

CONFIG_KEY = web.AppKey("config")
QUEUE_KEY = web.AppKey("queue", NotificationQueue)
LIMITER_KEY = web.AppKey("limiter", utils.RateLimiter)
HTTP_KEY = web.AppKey("http_mgr", utils.HttpManager)

INVALID_LINK = {"error": "Invalid link"}


# ============ MIDDLEWARE ============
@web.middleware
async def request_logging_middleware(request: web.Request, handler):
    # request.path has no query string, so reveal tokens stay out of the log
    logger.info(f"Incoming Request: {request.method} {request.path}")
    return await handler(request)


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException as e:
        if e.status < 400:
            raise
        headers = {"Retry-After": e.headers["Retry-After"]} if "Retry-After" in e.headers else None
        return web.json_response({"error": e.reason}, status=e.status, headers=headers)
    except InvalidToken:
        return web.json_response(INVALID_LINK, status=404)
    except InsufficientParticipants as e:
        return web.json_response({"error": str(e)}, status=400)
    except PersistenceFailure:
        logger.error(f"Storage failure on {request.method} {request.path}", exc_info=True)
        return web.json_response({"error": "Server error"}, status=500)
    except ValueError as e:
        return web.json_response({"error": str(e)}, status=400)
    except Exception:
        logger.error(f"Unhandled error on {request.method} {request.path}", exc_info=True)
        return web.json_response({"error": "Server error"}, status=500)


async def _rate_limit(request: web.Request):
    limiter = request.app.get(LIMITER_KEY)
    remote = request.remote or "unknown"
    if limiter and not await limiter.check(remote):
        logger.warning(f"Rate limit hit on {request.path} by {remote}")
        raise web.HTTPTooManyRequests(headers={"Retry-After": str(limiter.retry_after(remote))})


async def _json_body(request: web.Request) -> dict:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValueError("Request body must be JSON")
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


# ============ PARTICIPANT ROUTES ============
async def create_event(request: web.Request) -> web.Response:
    data = await _json_body(request)
    details = data.get("details") or {}
    participants = data.get("participants") or []
    if not isinstance(details, dict) or not isinstance(participants, list):
        raise ValueError("Expected 'details' object and 'participants' list")

    config = request.app[CONFIG_KEY]
    organizer_email = str(data.get("organizerEmail") or "").strip() or None

    # Invitations are committed together with the event
    event, organizer_key = await create_exchange(
        request.app[STORE_KEY],
        details,
        participants,
        config.MAX_PARTICIPANTS,
        outbox=request.app[QUEUE_KEY],
        organizer_email=organizer_email,
    )
    queued = len(event["assignments"]) + (1 if organizer_email else 0)

    return web.json_response({
        "message": "Event created and emails sending",
        "eventId": event["id"],
        "organizerKey": organizer_key,
        "participants": len(event["participants"]),
        "emailsQueued": queued,
    })


async def reveal(request: web.Request) -> web.Response:
    await _rate_limit(request)
    token = request.query.get("token")
    if not token:
        return web.json_response({"error": "Token required"}, status=400)

    view = await resolve(request.app[STORE_KEY], token)
    return web.json_response(view.to_dict())


async def wishlist(request: web.Request) -> web.Response:
    await _rate_limit(request)
    data = await _json_body(request)
    token = data.get("token")
    if not token:
        return web.json_response({"error": "Token required"}, status=400)

    text = data.get("wishlist") or ""
    if not isinstance(text, str):
        raise ValueError("'wishlist' must be text")

    await update_wishlist(request.app[STORE_KEY], token, text, notifier=request.app[QUEUE_KEY])
    return web.json_response({"message": "Wishlist updated"})


# ============ ORGANIZER ROUTES ============
@organizer_check()
async def pairs_csv(request: web.Request) -> web.Response:
    event = request["event"]
    body = render_pairs_csv(event, request.app[CONFIG_KEY].APP_URL)
    return web.Response(
        text=body,
        content_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="secret_santa_pairs.csv"'},
    )


@organizer_check()
async def list_notifications(request: web.Request) -> web.Response:
    records = await request.app[STORE_KEY].list_notifications(event_id=request["event"]["id"])
    # Bodies contain reveal links - status fields only
    summary = [
        {
            "id": r["id"],
            "kind": r["kind"],
            "to": r["to"],
            "status": r["status"],
            "attempts": r["attempts"],
            "maxAttempts": r["max_attempts"],
            "lastError": r["last_error"],
        }
        for r in records
    ]
    return web.json_response({"notifications": summary})


@organizer_check()
async def retry_notification(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    notification_id = request.match_info["notification_id"]
    record = await store.get_notification(notification_id)
    if not record or record.get("event_id") != request["event"]["id"]:
        raise web.HTTPNotFound()

    await request.app[QUEUE_KEY].reprocess(notification_id)
    return web.json_response({"message": "Notification requeued"})


@organizer_check()
async def delete_event(request: web.Request) -> web.Response:
    await request.app[STORE_KEY].delete_event(request["event"]["id"])
    return web.json_response({"message": "Event deleted"})


async def health(request: web.Request) -> web.Response:
    store = request.app[STORE_KEY]
    breaker = request.app[QUEUE_KEY].breaker
    return web.json_response({
        "status": "ok",
        "events": len(store.state["events"]),
        "notifications": store.queue_counts(),
        "mailTransport": await breaker.get_metrics() if breaker else None,
    })


# ============ LIFECYCLE ============
async def background_tasks(app: web.Application):
    """Startup cleanup check, then the sweep and backup loops for the app's lifetime"""
    config = app[CONFIG_KEY]
    store = app[STORE_KEY]
    queue = app[QUEUE_KEY]

    await store.purge_incomplete_events()

    sweep_task = asyncio.create_task(queue.sweep_loop(config.SWEEP_INTERVAL))
    backup_task = asyncio.create_task(store.backup_loop(config.BACKUP_INTERVAL))
    logger.info("Background tasks started")

    yield

    for task in (sweep_task, backup_task):
        task.cancel()
    await asyncio.gather(sweep_task, backup_task, return_exceptions=True)
    await queue.close()

    http_mgr = app.get(HTTP_KEY)
    if http_mgr:
        await http_mgr.close()
    logger.info("Background tasks stopped")


def create_app(
    config,
    store: SecretSantaStore,
    queue: NotificationQueue,
    http_mgr: Optional[utils.HttpManager] = None,
    start_background: bool = True,
) -> web.Application:
    app = web.Application(middlewares=[request_logging_middleware, error_middleware])
    app[CONFIG_KEY] = config
    app[STORE_KEY] = store
    app[QUEUE_KEY] = queue
    app[LIMITER_KEY] = utils.RateLimiter(config.RATE_LIMIT_REQUESTS, config.RATE_LIMIT_WINDOW)
    if http_mgr:
        app[HTTP_KEY] = http_mgr

    app.router.add_post("/api/event", create_event)
    app.router.add_get("/api/reveal", reveal)
    app.router.add_post("/api/wishlist", wishlist)
    app.router.add_get("/api/event/{event_id}/pairs.csv", pairs_csv)
    app.router.add_get("/api/event/{event_id}/notifications", list_notifications)
    app.router.add_post("/api/event/{event_id}/notifications/{notification_id}/retry", retry_notification)
    app.router.add_delete("/api/event/{event_id}", delete_event)
    app.router.add_get("/health", health)

    if start_background:
        app.cleanup_ctx.append(background_tasks)

    return app
