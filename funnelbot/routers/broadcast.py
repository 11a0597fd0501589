import json
import time
from typing import Annotated, AsyncIterator

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from funnelbot.container import ServiceContainer, build_queue_policies, get_service_container
from funnelbot.schemas.broadcast_schemas import BroadcastIdRequest, StartBroadcastRequest
from funnelbot.services.broadcast import (
    ACTIVE_BROADCAST_KEY,
    LAST_BROADCAST_KEY,
    BroadcastDispatcher,
)
from funnelbot.services.task_queue import CeleryTransport, TaskQueue
from funnelbot.utils.errors import NotFoundError
from funnelbot.utils.responses import ResponseBuilder

broadcast_router = APIRouter()

HEARTBEAT_SECONDS = 15.0
REPLAY_LOG_LIMIT = 200


def get_broadcast_reader(request: Request) -> BroadcastDispatcher:
    """Dispatcher for read-only routes; needs Redis only, no database session."""
    state = request.app.state
    transport = getattr(state, "transport", None) or CeleryTransport()
    queue = TaskQueue(state.store, transport, build_queue_policies())
    return BroadcastDispatcher(state.store, queue, state.gateway)


async def _session_snapshot(dispatcher: BroadcastDispatcher, broadcast_id: str):
    status_ = await dispatcher.get_status(broadcast_id)
    if status_ is None:
        return None
    return {
        "broadcastId": broadcast_id,
        "status": status_.model_dump(by_alias=True),
        "logs": await dispatcher.get_logs(broadcast_id, REPLAY_LOG_LIMIT),
        "errors": await dispatcher.get_errors(broadcast_id),
    }


@broadcast_router.post(
    "/start",
    status_code=status.HTTP_201_CREATED,
    summary="Start a broadcast",
    description="Filter the contact list, store the message and enqueue batches.",
)
async def start_broadcast(
    request: Request,
    payload: StartBroadcastRequest,
    container: ServiceContainer = Depends(get_service_container),
):
    broadcast_status = await container.broadcast.start(
        contacts=payload.contacts,
        message_html=payload.message_html,
        media=payload.media,
        caption_mode=payload.caption_mode,
        delay_ms=payload.delay_ms,
        filter_blocked=payload.filter_blocked,
    )
    return ResponseBuilder.success(
        request=request,
        data=broadcast_status.model_dump(by_alias=True),
        message="Broadcast queued",
        status_code=status.HTTP_201_CREATED,
    )


@broadcast_router.post("/stop", summary="Stop a broadcast")
async def stop_broadcast(
    request: Request,
    payload: BroadcastIdRequest,
    container: ServiceContainer = Depends(get_service_container),
):
    broadcast_status = await container.broadcast.request_stop(payload.id)
    return ResponseBuilder.success(
        request=request,
        data=broadcast_status.model_dump(by_alias=True),
        message="Broadcast stopped",
    )


@broadcast_router.post("/resume", summary="Resume a stopped broadcast from its cursor")
async def resume_broadcast(
    request: Request,
    payload: BroadcastIdRequest,
    container: ServiceContainer = Depends(get_service_container),
):
    broadcast_status = await container.broadcast.resume(payload.id)
    return ResponseBuilder.success(
        request=request,
        data=broadcast_status.model_dump(by_alias=True),
        message="Broadcast resumed",
    )


@broadcast_router.post("/finish", summary="Stop if running and forget the broadcast")
async def finish_broadcast(
    request: Request,
    payload: BroadcastIdRequest,
    container: ServiceContainer = Depends(get_service_container),
):
    await container.broadcast.finish(payload.id)
    return ResponseBuilder.success(
        request=request, data={"broadcastId": payload.id}, message="Broadcast finished"
    )


@broadcast_router.get("/status", summary="Broadcast status")
async def broadcast_status(
    request: Request,
    id: Annotated[str, Query(min_length=1, description="Broadcast id")],
    include_errors: Annotated[bool, Query(alias="includeErrors")] = False,
    include_logs: Annotated[bool, Query(alias="includeLogs")] = False,
    dispatcher: BroadcastDispatcher = Depends(get_broadcast_reader),
):
    status_ = await dispatcher.get_status(id)
    if status_ is None:
        raise NotFoundError(f"Broadcast {id} not found")

    data = {"status": status_.model_dump(by_alias=True)}
    if include_errors:
        data["errors"] = await dispatcher.get_errors(id)
    if include_logs:
        data["logs"] = await dispatcher.get_logs(id)
    return ResponseBuilder.success(request=request, data=data, message="Broadcast status")


@broadcast_router.get("/active", summary="Active or last broadcast")
async def active_broadcast(
    request: Request,
    dispatcher: BroadcastDispatcher = Depends(get_broadcast_reader),
):
    """Return the active session, else the last one; stale markers are cleared."""
    active = last = None

    active_id = await dispatcher.get_active_id()
    if active_id:
        active = await _session_snapshot(dispatcher, active_id)
        if active is None:
            await dispatcher.store.delete_if_equals(ACTIVE_BROADCAST_KEY, active_id)

    if active is None:
        last_id = await dispatcher.get_last_id()
        if last_id:
            last = await _session_snapshot(dispatcher, last_id)
            if last is None:
                await dispatcher.store.delete(LAST_BROADCAST_KEY)

    return ResponseBuilder.success(
        request=request, data={"active": active, "last": last}, message="Broadcast state"
    )


def _sse(event: str, payload) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def broadcast_event_stream(
    dispatcher: BroadcastDispatcher,
    broadcast_id: str,
    heartbeat: float = HEARTBEAT_SECONDS,
    poll_timeout: float = 1.0,
    monotonic=time.monotonic,
) -> AsyncIterator[str]:
    """
    Server-sent events for one broadcast.

    Subscribes first, then replays the current status and recent logs, so no
    event published in between is lost (at worst one is seen twice).
    """
    pubsub = await dispatcher.store.subscribe(dispatcher.events_channel(broadcast_id))
    try:
        current = await dispatcher.get_status(broadcast_id)
        if current is not None:
            yield _sse("status", current.model_dump(by_alias=True))
        for entry in await dispatcher.get_logs(broadcast_id, REPLAY_LOG_LIMIT):
            yield _sse("log", entry)
        await dispatcher.refresh_active_ttl()

        last_ping = monotonic()
        async for message in dispatcher.store.listen(pubsub, timeout=poll_timeout):
            if message is not None:
                try:
                    parsed = json.loads(message)
                    event = parsed.get("type") or "log"
                    payload = parsed.get("payload", parsed)
                except (ValueError, AttributeError):
                    event = "log"
                    payload = {"ts": int(time.time() * 1000), "level": "info", "message": message}
                yield _sse(event, payload)

            if monotonic() - last_ping >= heartbeat:
                last_ping = monotonic()
                yield _sse("ping", {})
    finally:
        await pubsub.unsubscribe()
        await pubsub.aclose()


@broadcast_router.get("/stream", summary="Live broadcast events (server-sent events)")
async def stream_broadcast(
    id: Annotated[str, Query(min_length=1, description="Broadcast id")],
    dispatcher: BroadcastDispatcher = Depends(get_broadcast_reader),
):
    if await dispatcher.get_status(id) is None:
        raise NotFoundError(f"Broadcast {id} not found")

    return StreamingResponse(
        broadcast_event_stream(dispatcher, id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
