import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from callsync.backend import CallListClient
from callsync.config import SyncConfig, validate_config
from callsync.directory import HttpDirectory
from callsync.notifications import WebhookNotificationSink
from callsync.numbers import NumberNormalizer
from callsync.records import CallRecord, Direction, EndReason, PeerRecord
from callsync.service import CallHistorySync
from callsync.states import ClassOfService
from callsync.store import SQLiteCallHistoryStore

load_dotenv()

logger = logging.getLogger(__name__)


def _timestamp(value) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def local_call_from_payload(body, normalizer: NumberNormalizer) -> CallRecord:
    """Build a call made or received on this client from a ``POST /calls`` body.

    ``{"direction": "in"|"out", "start": ISO-8601, "end": ISO-8601,
    "answered": bool, "attention": bool, "peers": [{"address", "name"}]}``.
    ``end`` defaults to ``start`` (a missed call); unseen missed calls need attention.
    """
    if not isinstance(body, dict):
        raise TypeError("body must be an object")
    direction = Direction(body["direction"])
    start = _timestamp(body["start"])
    end = _timestamp(body.get("end") or body["start"])
    if end < start:
        raise ValueError("end is before start")
    peers = [
        PeerRecord(
            address=peer["address"],
            normalized_number=normalizer.normalize(peer["address"]),
            display_name=peer.get("name"),
        )
        for peer in body.get("peers") or []
    ]
    if not peers:
        raise ValueError("a call needs at least one peer")

    end_reason = None
    if direction == Direction.IN and body.get("answered"):
        end_reason = EndReason.NORMAL_CLEARING
    record = CallRecord(
        direction=direction,
        start_time=start,
        end_time=end,
        peers=peers,
        end_reason=end_reason,
    )
    record.attention = bool(body.get("attention", record.is_missed)) and record.is_missed
    return record


def build_service(config: SyncConfig) -> CallHistorySync:
    """Wire the sync service from configuration."""
    store, settings = SQLiteCallHistoryStore.open(config.db_path)
    directory = HttpDirectory(config.directory_url, api_key=config.api_key) if config.directory_url else None
    sink = (
        WebhookNotificationSink(url=config.notify_url, secret=config.notify_secret)
        if config.notify_url else None
    )
    return CallHistorySync(
        client=CallListClient(config.backend_url, api_key=config.api_key),
        store=store,
        settings=settings,
        directory=directory,
        sink=sink,
        normalizer=NumberNormalizer(region=config.region, external_line_code=config.external_line_code),
        refresh_interval=config.refresh_interval,
        initial_delay=config.initial_delay,
        lookup_timeout=config.lookup_timeout,
    )


def create_app(service: Optional[CallHistorySync] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        sync = service
        if sync is None:
            validate_config()
            sync = build_service(SyncConfig.from_env())
        app.state.sync = sync
        await sync.start()
        try:
            yield
        finally:
            await sync.stop()
            if service is None:
                await sync.client.close()
                if isinstance(sync.reconciler.names.directory, HttpDirectory):
                    await sync.reconciler.names.directory.close()
                sync.store.close()

    app = FastAPI(title="Call History Sync", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return PlainTextResponse("ok")

    @app.get("/status")
    async def status(request: Request):
        sync: CallHistorySync = request.app.state.sync
        return JSONResponse({
            "state": sync.state.value,
            "fetch_in_flight": sync.fetch_in_flight,
            "first_run": sync.first_run,
            "service_indication": sync.si_name,
            "unresolved_missed_calls": len(sync.reconciler.unresolved),
        })

    @app.post("/refresh")
    async def refresh(request: Request):
        scheduled = await request.app.state.sync.trigger_refresh()
        return JSONResponse({"scheduled": scheduled})

    @app.post("/events/missed-call")
    async def missed_call(request: Request):
        return JSONResponse({"accepted": request.app.state.sync.on_missed_call()})

    @app.post("/events/network-up")
    async def network_up(request: Request):
        return JSONResponse({"accepted": request.app.state.sync.on_network_up()})

    @app.post("/events/message-waiting")
    async def message_waiting(request: Request):
        body = await request.json()
        try:
            unread = int(body.get("unread", 0))
        except (AttributeError, TypeError, ValueError):
            return JSONResponse({"error": "unread must be an integer"}, status_code=400)
        return JSONResponse({"accepted": request.app.state.sync.on_message_waiting(unread)})

    @app.post("/events/call-state")
    async def call_state(request: Request):
        body = await request.json()
        if not isinstance(body, dict):
            return JSONResponse({"error": "call state must be an object"}, status_code=400)
        accepted = request.app.state.sync.on_call_state(
            bool(body.get("on_phone", False)), body.get("peers") or [],
        )
        return JSONResponse({"accepted": accepted})

    @app.post("/calls")
    async def record_call(request: Request):
        body = await request.json()
        sync: CallHistorySync = request.app.state.sync
        try:
            record = local_call_from_payload(body, sync.normalizer)
        except (AttributeError, LookupError, TypeError, ValueError) as e:
            return JSONResponse({"error": f"bad call record: {e}"}, status_code=400)
        await asyncio.to_thread(sync.store.add_local_call, record)
        logger.debug("Recorded local %s call with %d peers", record.direction.value, len(record.peers))
        return JSONResponse({"recorded": True, "id": record.record_id})

    @app.post("/cos")
    async def class_of_service(request: Request):
        body = await request.json()
        if not isinstance(body, dict):
            return JSONResponse({"error": "class of service must be an object"}, status_code=400)
        sync: CallHistorySync = request.app.state.sync
        await sync.apply_class_of_service(ClassOfService.from_payload(body))
        return JSONResponse({"state": sync.state.value})

    return app


def main() -> None:
    logging.basicConfig(
        level=SyncConfig.from_env().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT", "8765"))
    uvicorn.run(create_app(), host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
