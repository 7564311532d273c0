"""FastAPI application serving the peer sync protocol."""

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request

from ..config import Config
from ..exceptions import InvalidEventError
from ..sync import Event, EventKind, EventLog, SyncCoordinator

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


async def _read_json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Body is not valid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Body must be a JSON object")
    return body


def create_app(
    config: Config,
    log: EventLog,
    coordinator: SyncCoordinator | None = None,
) -> FastAPI:
    """Create the sync API application.

    Args:
        config: Application configuration.
        log: Local event log served to peers.
        coordinator: Optional coordinator, reported in stats.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="transport-share",
        description="Peer sync API for transport-share devices",
        version="0.1.0",
    )

    app.state.config = config
    app.state.log = log
    app.state.coordinator = coordinator

    # ==================== Peer protocol ====================

    @app.get("/api/sync/events")
    async def get_events(since: str | None = None, limit: int = 100) -> dict[str, Any]:
        """GetEvents: this device's events after a cursor, in log order."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        try:
            events = log.since(since or None).take(limit)
        except InvalidEventError as e:
            raise HTTPException(status_code=422, detail=str(e))

        return {
            "device_id": log.device_id,
            "events": [e.to_dict() for e in events],
            "cursor": events[-1].id if events else since,
        }

    @app.post("/api/sync/events")
    async def put_events(request: Request) -> dict[str, Any]:
        """PutEvents: merge a peer's events and acknowledge the last one."""
        body = await _read_json(request)
        try:
            events = [Event.from_dict(e) for e in body.get("events", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Malformed event: {e}")

        try:
            merged = log.merge(events)
        except InvalidEventError as e:
            logger.warning(f"Rejected events from peer: {e}")
            raise HTTPException(status_code=422, detail=str(e))

        return {
            "ack": events[-1].id if events else None,
            "accepted": merged.added,
            "duplicates": merged.duplicates,
            "conflicts": len(merged.conflicts),
        }

    # ==================== Local API ====================

    @app.post("/api/events")
    async def create_event(request: Request) -> dict[str, Any]:
        """Append a locally produced event (location fix, trip status...)."""
        body = await _read_json(request)
        try:
            kind = EventKind(body["kind"])
            resource_id = body["resource_id"]
        except (KeyError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Invalid event: {e}")

        payload = json.dumps(body.get("payload")).encode("utf-8")
        try:
            event = log.create(kind, resource_id, payload)
        except InvalidEventError as e:
            raise HTTPException(status_code=422, detail=str(e))

        return event.to_dict()

    @app.get("/api/resources/{resource_id}")
    async def get_resource(resource_id: str) -> dict[str, Any]:
        """Current canonical event of a resource."""
        head = log.head(resource_id)
        if head is None:
            raise HTTPException(status_code=404, detail=f"Unknown resource {resource_id}")
        return head.to_dict()

    @app.get("/api/stats")
    async def api_stats() -> dict[str, Any]:
        """Get log and sync statistics."""
        stats = {
            "device_name": config.device.name,
            "timestamp": datetime.now().isoformat(),
        }
        stats.update(log.get_stats())
        if coordinator:
            stats["sync"] = coordinator.get_sync_status()
        return stats

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK even if components are unavailable.
        """
        health = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "device_id": log.device_id,
            "components": {
                "log": True,
                "coordinator": coordinator is not None,
            },
        }

        try:
            health["components"]["live_events"] = log.count()
        except Exception as e:
            health["components"]["log_error"] = str(e)

        if coordinator:
            health["components"]["peers"] = coordinator.peers

        return health

    return app
