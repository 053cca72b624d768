"""
FastAPI HTTP surface over the queue, cache, search and scheduler services.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from space_monitor import __version__
from space_monitor.caching import CacheStore
from space_monitor.queueing import QueueStore
from space_monitor.scheduler import Scheduler
from space_monitor.search import SearchIndex


logger = logging.getLogger(__name__)


class ScheduleRequest(BaseModel):
    """Body of POST /scheduler/schedule."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    task: str
    cron: Optional[str] = None
    interval_seconds: Optional[float] = Field(default=None, alias="intervalSeconds", gt=0)


def create_app(
    queue_store: QueueStore,
    cache: CacheStore,
    search_index: SearchIndex,
    scheduler: Scheduler
) -> FastAPI:
    """
    Build the HTTP application around existing service instances.

    Args:
        queue_store: Priority Queue Store
        cache: Cache Store
        search_index: Search index
        scheduler: Scheduler

    Returns:
        FastAPI application
    """
    app = FastAPI(title="space-monitor", version=__version__)

    probes = {
        "queue": queue_store.status,
        "cache": cache.status,
        "search": search_index.status,
        "scheduler": lambda: True,
    }

    # Queue

    @app.post("/queue/enqueue/{queue_name}")
    def enqueue(queue_name: str, item: Any = Body(...)) -> Dict[str, str]:
        queue_store.enqueue(queue_name, item)
        return {"status": "ok"}

    @app.get("/queue/dequeue/{queue_name}")
    def dequeue(queue_name: str) -> Any:
        item = queue_store.dequeue(queue_name)
        if item is None:
            raise HTTPException(status_code=404, detail=f"Queue is empty: {queue_name}")
        return item

    @app.get("/queue/size/{queue_name}")
    def size(queue_name: str) -> int:
        return queue_store.size(queue_name)

    @app.get("/queue/stats")
    def queue_stats():
        return queue_store.get_queue_stats()

    # Cache

    @app.post("/cache/put/{key:path}")
    def cache_put(key: str, value: Any = Body(None)) -> Dict[str, str]:
        cache.put(key, value)
        return {"status": "ok"}

    @app.get("/cache/get/{key:path}")
    def cache_get(key: str) -> Any:
        return cache.get(key)

    @app.delete("/cache/delete/{key:path}")
    def cache_delete(key: str) -> Dict[str, str]:
        cache.delete(key)
        return {"status": "ok"}

    # Search

    @app.post("/search/add/{key:path}")
    def search_add(key: str, document: Dict[str, Any] = Body(...)) -> Dict[str, str]:
        if not search_index.add(key, document):
            raise HTTPException(status_code=409, detail=f"Key already exists: {key}")
        return {"status": "ok"}

    @app.delete("/search/remove/{key:path}")
    def search_remove(key: str) -> Dict[str, str]:
        if not search_index.remove(key):
            raise HTTPException(status_code=404, detail=f"Key not found: {key}")
        return {"status": "ok"}

    @app.get("/search/search")
    def search(q: str = ""):
        return [{"key": key, "document": doc} for key, doc in search_index.search(q)]

    # Scheduler

    @app.post("/scheduler/schedule")
    def schedule(request: ScheduleRequest) -> Dict[str, str]:
        cadence = request.interval_seconds if request.interval_seconds is not None else request.cron
        if cadence is None:
            raise HTTPException(status_code=422, detail="Either cron or intervalSeconds is required")

        try:
            scheduler.start(request.task, cadence)
        except ValueError as e:
            status_code = 409 if scheduler.is_running(request.task) else 422
            raise HTTPException(status_code=status_code, detail=str(e))

        return {"status": "ok", "task": request.task}

    @app.delete("/scheduler/cancel/{task}")
    def cancel(task: str) -> Dict[str, str]:
        if not scheduler.is_running(task):
            raise HTTPException(status_code=404, detail=f"Task not scheduled: {task}")
        scheduler.cancel(task)
        return {"status": "ok"}

    @app.get("/scheduler/stats")
    def scheduler_stats():
        return scheduler.get_schedule_stats()

    # Status

    @app.get("/{service}/status", response_class=PlainTextResponse)
    def status(service: str) -> str:
        probe = probes.get(service)
        if probe is None:
            raise HTTPException(status_code=404, detail=f"Unknown service: {service}")
        if not probe():
            raise HTTPException(status_code=503, detail=f"{service} service is unavailable")
        return f"{service} service is running"

    return app
