from fastapi import Depends, FastAPI, HTTPException
from prometheus_fastapi_instrumentator import Instrumentator

from bell_dispatch.db.session import get_redis
from bell_dispatch.utils.timezone import utc_now
from .config import settings
from .exceptions import PersistenceError
from .repository import KeySpace
from .trigger_index import PendingTriggerIndex, RedisTriggerIndex


def get_trigger_index() -> PendingTriggerIndex:
    return RedisTriggerIndex(get_redis(), KeySpace())


def create_app() -> FastAPI:
    app = FastAPI(title="Reminder Dispatch Service")

    @app.get("/health")
    def health(index: PendingTriggerIndex = Depends(get_trigger_index)) -> dict:
        try:
            pending = index.size()
            due_now = len(index.due(utc_now()))
        except PersistenceError as exc:
            raise HTTPException(status_code=503, detail=f"store unavailable: {exc}")
        return {"status": "ok", "pending": pending, "due_now": due_now}

    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app, endpoint="/metrics")
    return app
