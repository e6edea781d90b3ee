"""Health check endpoint for monitoring and readiness probes."""

import time
from typing import Any, Dict

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from draftscout.cache.store import MatchCacheStore
from draftscout.database import SessionLocal

app = FastAPI(title="draftscout health check")

START_TIME = time.time()

store = MatchCacheStore(SessionLocal)


@app.get("/health")
async def health_check() -> JSONResponse:
    """
    Basic health check endpoint.

    Returns:
        JSON with status and uptime information
    """
    uptime = int(time.time() - START_TIME)
    return JSONResponse({
        "status": "healthy",
        "uptime_seconds": uptime,
        "service": "draftscout"
    })


@app.get("/readiness")
async def readiness_check() -> Response:
    """
    Kubernetes-style readiness probe.

    Returns:
        200 if the match cache database answers
        503 otherwise
    """
    try:
        with SessionLocal() as session:
            session.execute(text("SELECT 1"))
        return Response(status_code=200, content="Ready")
    except SQLAlchemyError as e:
        return Response(status_code=503, content=f"Not ready: {e}")


@app.get("/liveness")
async def liveness_check() -> Response:
    """Kubernetes-style liveness probe."""
    return Response(status_code=200, content="Alive")


@app.get("/metrics")
async def metrics() -> Dict[str, Any]:
    """Uptime plus the size of the match cache."""
    return {
        "uptime_seconds": int(time.time() - START_TIME),
        "start_time": START_TIME,
        "cached_matches": store.total_matches(),
        "cached_players": store.player_count(),
    }


if __name__ == "__main__":
    import uvicorn
    from draftscout.database import init_db

    init_db()
    uvicorn.run(app, host="0.0.0.0", port=8000)
