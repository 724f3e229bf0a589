"""
HTTP surface for bulk jobs. Serve with:

    uvicorn src.api.app:app --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from src.api import jobs as job_routes
from src.db import _utc_now_iso, ensure_schema


@asynccontextmanager
async def lifespan(_app: FastAPI):
    ensure_schema()
    yield


app = FastAPI(title="Bulk Jobs API", lifespan=lifespan)

app.include_router(job_routes.router)


@app.get("/health")
@app.get("/api/v1/health", include_in_schema=False)
def health() -> dict[str, str]:
    return {"status": "ok", "time": _utc_now_iso()}
