from __future__ import annotations
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from rollups.config import settings
from rollups.errors import (BucketNotFoundError, InvalidTenantError, RollupError, StoreUnavailableError,
                            WindowNotConfiguredError)
from rollups.schemas import Event, KeyPair, TenantConfig, WindowKind
from rollups.service import RollupService, build_service
from rollups.tenants import load_tenant_configs

_STATUS = {
    InvalidTenantError: 401,
    BucketNotFoundError: 404,
    WindowNotConfiguredError: 404,
    StoreUnavailableError: 503,
}

class BucketLookup(BaseModel):
    timestamp: int
    grouping: str
    attributes: List[KeyPair] = Field(default_factory=list)

def create_app(service: RollupService, tenants_path: Optional[str] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        service.close()

    app = FastAPI(title="Event Rollups API", version="1.0.0", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(RollupError)
    async def _rollup_error(request: Request, exc: RollupError):
        status = next((code for cls, code in _STATUS.items() if isinstance(exc, cls)), 503)
        return JSONResponse(status_code=status, content={"detail": str(exc)})

    @app.post("/v1/{application_id}/events")
    def log_events(application_id: str, events: List[Event]):
        return [r.model_dump() for r in service.log_events(application_id, events)]

    @app.get("/v1/{application_id}/events")
    def all_events(application_id: str, limit: int = Query(100, ge=1), skip: int = Query(0, ge=0)):
        return service.all_events(application_id, limit=limit, skip=skip).model_dump()

    @app.get("/v1/{application_id}/buckets/{window}")
    def query_buckets(
        application_id: str,
        window: WindowKind,
        start: int = Query(...),
        end: int = Query(...),
        grouping: Optional[str] = Query(None),
        nested_grouping: Optional[str] = Query(None),
        limit: int = Query(100, ge=1),
        skip: int = Query(0, ge=0),
    ):
        page = service.query_event_groups(application_id, window, start, end, grouping=grouping,
                                          nested_grouping=nested_grouping, limit=limit, skip=skip)
        return page.model_dump()

    @app.post("/v1/{application_id}/buckets/{window}/lookup")
    def bucket_by_keys(application_id: str, window: WindowKind, body: BucketLookup):
        return service.bucket_by_keys(application_id, window, body.timestamp, body.grouping, body.attributes).model_dump()

    @app.get("/v1/{application_id}/buckets/{window}/count")
    def count_buckets(
        application_id: str,
        window: WindowKind,
        start: int = Query(...),
        end: int = Query(...),
        grouping: str = Query(...),
        nested_grouping: Optional[str] = Query(None),
    ):
        return service.count_events_by_group(application_id, window, start, end, grouping,
                                             nested_grouping=nested_grouping).model_dump()

    @app.get("/v1/configs")
    def configs():
        return {"configs": [c.model_dump() for c in service.registry.snapshot().values()]}

    @app.post("/v1/configs/refresh")
    def refresh_configs(body: Optional[List[TenantConfig]] = None):
        if body is not None:
            snap = service.registry.replace(body)
        else:
            snap = service.registry.replace(load_tenant_configs(tenants_path or settings.tenants_path))
        return {"tenants": sorted(snap)}

    return app

app = create_app(build_service(settings))
