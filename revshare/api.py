"""
Revshare API Endpoints.

Public advisory reads:
- GET /api/revshare/stats
- GET /api/revshare/eligibility/{wallet}
- GET /api/revshare/estimate/{wallet}

Operator control plane (X-Operator-Key header):
- GET  /api/revshare/admin/preview
- POST /api/revshare/admin/distribute
- GET  /api/revshare/admin/plans/{distribution_id}
- GET  /api/revshare/metrics         (Prometheus text or JSON)

Advisory reads return last known values with ``as_of``; only the distribute
action reports failures as errors.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .errors import RevshareError
from .metrics import get_registry
from .service import RevshareEngine, describe_result

logger = logging.getLogger(__name__)


class DistributeRequest(BaseModel):
    dry_run: bool = False


def create_revshare_router(
    engine: RevshareEngine,
    operator_key: str,
    prefix: str = "/api/revshare",
) -> APIRouter:
    """
    Create the revshare router.

    Args:
        engine: Running RevshareEngine
        operator_key: Required value of X-Operator-Key for admin routes;
            empty disables the admin routes entirely
        prefix: URL prefix for the router
    """
    router = APIRouter(prefix=prefix, tags=["revshare"])

    async def verify_operator(x_operator_key: Optional[str] = Header(None, alias="X-Operator-Key")) -> str:
        if not operator_key:
            raise HTTPException(status_code=503, detail="Operator control plane is disabled")
        if not x_operator_key:
            raise HTTPException(status_code=401, detail="Missing X-Operator-Key header")
        if not hmac.compare_digest(x_operator_key.encode(), operator_key.encode()):
            logger.warning("Invalid operator key attempt")
            raise HTTPException(status_code=403, detail="Invalid operator key")
        return x_operator_key

    def error_response(e: RevshareError) -> JSONResponse:
        return JSONResponse(status_code=e.status_code, content={"error": e.to_dict()})

    # =========================================================================
    # Public
    # =========================================================================

    @router.get("/stats")
    async def get_stats():
        return await engine.stats()

    @router.get("/eligibility/{wallet}")
    async def get_eligibility(wallet: str):
        return engine.eligibility_for(wallet)

    @router.get("/estimate/{wallet}")
    async def get_estimate(wallet: str):
        return await engine.estimate(wallet)

    # =========================================================================
    # Operator
    # =========================================================================

    @router.get("/admin/preview", dependencies=[Depends(verify_operator)])
    async def preview():
        try:
            return describe_result(await engine.preview())
        except RevshareError as e:
            return error_response(e)

    @router.post("/admin/distribute", dependencies=[Depends(verify_operator)])
    async def distribute(request: Optional[DistributeRequest] = None):
        try:
            if request and request.dry_run:
                return await engine.dry_run()
            outcome = await engine.distribute()
        except RevshareError as e:
            logger.error(f"Distribution failed: {e.message}")
            return error_response(e)
        return outcome.to_dict()

    @router.get("/admin/plans/{distribution_id}", dependencies=[Depends(verify_operator)])
    async def get_plan(distribution_id: str):
        try:
            return engine.get_plan(distribution_id)
        except RevshareError as e:
            return error_response(e)

    @router.get("/metrics", dependencies=[Depends(verify_operator)])
    async def get_metrics(format: str = Query("prometheus", pattern="^(prometheus|json)$")):
        if format == "json":
            return get_registry().snapshot()
        return PlainTextResponse(get_registry().export_prometheus())

    return router


def create_app(engine: RevshareEngine, run_engine: bool = False) -> FastAPI:
    """
    Standalone app serving the revshare router.

    With ``run_engine`` the app lifespan also starts the periodic tasks and
    closes the engine on shutdown (``revshare serve``).
    """
    lifespan = None
    if run_engine:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            engine.start()
            try:
                yield
            finally:
                await engine.close()

    app = FastAPI(title="Revshare", version="1.0.0", lifespan=lifespan)
    app.include_router(create_revshare_router(engine, engine.config.operator.operator_key))

    @app.get("/health")
    async def health():
        return {"status": "ok", "tasks": engine.scheduler.status()}

    return app
