"""
HTTP API for the funnel.

``create_app`` wraps a :class:`~hirefunnel.app.FunnelApp` in a FastAPI
application.  Successful responses are ``{"success": true, "data": ...}``.
Any :class:`~hirefunnel.errors.FunnelError` becomes
``{"success": false, "message": ...}`` with the error's status code;
other exceptions become a generic 500 unless the app runs in debug mode.

Run it with ``hirefunnel serve`` or ``uvicorn`` directly.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .app import FunnelApp
from .errors import FunnelError, ValidationError
from .models.schema import ResumeFile

logger = logging.getLogger(__name__)


def _ok(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": True, "data": jsonable_encoder(data)})


def create_app(funnel: Optional[FunnelApp] = None) -> FastAPI:
    funnel = funnel or FunnelApp()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await funnel.initialize()
        try:
            yield
        finally:
            await funnel.shutdown()

    app = FastAPI(
        title="hirefunnel",
        version="0.1.0",
        description="Candidate funnel processing: batch résumé intake, staged analysis and ranking",
        lifespan=lifespan,
    )
    app.state.funnel = funnel
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(FunnelError)
    async def funnel_error_handler(request: Request, exc: FunnelError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        message = str(exc) if funnel.config.debug else "Internal server error"
        return JSONResponse(status_code=500, content={"success": False, "message": message})

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        memory = funnel.governor.health_check()
        return {"status": "ok" if memory["healthy"] else "degraded", "level": funnel.governor.level}

    # Job profiles -------------------------------------------------------

    @app.post("/api/job-profiles")
    async def create_job_profile(payload: Dict[str, Any] = Body(...)) -> JSONResponse:
        return _ok(funnel.create_job_profile(payload), status_code=201)

    @app.get("/api/job-profiles/{profile_id}")
    async def get_job_profile(profile_id: str) -> JSONResponse:
        return _ok(funnel.get_job_profile(profile_id))

    @app.get("/api/job-profiles/{profile_id}/rankings")
    async def rankings(
        profile_id: str,
        min_score: Optional[float] = Query(None, ge=0, le=100),
        recommendation: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
    ) -> JSONResponse:
        scores = funnel.rank(profile_id, min_score=min_score, recommendation=recommendation)
        return _ok({"total": len(scores), "rankings": [s.to_dict() for s in scores[:limit]]})

    # Batches ------------------------------------------------------------

    @app.post("/api/batches")
    async def submit_batch(
        job_profile_id: str = Form(...),
        files: List[UploadFile] = File(...),
    ) -> JSONResponse:
        items = []
        for upload in files:
            if not upload.filename:
                raise ValidationError("Every uploaded file needs a file name")
            items.append(ResumeFile(file_name=upload.filename, content=await upload.read()))
        batch = funnel.submit_batch(items, job_profile_id)
        return _ok({"batch_id": batch.id, "total_count": batch.total_count, "status": batch.status}, 202)

    @app.get("/api/batches")
    async def active_batches() -> JSONResponse:
        return _ok([funnel.coordinator.get_batch_progress(b.id) for b in funnel.coordinator.get_active_batches()])

    @app.get("/api/batches/{batch_id}/progress")
    async def batch_progress(batch_id: str) -> JSONResponse:
        return _ok(funnel.coordinator.get_batch_progress(batch_id))

    @app.post("/api/batches/{batch_id}/cancel")
    async def cancel_batch(batch_id: str) -> JSONResponse:
        batch = funnel.coordinator.cancel_batch(batch_id)
        return _ok(funnel.coordinator.get_batch_progress(batch.id))

    # Candidates ---------------------------------------------------------

    @app.get("/api/candidates/{candidate_id}/progress")
    async def candidate_progress(candidate_id: str) -> JSONResponse:
        return _ok(funnel.get_candidate_progress(candidate_id).to_dict())

    @app.get("/api/candidates/{candidate_id}/score")
    async def candidate_score(candidate_id: str) -> JSONResponse:
        return _ok(funnel.get_candidate_score(candidate_id).to_dict())

    @app.post("/api/candidates/{candidate_id}/retry")
    async def retry_candidate(candidate_id: str, payload: Dict[str, Any] = Body(...)) -> JSONResponse:
        stage = payload.get("stage")
        if not stage:
            raise ValidationError("'stage' is required")
        candidate = await funnel.retry_candidate(candidate_id, str(stage))
        return _ok({"candidate_id": candidate.id, "stage": candidate.stage, "retry_count": candidate.retry_count}, 202)

    # System -------------------------------------------------------------

    @app.get("/api/system/stats")
    async def system_stats() -> JSONResponse:
        return _ok(funnel.system_stats())

    @app.post("/api/system/stats/reset")
    async def reset_stats(endpoint: Optional[str] = Query(None)) -> JSONResponse:
        funnel.reset_stats(endpoint)
        return _ok({"reset": endpoint or "all"})

    return app
