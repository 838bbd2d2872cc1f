"""
HTTP surface for deal analyses.

POST /analyses          -> Server-Sent Events stream for one new analysis job
GET  /analyses/{job_id} -> durable job state
GET  /health            -> liveness

Caller identity arrives in the X-User-Id header, set by the auth gateway in
front of this service.

Stream format:
  event: status
  data: {"message": "...", "progress_percent": 10, ...}

  event: done
  data: {"success": true, "result": {...}}
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Header, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from dealflow.pipeline.orchestrator import PipelineOrchestrator
from dealflow.storage.repo import StorageRepo
from dealflow.utils.error_taxonomy import (
    ERROR_FRIENDLY_MESSAGES,
    AuthorizationError,
    PipelineError,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",  # disable nginx buffering for SSE
    "Connection": "keep-alive",
}


class AnalysisRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=200)


class JobView(BaseModel):
    job_id: str
    subject_id: str
    status: str
    progress_percent: int
    current_step: str
    started_at: str
    completed_at: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    is_partial: bool = False
    quick_context: dict[str, Any] | None = None
    result: dict[str, Any] | None = None


def create_app(*, orchestrator: PipelineOrchestrator, repo: StorageRepo) -> FastAPI:
    app = FastAPI(title="dealflow", version="0.1.0")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/analyses", response_class=StreamingResponse)
    def start_analysis(
        body: AnalysisRequest,
        x_user_id: str | None = Header(default=None),
    ) -> StreamingResponse:
        try:
            handle = orchestrator.start(subject_id=body.subject_id, user_id=x_user_id)
        except AuthorizationError as error:
            raise HTTPException(status_code=error.status_code, detail=str(error)) from error
        except PipelineError as error:
            logger.error("Could not start analysis: %s", error)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Analysis could not be started",
            ) from error

        return StreamingResponse(
            handle.emitter.iter_sse(),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, "X-Job-Id": handle.job_id},
        )

    @app.get("/analyses/{job_id}", response_model=JobView)
    def get_analysis(
        job_id: str,
        x_user_id: str | None = Header(default=None),
    ) -> JobView:
        job = repo.get_job(job_id)
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
        try:
            orchestrator.authorizer.authorize(subject_id=job.subject_id, user_id=x_user_id)
        except AuthorizationError as error:
            raise HTTPException(status_code=error.status_code, detail=str(error)) from error

        return JobView(
            job_id=job.job_id,
            subject_id=job.subject_id,
            status=job.status,
            progress_percent=job.progress_percent,
            current_step=job.current_step,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error_code=job.error_code,
            error_message=ERROR_FRIENDLY_MESSAGES.get(job.error_code)  # type: ignore[arg-type]
            if job.error_code
            else None,
            is_partial=job.is_partial,
            quick_context=job.quick_context,
            result=job.result,
        )

    return app


def main() -> None:
    import uvicorn

    from dealflow.config.settings import get_settings
    from dealflow.container import build_runtime
    from dealflow.logging import setup_logging

    settings = get_settings()
    setup_logging(
        level=settings.log_level.upper(),
        log_file=str(settings.log_file) if settings.log_file else None,
    )
    runtime = build_runtime(settings)
    app = create_app(orchestrator=runtime.orchestrator, repo=runtime.repo)
    uvicorn.run(app, host=settings.server_host, port=settings.server_port)


if __name__ == "__main__":
    main()
