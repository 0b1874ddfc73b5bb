from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Query, status
from pydantic import BaseModel, Field

from media_transcoder.controller import JobController
from media_transcoder.errors import TranscoderError

ERROR_STATUS = {
    "InvalidInput": status.HTTP_400_BAD_REQUEST,
    "SourceNotFound": status.HTTP_404_NOT_FOUND,
    "SourceTypeUnsupported": status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
    "ServiceUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


# --- Pydantic Models for Requests ---
class JobCreate(BaseModel):
    mediaRef: str = Field(..., min_length=1)  # noqa: N815
    outputs: list[dict[str, Any]] | None = None
    webhookUrl: str | None = None  # noqa: N815


def _http_error(exc: TranscoderError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"code": exc.code, "message": exc.message},
    )


def create_app(controller: JobController) -> FastAPI:
    """Build the HTTP app around an already wired controller.

    Endpoints are plain ``def`` functions: FastAPI runs them in its
    threadpool, which suits the blocking SQLite and storage calls.
    """
    app = FastAPI(title="media-transcoder")
    app.state.controller = controller

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/jobs", status_code=status.HTTP_202_ACCEPTED)
    def create_job(body: JobCreate):
        try:
            job = controller.submit(body.mediaRef, body.outputs, body.webhookUrl)
        except TranscoderError as e:
            raise _http_error(e) from e

        data = job.to_api()
        return {
            key: data[key]
            for key in ("id", "mediaRef", "status", "progress", "outputs", "webhookUrl")
        }

    @app.get("/jobs")
    def list_jobs(
        mediaRef: str | None = None,  # noqa: N803
        status_filter: str | None = Query(default=None, alias="status"),
        limit: int = Query(default=20, ge=1, le=200),
        offset: int = Query(default=0, ge=0),
    ):
        try:
            jobs = controller.list_jobs(
                media_ref=mediaRef, status=status_filter, limit=limit, offset=offset
            )
        except TranscoderError as e:
            raise _http_error(e) from e
        return [job.to_api() for job in jobs]

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        job = controller.get(job_id)
        if not job:
            raise HTTPException(
                status_code=404, detail={"code": "JobNotFound", "message": "Job not found"}
            )
        return job.to_api()

    @app.get("/presets")
    def list_presets():
        return [spec.model_dump() for spec in controller.supported_outputs()]

    return app
