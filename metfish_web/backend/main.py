from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles

from .config import Settings, get_settings
from .errors import MetfishError
from .runner import run_training
from .schemas import (
    CheckpointListResponse,
    ErrorResponse,
    HealthResponse,
    JobResultResponse,
    ResultListResponse,
)
from .service import OrchestrationService, Runner, Upload
from .storage import ObjectStorage, build_storage


logger = logging.getLogger(__name__)


def _error(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def _as_upload(f: UploadFile | None) -> Upload | None:
    if f is None:
        return None
    return Upload(filename=f.filename, stream=f.file)


def create_app(
    settings: Settings | None = None,
    storage: ObjectStorage | None = None,
    runner: Runner = run_training,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    app = FastAPI(title="Metfish Web (FastAPI)", version="0.1.0", debug=settings.debug)
    app.state.settings = settings
    app.state.service = OrchestrationService(settings, storage or build_storage(settings), runner=runner)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MetfishError)
    async def _metfish_error(request: Request, exc: MetfishError) -> JSONResponse:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return _error(exc.http_status, ErrorResponse(message=exc.message, error_type=exc.error_type))

    @app.exception_handler(RequestValidationError)
    async def _request_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg', 'invalid')}"
            for err in exc.errors()
        )
        logger.warning("%s %s rejected: %s", request.method, request.url.path, problems)
        return _error(400, ErrorResponse(message=f"Invalid request: {problems}", error_type="validation_error"))

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s failed", request.method, request.url.path)
        return _error(500, ErrorResponse(message=str(exc) or type(exc).__name__, error_type="unexpected"))

    @app.get("/", response_class=HTMLResponse)
    def index() -> HTMLResponse:
        index_path = settings.frontend_dir / "index.html"
        if not index_path.exists():
            return HTMLResponse("<h3>frontend/index.html not found</h3>", status_code=500)
        return HTMLResponse(index_path.read_text(encoding="utf-8"))

    if settings.frontend_dir.exists():
        app.mount("/static", StaticFiles(directory=str(settings.frontend_dir)), name="static")

    @app.get("/health", response_model=HealthResponse)
    def health(request: Request) -> dict[str, Any]:
        return request.app.state.service.health()

    @app.get("/list-checkpoints", response_model=CheckpointListResponse)
    def list_checkpoints(request: Request) -> CheckpointListResponse:
        checkpoints = request.app.state.service.list_checkpoints()
        logger.info("listed %d checkpoints", len(checkpoints))
        return CheckpointListResponse(checkpoints=checkpoints)

    @app.post("/run-metfish", response_model=JobResultResponse)
    def run_metfish(
        request: Request,
        data_dir: UploadFile | None = File(None),
        test_csv_file: UploadFile | None = File(None),
        checkpoint_file: str = Form(""),
        num_iterations: str = Form("500"),
        learning_rate: str = Form("1e-3"),
        sequence_index: str = Form("0"),
        save_frequency: str = Form("25"),
        random_init: str = Form("true"),
        saxs_ext: str = Form("_atom_only.csv"),
    ) -> Any:
        # Blocks until the training process exits; runs in FastAPI's threadpool.
        result = request.app.state.service.submit_job(
            _as_upload(data_dir),
            _as_upload(test_csv_file),
            checkpoint_file,
            {
                "num_iterations": num_iterations,
                "learning_rate": learning_rate,
                "sequence_index": sequence_index,
                "save_frequency": save_frequency,
                "random_init": random_init,
                "saxs_ext": saxs_ext,
            },
        )
        if not result.ok:
            return _error(
                result.http_status,
                ErrorResponse(
                    message=result.message or "job failed",
                    error_type=result.error_type or "error",
                    job_id=result.job_id,
                    output=result.output or None,
                    traceback=result.traceback,
                ),
            )
        return JobResultResponse(job_id=result.job_id, results=result.results, output=result.output)

    @app.get("/get-results/{job_id}", response_model=ResultListResponse)
    def get_results(request: Request, job_id: str) -> ResultListResponse:
        results = request.app.state.service.list_results(job_id)
        return ResultListResponse(job_id=job_id, results=results)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("metfish_web.backend.main:app", host="0.0.0.0", port=8080)
