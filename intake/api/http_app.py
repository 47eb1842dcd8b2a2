from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, File, Form, HTTPException, Path, Query, Request, UploadFile

from intake.api.handlers.deps import ApiDeps
from intake.api.handlers.notifications import (
    clear_read_notifications_handler,
    delete_notification_handler,
    list_notifications_handler,
    mark_all_notifications_read_handler,
    mark_notification_read_handler,
)
from intake.api.handlers.requeue import requeue_submission_handler
from intake.api.handlers.stats import get_statistics_handler
from intake.api.handlers.status import get_submission_status_handler
from intake.api.handlers.submissions import (
    create_batch_handler,
    create_submission_handler,
    list_submissions_handler,
    upload_csv_handler,
)
from intake.api.schemas import (
    NOTIFICATION_ID_PATTERN,
    SUBMISSION_ID_PATTERN,
    CreateBatchRequest,
    CreateSubmissionRequest,
    EnqueueResponse,
    ErrorResponse,
    HealthResponse,
    NotificationActionResponse,
    NotificationListResponse,
    ReadyResponse,
    StatisticsResponse,
    SubmissionListResponse,
    SubmissionResponse,
    WorkerMetrics,
)
from intake.domain.errors import DomainDependencyError, DomainInvariantError, DomainValidationError
from intake.domain.models import Operation, Source, SubmissionStatus
from intake.workers.runner import (
    QueueLoop,
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_pool_until_stopped,
    worker_runtime_settings_from_env,
)

ENQUEUE_ERRORS = {400: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}}


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, DomainValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, DomainInvariantError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=503, detail=str(exc))


def _client_meta(request: Request) -> tuple[str | None, str | None]:
    ip_address = request.client.host if request.client is not None else None
    return ip_address, request.headers.get("user-agent")


def build_app(
    role: str,
    run_id: str,
    worker_loops: list[QueueLoop] | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    loops = list(worker_loops or [])
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if loops:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_pool_until_stopped(
                    worker_loops=loops,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="student-intake", version="0.1.0", lifespan=lifespan)
    mode = "pipeline" if api_deps is not None else "skeleton"

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = bool(loops)
        worker_loop_ready = True
        metrics = WorkerMetrics(
            started=False,
            stopped=False,
            ticks_total=0,
            claims_total=0,
            idle_ticks_total=0,
            errors_total=0,
        )
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
            if worker_state is not None:
                metrics = WorkerMetrics(
                    started=worker_state.started,
                    stopped=worker_state.stopped,
                    ticks_total=worker_state.ticks_total,
                    claims_total=worker_state.claims_total,
                    idle_ticks_total=worker_state.idle_ticks_total,
                    errors_total=worker_state.errors_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_concurrency=len(loops),
            worker_metrics=metrics,
        )

    @app.post(
        "/submissions",
        response_model=EnqueueResponse,
        status_code=202,
        responses=ENQUEUE_ERRORS,
        tags=["Submissions"],
    )
    async def create_submission(payload: CreateSubmissionRequest, request: Request) -> EnqueueResponse:
        deps = _require_deps()
        ip_address, user_agent = _client_meta(request)
        try:
            return await create_submission_handler(
                request=payload,
                ip_address=ip_address,
                user_agent=user_agent,
                api_deps=deps,
            )
        except (DomainValidationError, DomainDependencyError) as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/submissions/batch",
        response_model=EnqueueResponse,
        status_code=202,
        responses=ENQUEUE_ERRORS,
        tags=["Submissions"],
    )
    async def create_batch(payload: CreateBatchRequest, request: Request) -> EnqueueResponse:
        deps = _require_deps()
        ip_address, user_agent = _client_meta(request)
        try:
            return await create_batch_handler(
                request=payload,
                ip_address=ip_address,
                user_agent=user_agent,
                api_deps=deps,
            )
        except (DomainValidationError, DomainDependencyError) as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/submissions/csv",
        response_model=EnqueueResponse,
        status_code=202,
        responses=ENQUEUE_ERRORS,
        tags=["Submissions"],
    )
    async def upload_csv(
        request: Request,
        file: UploadFile = File(...),
        operation: str = Form(default="create"),
    ) -> EnqueueResponse:
        deps = _require_deps()
        ip_address, user_agent = _client_meta(request)
        file_bytes = await file.read()
        try:
            return await upload_csv_handler(
                filename=file.filename or "upload.csv",
                payload=file_bytes,
                operation=operation,
                ip_address=ip_address,
                user_agent=user_agent,
                api_deps=deps,
            )
        except (DomainValidationError, DomainDependencyError) as exc:
            raise _http_error(exc) from exc

    @app.get("/submissions", response_model=SubmissionListResponse, tags=["Submissions"])
    async def list_submissions(
        status: SubmissionStatus | None = Query(default=None),
        operation: Operation | None = Query(default=None),
        source: Source | None = Query(default=None),
        email: str | None = Query(default=None, max_length=255),
        batch_id: str | None = Query(default=None),
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> SubmissionListResponse:
        deps = _require_deps()
        try:
            return await list_submissions_handler(
                status=status,
                operation=operation,
                source=source,
                email=email,
                batch_id=batch_id,
                limit=limit,
                offset=offset,
                api_deps=deps,
            )
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc

    @app.get(
        "/submissions/{submission_id}",
        response_model=SubmissionResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Submissions"],
    )
    async def get_submission(
        submission_id: str = Path(pattern=SUBMISSION_ID_PATTERN),
    ) -> SubmissionResponse:
        deps = _require_deps()
        try:
            found = await get_submission_status_handler(submission_id=submission_id, api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc
        if found is None:
            raise HTTPException(status_code=404, detail="submission not found")
        return found

    @app.post(
        "/submissions/{submission_id}/requeue",
        response_model=SubmissionResponse,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Submissions"],
    )
    async def requeue(
        submission_id: str = Path(pattern=SUBMISSION_ID_PATTERN),
    ) -> SubmissionResponse:
        deps = _require_deps()
        try:
            requeued = await requeue_submission_handler(submission_id=submission_id, api_deps=deps)
        except (DomainInvariantError, DomainDependencyError) as exc:
            raise _http_error(exc) from exc
        if requeued is None:
            raise HTTPException(status_code=404, detail="submission not found")
        return requeued

    @app.get("/stats", response_model=StatisticsResponse, tags=["Statistics"])
    async def statistics(
        hours: int = Query(default=24, ge=1, le=168),
        top: int = Query(default=10, ge=1, le=100),
    ) -> StatisticsResponse:
        deps = _require_deps()
        try:
            return await get_statistics_handler(hours=hours, top=top, api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc

    @app.get("/notifications", response_model=NotificationListResponse, tags=["Notifications"])
    async def notifications(limit: int = Query(default=10, ge=1, le=100)) -> NotificationListResponse:
        deps = _require_deps()
        try:
            return await list_notifications_handler(limit=limit, api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc

    @app.post("/notifications/read-all", response_model=NotificationActionResponse, tags=["Notifications"])
    async def mark_all_notifications_read() -> NotificationActionResponse:
        deps = _require_deps()
        try:
            return await mark_all_notifications_read_handler(api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc

    @app.delete("/notifications/read", response_model=NotificationActionResponse, tags=["Notifications"])
    async def clear_read_notifications() -> NotificationActionResponse:
        deps = _require_deps()
        try:
            return await clear_read_notifications_handler(api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc

    @app.post(
        "/notifications/{notification_id}/read",
        response_model=NotificationActionResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Notifications"],
    )
    async def mark_notification_read(
        notification_id: str = Path(pattern=NOTIFICATION_ID_PATTERN),
    ) -> NotificationActionResponse:
        deps = _require_deps()
        try:
            marked = await mark_notification_read_handler(notification_id=notification_id, api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc
        if marked is None:
            raise HTTPException(status_code=404, detail="notification not found")
        return marked

    @app.delete(
        "/notifications/{notification_id}",
        response_model=NotificationActionResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Notifications"],
    )
    async def delete_notification(
        notification_id: str = Path(pattern=NOTIFICATION_ID_PATTERN),
    ) -> NotificationActionResponse:
        deps = _require_deps()
        try:
            deleted = await delete_notification_handler(notification_id=notification_id, api_deps=deps)
        except DomainDependencyError as exc:
            raise _http_error(exc) from exc
        if deleted is None:
            raise HTTPException(status_code=404, detail="notification not found")
        return deleted

    return app
