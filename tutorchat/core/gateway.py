"""FastAPI app entry."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tutorchat.adapters.chat.router import error_response, router as chat_router, store
from tutorchat.adapters.gemini.upstream import close_upstream_async_client
from tutorchat.config.settings import settings
from tutorchat.core.errors import PayloadTooLargeError, TutorChatError, ValidationError
from tutorchat.core.idempotency_prune_task import IdempotencyPruneTask
from tutorchat.util.logger import logger

app = FastAPI(title=settings.app_name)
app.include_router(chat_router, prefix=settings.api_prefix)
_prune_task: IdempotencyPruneTask | None = None

_BODY_METHODS = {"POST", "PUT", "PATCH"}


@app.middleware("http")
async def body_size_middleware(request: Request, call_next):
    limit = settings.max_request_body_bytes
    if limit <= 0 or request.method.upper() not in _BODY_METHODS:
        return await call_next(request)

    content_length_header = request.headers.get("content-length", "").strip()
    if content_length_header:
        try:
            content_length = int(content_length_header)
        except ValueError:
            logger.warning("reject invalid content-length path=%s", request.url.path)
            return error_response(ValidationError("Invalid Content-Length header."))
        if content_length > limit:
            logger.warning(
                "reject oversize request content_length=%s max=%s path=%s",
                content_length,
                limit,
                request.url.path,
            )
            return error_response(PayloadTooLargeError(details=f"content_length={content_length} max={limit}"))
    else:
        body = await request.body()
        if len(body) > limit:
            logger.warning("reject oversize request actual_size=%s max=%s path=%s", len(body), limit, request.url.path)
            return error_response(PayloadTooLargeError(details=f"actual_size={len(body)} max={limit}"))
    return await call_next(request)


@app.exception_handler(TutorChatError)
async def tutorchat_error_handler(request: Request, exc: TutorChatError) -> JSONResponse:
    logger.warning("request failed path=%s status=%s error=%s", request.url.path, exc.status_code, exc.message)
    return error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(ValidationError(details=str(exc.errors())))


@app.get("/health")
def health() -> dict:
    logger.info("health check")
    return {"status": "ok"}


@app.on_event("startup")
async def startup_background_tasks() -> None:
    global _prune_task
    if _prune_task is None:
        _prune_task = IdempotencyPruneTask(prune_func=store.prune_expired_idempotency)
        await _prune_task.start()


@app.on_event("shutdown")
async def shutdown_cleanup() -> None:
    global _prune_task
    if _prune_task is not None:
        await _prune_task.stop()
        _prune_task = None
    await close_upstream_async_client()
