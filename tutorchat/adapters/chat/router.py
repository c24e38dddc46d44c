"""Chat HTTP routes: session start, buffered message, streamed message, eligibility."""

from __future__ import annotations

import asyncio
from typing import Any

import pydantic
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tutorchat.adapters.gemini.stream_utils import SSEChannel, build_streaming_response
from tutorchat.adapters.gemini.upstream import UpstreamClient
from tutorchat.config.settings import settings
from tutorchat.core.composer import HistoryWindow, compose, normalize_turn, stream_overrides
from tutorchat.core.entitlement import EntitlementGate
from tutorchat.core.errors import TutorChatError, ValidationError
from tutorchat.core.identity import authenticate, resolve_user_id
from tutorchat.core.models import ChatMessageRequest, StartChatRequest
from tutorchat.core.relay import StreamRelay
from tutorchat.storage import create_store
from tutorchat.util.logger import get_logger

logger = get_logger("router")

router = APIRouter()
store = create_store()
gate = EntitlementGate(store)
upstream = UpstreamClient()
relay = StreamRelay(upstream, gate.remaining)


def error_response(exc: TutorChatError) -> JSONResponse:
    content: dict[str, Any] = {"error": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


async def _maybe_offload(func: Any, *args: Any, **kwargs: Any) -> Any:
    if settings.enable_thread_offload:
        return await asyncio.to_thread(func, *args, **kwargs)
    return func(*args, **kwargs)


def _parse(model: type[pydantic.BaseModel], payload: Any) -> Any:
    try:
        return model.model_validate(payload if isinstance(payload, dict) else {})
    except pydantic.ValidationError as exc:
        raise ValidationError(details=str(exc)) from exc


def validate_messages(messages: list[Any]) -> None:
    if not messages:
        raise ValidationError("messages must not be empty.")
    if len(messages) > settings.max_messages_count:
        raise ValidationError(
            "Too many messages.",
            details=f"count={len(messages)} max={settings.max_messages_count}",
        )
    limit = settings.max_content_length_per_message
    for index, raw in enumerate(messages):
        length = len(normalize_turn(raw).content)
        if length > limit:
            raise ValidationError(
                "A message is too long.",
                details=f"index={index} length={length} max={limit}",
            )


@router.post("/chat/start")
async def chat_start(payload: dict, request: Request):
    try:
        user_id = authenticate(request)
        body = _parse(StartChatRequest, payload)
        user_id = resolve_user_id(user_id, body.user_id)
        result = await _maybe_offload(gate.start, user_id, body.idempotency_key)
    except TutorChatError as exc:
        logger.info("chat start rejected status=%s error=%s", exc.status_code, exc.message)
        return error_response(exc)
    return {"message": result.message, "remaining_chat_coupons": result.remaining_chat_coupons}


@router.post("/chat/message")
async def chat_message(payload: dict, request: Request):
    try:
        user_id = authenticate(request)
        body = _parse(ChatMessageRequest, payload)
        user_id = resolve_user_id(user_id, body.user_id)
        validate_messages(body.messages)
        await _maybe_offload(gate.check_usage, user_id)
        provider_request = compose(body.messages, window=HistoryWindow.BUFFERED)
        text = await upstream.chat(provider_request)
        remaining = await _maybe_offload(gate.remaining, user_id)
    except TutorChatError as exc:
        logger.warning("chat message failed status=%s error=%s details=%s", exc.status_code, exc.message, exc.details)
        return error_response(exc)
    return {"response": text, "remaining_chat_coupons": remaining}


@router.post("/chat/message_stream")
async def chat_message_stream(payload: dict, request: Request):
    try:
        user_id = authenticate(request)
        body = _parse(ChatMessageRequest, payload)
        user_id = resolve_user_id(user_id, body.user_id)
        validate_messages(body.messages)
        await _maybe_offload(gate.check_usage, user_id)
    except TutorChatError as exc:
        logger.info("chat stream rejected status=%s error=%s", exc.status_code, exc.message)
        return error_response(exc)

    provider_request = compose(body.messages, window=HistoryWindow.STREAM, overrides=stream_overrides())
    channel = SSEChannel()
    return build_streaming_response(channel.body(lambda ch: relay.run(user_id, provider_request, ch)))


@router.get("/chat/eligibility")
async def chat_eligibility(request: Request, feature: str | None = None):
    try:
        user_id = authenticate(request)
    except TutorChatError as exc:
        return error_response(exc)
    return await _maybe_offload(gate.describe_eligibility, user_id, feature)
