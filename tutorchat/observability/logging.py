"""Structured logging bridge."""

from __future__ import annotations

from tutorchat.util.logger import get_logger

_event_logger = get_logger("events")


def log_event(event: str, **payload: object) -> None:
    _event_logger.info("event=%s payload=%s", event, payload)
