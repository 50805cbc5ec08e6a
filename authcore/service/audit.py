from __future__ import annotations

from typing import Any, Protocol

from authcore.logging import get_logger


class AuditSink(Protocol):
    def emit(self, event: str, **fields: Any) -> None:
        ...


class LoggingAuditSink:
    """Audit sink that writes each event through a dedicated structlog logger."""

    def __init__(self, logger_name: str = "authcore.audit") -> None:
        self.logger = get_logger(logger_name)

    def emit(self, event: str, **fields: Any) -> None:
        self.logger.info(event, audit=True, **fields)
