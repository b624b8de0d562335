from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from ..models.audit import AuditEvent, AuditEventType


logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit logger for credit movements and rejected requests.

    Events are appended to a file as line-delimited JSON for easier
    ingestion by log aggregators, and mirrored to the standard logger.
    The credit ledger itself lives in the database; this is the
    operational trail around it.
    """

    def __init__(self, file_path: Path) -> None:
        self._file_path = Path(file_path)
        self._file_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def file_path(self) -> Path:
        return self._file_path

    async def log_transaction(
        self,
        user_id: str,
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.TRANSACTION,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_error(
        self,
        message: str,
        details: dict[str, Any],
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        await self._log(
            AuditEventType.ERROR,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

    async def log_system(self, message: str, details: dict[str, Any]) -> None:
        await self._log(
            AuditEventType.SYSTEM,
            user_id=None,
            message=message,
            details=details,
            correlation_id=None,
        )

    async def _log(
        self,
        event_type: AuditEventType,
        user_id: Optional[str],
        message: str,
        details: dict[str, Any],
        correlation_id: Optional[str],
    ) -> None:
        event = AuditEvent(
            event_type=event_type,
            user_id=user_id,
            message=message,
            details=details,
            correlation_id=correlation_id,
        )

        level = logging.WARNING if event_type == AuditEventType.ERROR else logging.INFO
        logger.log(
            level,
            "%s (user=%s)",
            message,
            user_id,
            extra={"credit_event": event_type.value, "correlation_id": correlation_id},
        )

        # NOTE: We intentionally do not fail the main flow if file logging fails.
        try:
            line = json.dumps(event.model_dump(mode="json"), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError:
            logger.exception("Could not write audit event to %s", self._file_path)
