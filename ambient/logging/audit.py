"""
Audit logging for pipeline milestones.

SECURITY: Never log email content, subjects, body text, addresses, insight
text, LLM prompts, or LLM responses. Only log ids, counts and timings.

Usage:
    from ambient.logging.audit import audit
    audit.info("email.processed", email_id="18c2f...", insights=3)
"""

import logging
from typing import Any


class AuditLogger:
    """Thin wrapper around logging that enforces structured action fields."""

    def __init__(self):
        self._logger = logging.getLogger("audit")

    def info(self, action: str, **fields: Any) -> None:
        self._logger.info(action, extra={"action": action, **fields})

    def warning(self, action: str, **fields: Any) -> None:
        self._logger.warning(action, extra={"action": action, **fields})

    def error(self, action: str, **fields: Any) -> None:
        self._logger.error(action, extra={"action": action, **fields})


audit = AuditLogger()
