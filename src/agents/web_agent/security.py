"""
Human confirmation gate for destructive browser actions.

The gate never decides on its own: it classifies, asks a confirmer, and
keeps an append-only audit trail. The confirmer is any async callable
taking a DestructiveActionRequest and returning a bool; the default reads
yes/no from stdin.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from .models import DestructiveActionRequest

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger(f"{__name__}.audit")

DESTRUCTIVE_KEYWORDS = (
    "delete", "remove", "destroy",
    "payment", "purchase", "checkout", "pay",
    "logout", "log out", "sign out",
    "clear", "reset", "wipe",
    "disable", "close account",
)


class ConfirmationUnavailable(Exception):
    """No answer could be obtained from the human (e.g. stdin closed)."""


Confirmer = Callable[[DestructiveActionRequest], Awaitable[bool]]


@dataclass(frozen=True)
class AuditRecord:
    kind: str
    description: str
    approved: bool
    timestamp: float


async def console_confirm(request: DestructiveActionRequest) -> bool:
    """Ask on the terminal. EOF on stdin means nobody is there to answer."""
    lines = [
        "",
        "⚠️  SECURITY CONFIRMATION REQUIRED",
        f"Action Type: {request.kind} ({request.severity} severity)",
        f"Description: {request.description}",
    ]
    if request.target:
        lines.append(f"Target: {request.target}")
    print("\n".join(lines))

    try:
        answer = await asyncio.to_thread(input, "\nDo you want to proceed? (yes/no): ")
    except EOFError as e:
        raise ConfirmationUnavailable("confirmation input closed") from e
    return answer.strip().lower() in ("yes", "y")


class SecurityGate:
    """Classifies, confirms and audits destructive actions."""

    def __init__(self, confirm: Optional[Confirmer] = None):
        self._confirm = confirm or console_confirm
        self.audit: List[AuditRecord] = []

    @staticmethod
    def is_destructive(description: str) -> bool:
        lowered = (description or "").lower()
        return any(keyword in lowered for keyword in DESTRUCTIVE_KEYWORDS)

    def build_request(self, kind: str, description: str, target: Optional[str] = None) -> DestructiveActionRequest:
        severity = "high" if self.is_destructive(f"{kind} {description}") else "medium"
        return DestructiveActionRequest(kind=kind, description=description, severity=severity, target=target)

    async def request_confirmation(self, request: DestructiveActionRequest) -> bool:
        try:
            approved = await self._confirm(request)
        except ConfirmationUnavailable:
            raise
        except Exception as e:
            raise ConfirmationUnavailable(f"confirmation channel failed: {e}") from e
        return bool(approved)

    def log_action(self, kind: str, description: str, approved: bool) -> None:
        try:
            self.audit.append(AuditRecord(kind, description, approved, time.time()))
            status = "APPROVED" if approved else "DENIED"
            audit_logger.info(f"[SECURITY LOG] {status} - Type: {kind}, Description: {description}")
        except Exception as e:
            logger.warning(f"Failed to write security audit record: {e}")
