from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from linkhub.logging import get_logger
from linkhub.storage.models import utcnow

logger = get_logger(__name__)


class SecurityEvent(str, Enum):
    SIGNUP = "signup"
    LOGIN = "login"
    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    TWO_FACTOR_SETUP = "two_factor_setup"
    TWO_FACTOR_CHALLENGE = "two_factor_challenge"
    TWO_FACTOR_VERIFY = "two_factor_verify"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    BACKUP_CODE_USED = "backup_code_used"
    BACKUP_CODES_REGENERATED = "backup_codes_regenerated"
    PASSWORD_CHANGED = "password_changed"
    EMAIL_CHANGED = "email_changed"
    USERNAME_CHANGED = "username_changed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUBSCRIPTION_CHANGED = "subscription_changed"


class AuditReason(str, Enum):
    USER_NOT_FOUND = "user_not_found"
    INVALID_PASSWORD = "invalid_password"
    ACCOUNT_DISABLED = "account_disabled"
    INVALID_CODE = "invalid_code"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    SESSION_EXPIRED = "session_expired"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    RATE_LIMITED = "rate_limited"
    WEAK_PASSWORD = "weak_password"
    CONFLICT = "conflict"
    SIGNUP_DISABLED = "signup_disabled"
    ALREADY_ENABLED = "already_enabled"
    NOT_ENABLED = "not_enabled"
    INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class AuditRecord:
    event: SecurityEvent
    outcome: str
    at: datetime
    user_id: Optional[str] = None
    reason: Optional[AuditReason] = None
    client_ip: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def emit(self, record: AuditRecord) -> None: ...


class InMemoryAuditSink:
    """Keeps records in a list; used by tests and local tooling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.records: List[AuditRecord] = []

    def emit(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)

    def events(self, event: SecurityEvent) -> List[AuditRecord]:
        with self._lock:
            return [r for r in self.records if r.event == event]


class AuditLogger:
    """Writes security events to the structured log and any attached sinks.

    A failing sink is logged and skipped; it never fails the request that
    produced the event. Callers must not pass passwords, codes or tokens.
    """

    def __init__(
        self,
        sinks: Optional[Iterable[AuditSink]] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sinks: List[AuditSink] = list(sinks or [])
        self._clock = clock or utcnow

    def add_sink(self, sink: AuditSink) -> None:
        self.sinks.append(sink)

    def record(
        self,
        event: SecurityEvent,
        *,
        outcome: str,
        user_id: Optional[str] = None,
        reason: Optional[AuditReason] = None,
        client_ip: Optional[str] = None,
        level: Optional[str] = None,
        **fields: Any,
    ) -> AuditRecord:
        """Deliver one event; ``level`` overrides the log level picked from the outcome."""
        record = AuditRecord(
            event=event,
            outcome=outcome,
            at=self._clock(),
            user_id=user_id,
            reason=reason,
            client_ip=client_ip,
            fields=dict(fields),
        )
        failed = outcome == "failure"
        log = getattr(logger, level) if level else (logger.warning if failed else logger.info)
        # e.g. login_success / login_failed
        log(
            f"{event.value}_{'failed' if failed else outcome}",
            security_event=event.value,
            outcome=outcome,
            user_id=user_id,
            reason=reason.value if reason else None,
            client_ip=client_ip,
            **fields,
        )
        for sink in self.sinks:
            try:
                sink.emit(record)
            except Exception as exc:
                logger.error(
                    "security_event_emit_failed",
                    sink=type(sink).__name__,
                    security_event=event.value,
                    error=str(exc),
                )
        return record
