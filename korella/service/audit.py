from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from korella.logging import get_logger
from korella.storage.common import AuthStore
from korella.storage.errors import StoreError
from korella.storage.models import AuthEventType, AuthLog, utcnow

logger = get_logger(__name__)


class AuditLog:
    """Append-only writer for AuthLog rows.

    Writes are best effort: a failing audit sink is logged loudly but never
    turns a completed authentication step into an error.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        retention_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.retention_days = retention_days
        self._clock = clock or utcnow

    def record(
        self,
        event_type: AuthEventType,
        *,
        success: bool,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
        target_email: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        entry = AuthLog(
            event_type=event_type,
            success=success,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            failure_reason=failure_reason,
            target_email=target_email,
            event_details=details,
            created_at=self._clock(),
        )
        try:
            self.store.append_auth_log(entry)
        except StoreError as exc:
            logger.error(
                "auth_log_write_failed",
                event_type=event_type.value,
                user_id=user_id,
                error=exc.message,
            )

    def purge(self) -> dict[str, int]:
        """Drop audit rows and single-use tokens past the retention window."""

        cutoff = self._clock() - timedelta(days=self.retention_days)
        logs = self.store.purge_auth_logs(before=cutoff)
        tokens = self.store.purge_tokens(before=cutoff)
        logger.info("auth_retention_purge", auth_logs=logs, tokens=tokens)
        return {"auth_logs": logs, "tokens": tokens}
