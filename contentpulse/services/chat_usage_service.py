from __future__ import annotations

import logging

from contentpulse.repositories.chat_quota_repository import ChatQuotaRepository, ChatQuotaSnapshot
from contentpulse.telemetry import TelemetryClient

LOGGER = logging.getLogger("content_pulse.chat_usage")


class ChatUsageError(Exception):
    pass


class ChatQuotaExceededError(ChatUsageError):
    def __init__(self, snapshot: ChatQuotaSnapshot) -> None:
        self.snapshot = snapshot
        super().__init__(
            f"Daily chat allowance of {snapshot.daily_limit} messages reached; "
            f"resets at {snapshot.resets_at.isoformat() if snapshot.resets_at else 'unknown'}."
        )


class ChatUsageService:
    """Gates each chat message against the owner's rolling daily allowance."""

    def __init__(
        self,
        *,
        quota_repository: ChatQuotaRepository,
        daily_limit: int,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._quota = quota_repository
        self._daily_limit = max(0, daily_limit)
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def daily_limit(self) -> int:
        return self._daily_limit

    def consume(self, *, owner_id: str) -> ChatQuotaSnapshot:
        snapshot = self._quota.check_and_increment(owner_id=owner_id, daily_limit=self._daily_limit)
        if not snapshot.allowed:
            LOGGER.info(
                "chat quota denied owner_id=%s used=%s limit=%s",
                owner_id,
                snapshot.messages_used,
                snapshot.daily_limit,
            )
            self._telemetry.emit(
                "chat.quota.denied",
                owner_id=owner_id,
                daily_limit=snapshot.daily_limit,
                messages_used=snapshot.messages_used,
            )
            raise ChatQuotaExceededError(snapshot)
        return snapshot

    def status(self, *, owner_id: str) -> ChatQuotaSnapshot:
        return self._quota.peek(owner_id=owner_id, daily_limit=self._daily_limit)
