from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from ledgersync.core.config import get_settings
from ledgersync.domain.models import Connection


HealthStatus = Literal["healthy", "warning", "error", "expired"]
_SEVERITY: dict[str, int] = {"healthy": 0, "warning": 1, "error": 2, "expired": 3}


@dataclass(frozen=True)
class ConnectionHealth:
    connection_id: str
    status: HealthStatus
    checked_at: datetime
    issues: list[str] = field(default_factory=list)
    requires_reconnect: bool = False


def check_connection_health(connection: Connection, *, now: datetime) -> ConnectionHealth:
    """Grade a connection from its stored state without calling the provider."""
    settings = get_settings()
    status: HealthStatus = "healthy"
    issues: list[str] = []

    def _raise_to(level: HealthStatus, issue: str) -> None:
        nonlocal status
        issues.append(issue)
        if _SEVERITY[level] > _SEVERITY[status]:
            status = level

    if connection.status == "error":
        _raise_to("error", connection.last_error or "connection is in error state")
    if not connection.is_active:
        _raise_to("warning", "connection is inactive")

    # An expired access token alone is recoverable through a refresh.
    if connection.expires_at <= now:
        _raise_to("warning", "access token expired; next call will refresh it")
    elif connection.expires_at <= now + timedelta(seconds=settings.health_expiry_warning_seconds):
        _raise_to("warning", "access token expires soon")

    issued_at = connection.refresh_token_issued_at or connection.created_at
    if issued_at is not None and issued_at <= now - timedelta(days=settings.refresh_token_max_age_days):
        _raise_to("expired", f"refresh token older than {settings.refresh_token_max_age_days} days")

    if connection.last_api_call_at is not None and connection.last_api_call_at <= now - timedelta(
        days=settings.health_stale_api_call_days
    ):
        _raise_to("warning", f"no API calls in {settings.health_stale_api_call_days} days")

    return ConnectionHealth(
        connection_id=connection.id,
        status=status,
        checked_at=now,
        issues=issues,
        requires_reconnect=status in ("error", "expired"),
    )
