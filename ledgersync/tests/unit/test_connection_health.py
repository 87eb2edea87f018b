from __future__ import annotations

from datetime import timedelta

from ledgersync.domain.models import Connection
from ledgersync.services.connections.health import check_connection_health
from ledgersync.tests.utils.factories import T0


def _connection(**overrides) -> Connection:
    values = {
        "id": "conn-1",
        "user_id": "u1",
        "provider": "xero",
        "tenant_id": "t1",
        "status": "active",
        "is_active": True,
        "expires_at": T0 + timedelta(minutes=30),
        "refresh_token_issued_at": T0 - timedelta(days=1),
        "last_api_call_at": T0 - timedelta(hours=1),
        "last_error": None,
        "created_at": T0 - timedelta(days=1),
    }
    values.update(overrides)
    return Connection(**values)


def test_healthy_connection() -> None:
    health = check_connection_health(_connection(), now=T0)
    assert health.status == "healthy"
    assert health.issues == []
    assert health.requires_reconnect is False
    assert health.checked_at == T0


def test_expiring_or_expired_access_token_is_only_a_warning() -> None:
    soon = check_connection_health(_connection(expires_at=T0 + timedelta(seconds=120)), now=T0)
    expired = check_connection_health(_connection(expires_at=T0 - timedelta(seconds=1)), now=T0)
    assert soon.status == expired.status == "warning"
    assert expired.requires_reconnect is False


def test_error_state_requires_reconnect() -> None:
    health = check_connection_health(_connection(status="error", last_error="invalid_grant"), now=T0)
    assert health.status == "error"
    assert health.requires_reconnect is True
    assert "invalid_grant" in health.issues


def test_old_refresh_token_is_expired() -> None:
    health = check_connection_health(_connection(refresh_token_issued_at=T0 - timedelta(days=61)), now=T0)
    assert health.status == "expired"
    assert health.requires_reconnect is True


def test_worst_issue_wins() -> None:
    health = check_connection_health(
        _connection(
            is_active=False,
            last_api_call_at=T0 - timedelta(days=45),
            refresh_token_issued_at=T0 - timedelta(days=90),
        ),
        now=T0,
    )
    assert health.status == "expired"
    assert len(health.issues) == 3
