from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
import logging
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgersync.core.config import get_settings
from ledgersync.core.errors import (
    AuthenticationError,
    CryptoError,
    NotFoundError,
    ProviderConfigError,
    TransientUpstreamError,
    ValidationError,
)
from ledgersync.domain.models import PendingWebhookEvent, utc_now
from ledgersync.persistence.repos import connections as connections_repo
from ledgersync.persistence.repos import webhook_events as events_repo
from ledgersync.providers.accounting.base import AccountingProvider
from ledgersync.providers.accounting.factory import get_accounting_provider
from ledgersync.services.connections.manager import Clock, ensure_fresh_token, record_api_call
from ledgersync.services.entity_cache import apply_record
from ledgersync.services.telemetry import increment_counter
from ledgersync.services.webhooks.dialects import CATEGORY_ENTITY_TYPES


logger = logging.getLogger(__name__)

ProviderResolver = Callable[[str], AccountingProvider]

# Failures that retrying cannot fix.
_TERMINAL_ERRORS = (AuthenticationError, CryptoError, NotFoundError, ProviderConfigError, ValidationError)


class EventState(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class Transition:
    """Column values for an event leaving the claimed state."""

    state: EventState
    processed: bool
    retry_count: int
    next_attempt_at: datetime | None
    processing_error: str | None
    processed_at: datetime | None

    def as_values(self) -> dict[str, Any]:
        return {
            "status": self.state.value,
            "processed": self.processed,
            "retry_count": self.retry_count,
            "next_attempt_at": self.next_attempt_at,
            "processing_error": self.processing_error,
            "processed_at": self.processed_at,
        }


def compute_backoff_seconds(retry_count: int, *, cap_seconds: int) -> int:
    return int(min(2 ** max(0, retry_count), cap_seconds))


def succeed(event: PendingWebhookEvent, *, now: datetime) -> Transition:
    # Retry counters stay on the row for audit.
    return Transition(EventState.SUCCEEDED, True, event.retry_count, None, None, now)


def skip(event: PendingWebhookEvent, *, now: datetime, reason: str) -> Transition:
    return Transition(EventState.SKIPPED, True, event.retry_count, None, reason, now)


def fail(
    event: PendingWebhookEvent,
    *,
    now: datetime,
    error: str,
    terminal: bool = False,
    retry_after: float | None = None,
    max_attempts: int,
    cap_seconds: int,
) -> Transition:
    retry_count = event.retry_count + 1
    if terminal:
        return Transition(EventState.DEAD_LETTERED, True, retry_count, None, error, now)
    if retry_count >= max_attempts:
        return Transition(
            EventState.DEAD_LETTERED,
            True,
            retry_count,
            None,
            f"TerminalFailure: retry budget exhausted after {retry_count} attempts: {error}",
            now,
        )
    delay = compute_backoff_seconds(retry_count, cap_seconds=cap_seconds)
    # An upstream Retry-After is a floor, still bounded by the cap.
    if retry_after is not None:
        delay = max(delay, int(min(retry_after, cap_seconds)))
    return Transition(EventState.PENDING, False, retry_count, now + timedelta(seconds=delay), error, None)


@dataclass
class ProcessorSummary:
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    lost_claims: int = 0
    states: dict[str, str] = field(default_factory=dict)

    def count(self, event_id: str, state: EventState) -> None:
        self.states[event_id] = state.value
        if state is EventState.SUCCEEDED:
            self.succeeded += 1
        elif state is EventState.SKIPPED:
            self.skipped += 1
        elif state is EventState.DEAD_LETTERED:
            self.dead_lettered += 1
        else:
            self.retried += 1


def _describe(exc: Exception) -> str:
    message = f"{type(exc).__name__}: {exc}"
    correlation_id = getattr(exc, "correlation_id", None)
    if correlation_id:
        message = f"{message} (correlation_id={correlation_id})"
    return message


async def _apply_event(
    session: AsyncSession,
    event: PendingWebhookEvent,
    *,
    entity_type: str,
    connection_id: str,
    provider: AccountingProvider,
    clock: Clock,
) -> None:
    connection = await ensure_fresh_token(session, connection_id, provider=provider, clock=clock)
    credentials = connection.credentials()
    # Always fetch: the notification itself is evidence the cached copy is behind.
    record = await provider.fetch_entity(credentials, entity_type, event.resource_id)
    await apply_record(session, tenant_id=event.tenant_id, record=record, now=clock())
    if entity_type == "payment":
        # Payments move the invoice's amount due, so the invoice snapshot is refreshed too.
        for ref in record.references:
            if ref.entity_type != "invoice":
                continue
            invoice = await provider.fetch_entity(credentials, "invoice", ref.external_id)
            await apply_record(session, tenant_id=event.tenant_id, record=invoice, now=clock())
    await session.commit()
    await record_api_call(session, connection_id=connection_id, now=clock())


async def process_event(
    session: AsyncSession,
    event: PendingWebhookEvent,
    *,
    claim_token: str,
    provider_resolver: ProviderResolver = get_accounting_provider,
    clock: Clock = utc_now,
) -> EventState | None:
    """Drive one claimed event to its next state.

    Returns None when the claim was lost to another processor, in which
    case nothing about the event is written.
    """
    settings = get_settings()
    entity_type = CATEGORY_ENTITY_TYPES.get(event.category)
    if entity_type is None:
        transition = fail(
            event,
            now=clock(),
            error=f"ValidationError: unsupported event category {event.category}",
            terminal=True,
            max_attempts=settings.webhook_max_attempts,
            cap_seconds=settings.webhook_backoff_cap_seconds,
        )
    else:
        connection = await connections_repo.find_active_for_tenant(
            session, provider=event.provider, tenant_id=event.tenant_id
        )
        if connection is None:
            # A missing connection never heals by waiting.
            transition = skip(event, now=clock(), reason=f"no active connection for tenant {event.tenant_id}")
        else:
            try:
                await _apply_event(
                    session,
                    event,
                    entity_type=entity_type,
                    connection_id=connection.id,
                    provider=provider_resolver(event.provider),
                    clock=clock,
                )
                transition = succeed(event, now=clock())
            except _TERMINAL_ERRORS as exc:
                await session.rollback()
                transition = fail(
                    event,
                    now=clock(),
                    error=_describe(exc),
                    terminal=True,
                    max_attempts=settings.webhook_max_attempts,
                    cap_seconds=settings.webhook_backoff_cap_seconds,
                )
            except TransientUpstreamError as exc:
                await session.rollback()
                transition = fail(
                    event,
                    now=clock(),
                    error=_describe(exc),
                    retry_after=exc.retry_after,
                    max_attempts=settings.webhook_max_attempts,
                    cap_seconds=settings.webhook_backoff_cap_seconds,
                )
            except Exception as exc:  # noqa: BLE001 - recorded on the event and retried under the same budget
                await session.rollback()
                logger.exception("webhook_event_unexpected_error event_id=%s", event.id)
                transition = fail(
                    event,
                    now=clock(),
                    error=_describe(exc),
                    max_attempts=settings.webhook_max_attempts,
                    cap_seconds=settings.webhook_backoff_cap_seconds,
                )

    recorded = await events_repo.finish_claimed_event(
        session, event_id=event.id, claim_token=claim_token, values=transition.as_values()
    )
    if not recorded:
        logger.warning("webhook_event_claim_lost event_id=%s", event.id)
        return None
    increment_counter(f"webhook_events_{transition.state.value}_total")
    log = logger.warning if transition.state is EventState.DEAD_LETTERED else logger.info
    log(
        "webhook_event_transition event_id=%s tenant_id=%s category=%s state=%s retry_count=%s next_attempt_at=%s",
        event.id,
        event.tenant_id,
        event.category,
        transition.state.value,
        transition.retry_count,
        transition.next_attempt_at.isoformat() if transition.next_attempt_at else None,
    )
    return transition.state


async def process_pending_events(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    provider_resolver: ProviderResolver = get_accounting_provider,
    clock: Clock = utc_now,
    limit: int | None = None,
    worker_id: str = "processor",
) -> ProcessorSummary:
    """Claim one batch of due events and process each in its own session."""
    settings = get_settings()
    claim_token = f"{worker_id}:{uuid4().hex}"
    async with session_factory() as session:
        events = await events_repo.claim_due_events(
            session,
            claim_token=claim_token,
            now=clock(),
            limit=limit or settings.webhook_batch_size,
            claim_ttl_seconds=settings.webhook_claim_ttl_seconds,
        )
    summary = ProcessorSummary(claimed=len(events))
    for event in events:
        async with session_factory() as session:
            state = await process_event(
                session,
                event,
                claim_token=claim_token,
                provider_resolver=provider_resolver,
                clock=clock,
            )
        if state is None:
            summary.lost_claims += 1
        else:
            summary.count(event.id, state)
    if events:
        logger.info(
            "webhook_batch_processed claimed=%s succeeded=%s retried=%s skipped=%s dead_lettered=%s",
            summary.claimed,
            summary.succeeded,
            summary.retried,
            summary.skipped,
            summary.dead_lettered,
        )
    return summary


async def replay_event(session: AsyncSession, *, event_id: str, now: datetime | None = None) -> PendingWebhookEvent:
    """Return a dead-lettered or skipped event to the queue with a fresh retry budget."""
    event = await events_repo.get_event(session, event_id)
    if event is None:
        raise NotFoundError(f"webhook event {event_id} not found")
    if event.status not in (EventState.DEAD_LETTERED.value, EventState.SKIPPED.value):
        raise ValidationError(f"webhook event {event_id} is {event.status}; only parked events can be replayed")
    event.status = EventState.PENDING.value
    event.processed = False
    event.retry_count = 0
    event.next_attempt_at = now or utc_now()
    event.processed_at = None
    event.claimed_by = None
    event.claimed_until = None
    await session.commit()
    logger.info("webhook_event_replayed event_id=%s", event_id)
    return event
