# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Sync coordinator: delivers sealed batches to the ingest endpoint.

Coordinator state machine:
    idle -> checking -> sending -> idle       (every due batch delivered)
    idle -> checking -> backoff -> idle       (a batch waits on its retry timer;
                                               reads idle once the timer elapses)

Each send moves the batch sealed -> sending, then to sent, back to sealed
with a backoff timer (transient failure), or to failed (server rejection,
or the attempt limit reached). A cancelled send returns the batch to
sealed without counting an attempt.

Background operation is an asyncio task consuming a trigger queue.
Triggers come from connectivity changes, manual requests and the timer of
the current sync strategy.

Example:
    coordinator = SyncCoordinator(store, batch_manager, client,
                                  backoff=BackoffPolicy(), policy=policy)
    coordinator.notify_conditions_changed(DeviceConditions(is_connected=True, is_wifi=True,
                                                           is_metered=False))
    result = await coordinator.sync_once()
"""

import asyncio
import logging
import random
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from src.core.config.settings import AnalyticsSettings, SyncPolicySettings
from src.domains.analytics.batching import BatchManager
from src.domains.analytics.exceptions import (
    NetworkError,
    ServerRejection,
    StorageError,
)
from src.domains.analytics.ingest import AnalyticsIngestClient
from src.domains.analytics.models import (
    BatchStatus,
    BatteryLevel,
    DeviceConditions,
    NetworkQuality,
    SyncAttempt,
    SyncBatch,
    SyncResult,
    SyncState,
)
from src.domains.analytics.repository import AnalyticsStore
from src.utils.datetime import format_iso, utc_now
from src.utils.logging import bind_context, clear_context

logger = logging.getLogger(__name__)


class SyncStrategy(str, Enum):
    """Sync cadence chosen from current device conditions."""

    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"
    MINIMAL = "minimal"
    DISABLED = "disabled"

    @property
    def interval_seconds(self) -> float | None:
        """Seconds between timer-triggered passes, None when disabled."""
        return _STRATEGY_INTERVALS[self]


_STRATEGY_INTERVALS: dict[SyncStrategy, float | None] = {
    SyncStrategy.AGGRESSIVE: 30.0,
    SyncStrategy.MODERATE: 60.0,
    SyncStrategy.CONSERVATIVE: 300.0,
    SyncStrategy.MINIMAL: 900.0,
    SyncStrategy.DISABLED: None,
}


class BackoffPolicy:
    """Exponential backoff with bounded, upward-only jitter.

    delay(n) = min(cap, base * 2**(n-1) * (1 + U(0, jitter_ratio)))

    With jitter_ratio < 1 the jittered delay of attempt n never exceeds
    the unjittered delay of attempt n + 1, so successive delays are
    non-decreasing.

    Attributes:
        base_seconds: Delay after the first failed attempt.
        max_seconds: Cap on any delay.
        jitter_ratio: Upper bound of the random multiplier added to a delay.
    """

    def __init__(
        self,
        base_seconds: float = 30.0,
        max_seconds: float = 3600.0,
        jitter_ratio: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        if not 0 <= jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")
        if base_seconds <= 0 or max_seconds < base_seconds:
            raise ValueError("Backoff requires 0 < base_seconds <= max_seconds")

        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings: AnalyticsSettings, rng: random.Random | None = None) -> "BackoffPolicy":
        """Build a policy from analytics settings."""
        return cls(
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
            jitter_ratio=settings.backoff_jitter_ratio,
            rng=rng,
        )

    def delay(self, attempt: int) -> float:
        """Delay in seconds after the ``attempt``-th consecutive failure."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        jitter = 1 + self._rng.uniform(0, self.jitter_ratio)
        return min(self.max_seconds, self.base_seconds * 2 ** (attempt - 1) * jitter)


def suspension_reason(conditions: DeviceConditions, policy: SyncPolicySettings) -> str | None:
    """Explain why sync is suspended under ``conditions``, or None."""
    if not conditions.is_connected:
        return "offline"
    if policy.require_wifi and not conditions.is_wifi:
        return "wifi_required"
    if conditions.is_metered and not policy.allow_metered:
        return "metered_connection"
    if not conditions.is_charging and conditions.battery_percent < policy.min_battery_percent:
        return "low_battery"
    return None


def select_strategy(conditions: DeviceConditions, policy: SyncPolicySettings) -> SyncStrategy:
    """Pick the sync cadence for the current device conditions.

    Args:
        conditions: Current connectivity and power snapshot.
        policy: Suspension policy.

    Returns:
        The strategy whose interval drives the background timer.
    """
    if suspension_reason(conditions, policy) is not None:
        return SyncStrategy.DISABLED

    battery = BatteryLevel.HIGH if conditions.is_charging else conditions.battery_level
    quality = conditions.network_quality

    if battery == BatteryLevel.CRITICAL:
        return SyncStrategy.DISABLED
    if battery == BatteryLevel.LOW and conditions.is_metered:
        return SyncStrategy.MINIMAL
    if quality == NetworkQuality.HIGH and conditions.is_wifi and battery >= BatteryLevel.NORMAL:
        return SyncStrategy.AGGRESSIVE
    if quality >= NetworkQuality.MEDIUM and not conditions.is_metered:
        return SyncStrategy.MODERATE
    if quality >= NetworkQuality.LOW:
        return SyncStrategy.CONSERVATIVE
    return SyncStrategy.MINIMAL


class SyncCoordinator:
    """Forms batches and sends them, one send in flight per batch.

    Attributes:
        _store: Local analytics store.
        _batches: Batch manager used to form batches before sending.
        _client: Ingest HTTP client.
        _backoff: Retry delay policy.
        _policy: Suspension policy.
        _max_attempts: Failed attempts before a batch is marked failed.
        _in_flight: Ids of batches currently being sent.
        _triggers: Queue of trigger reasons consumed by the background task.
    """

    def __init__(
        self,
        store: AnalyticsStore,
        batch_manager: BatchManager,
        client: AnalyticsIngestClient,
        backoff: BackoffPolicy,
        policy: SyncPolicySettings,
        max_attempts: int = 3,
        conditions: DeviceConditions | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the coordinator.

        Args:
            store: Local analytics store.
            batch_manager: Batch manager.
            client: Ingest HTTP client.
            backoff: Retry delay policy.
            policy: Suspension policy.
            max_attempts: Failed attempts before a batch is marked failed.
            conditions: Initial device conditions (offline if omitted).
            clock: Source of the current time.
        """
        self._store = store
        self._batches = batch_manager
        self._client = client
        self._backoff = backoff
        self._policy = policy
        self._max_attempts = max_attempts
        self._conditions = conditions or DeviceConditions()
        self._clock = clock

        self._state = SyncState.IDLE
        self._backoff_until: datetime | None = None
        self._pass_lock = asyncio.Lock()
        self._in_flight: set[str] = set()
        self._triggers: asyncio.Queue[str] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._last_success_at: datetime | None = None

    @property
    def state(self) -> SyncState:
        """Current coordinator state.

        BACKOFF reads as IDLE once the earliest retry timer has elapsed.
        """
        if self._state == SyncState.BACKOFF and (
            self._backoff_until is None or self._backoff_until <= self._clock()
        ):
            return SyncState.IDLE
        return self._state

    @property
    def conditions(self) -> DeviceConditions:
        """Last reported device conditions."""
        return self._conditions

    @property
    def strategy(self) -> SyncStrategy:
        """Strategy for the current conditions."""
        return select_strategy(self._conditions, self._policy)

    @property
    def is_running(self) -> bool:
        """Whether the background task is active."""
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def sync_once(self, force: bool = False) -> SyncResult:
        """Run one pass: check conditions, form batches, send due batches.

        Args:
            force: Ignore the suspension policy (connectivity is still
                required) and batch every pending event regardless of
                the formation thresholds.

        Returns:
            SyncResult describing the pass.

        Raises:
            StorageError: If the local store fails.
        """
        result = SyncResult(sync_id=uuid4().hex[:12])
        bind_context(sync_id=result.sync_id)

        async with self._pass_lock:
            self._state = SyncState.CHECKING
            try:
                reason = self._skip_reason(force)
                if reason is not None:
                    result.skipped_reason = reason
                    logger.debug("Sync pass skipped: %s", reason)
                    return result

                formed = await self._batches.form_all_batches(
                    max_age=timedelta(0) if force else None
                )
                result.batches_formed = len(formed)

                now = self._clock()
                due = [
                    batch
                    for batch in await self._store.list_batches(BatchStatus.SEALED)
                    if batch.is_due(now)
                ]

                if due:
                    self._state = SyncState.SENDING
                for batch in due:
                    attempt = await self._send(batch)
                    if attempt is None:
                        continue
                    result.attempts.append(attempt)
                    if attempt.outcome == "sent":
                        result.batches_sent += 1
                        result.events_sent += batch.event_count
                    elif attempt.outcome == "retry":
                        result.batches_retrying += 1
                    else:
                        result.batches_failed += 1

                if result.batches_sent:
                    self._last_success_at = self._clock()

                now = self._clock()
                waiting = await self._store.list_batches(BatchStatus.SEALED)
                self._backoff_until = min(
                    (batch.next_attempt_at for batch in waiting if not batch.is_due(now)),
                    default=None,
                )

                logger.info("Sync pass finished: %s", result.to_dict())
                return result
            finally:
                self._state = SyncState.BACKOFF if self._backoff_until is not None else SyncState.IDLE
                clear_context()

    async def sync_batch(self, batch_id: str) -> SyncAttempt | None:
        """Send one batch now, bypassing the backoff timer and policy.

        Re-syncing a batch that is already sent is a no-op.

        Args:
            batch_id: Batch to send.

        Returns:
            The attempt, or None if nothing was sent.

        Raises:
            StorageError: If the local store fails.
        """
        batch = await self._store.get_batch(batch_id)
        if batch is None:
            logger.warning("Sync requested for unknown batch %s", batch_id)
            return None
        if batch.status != BatchStatus.SEALED:
            logger.debug("Batch %s is %s, nothing to send", batch_id, batch.status.value)
            return None
        return await self._send(batch)

    async def force_sync(self) -> SyncResult:
        """Flush everything pending now, ignoring the suspension policy."""
        return await self.sync_once(force=True)

    async def recover_interrupted_sends(self) -> int:
        """Return batches stranded in sending (e.g. after a crash) to sealed.

        Returns:
            Number of batches recovered.
        """
        recovered = 0
        for batch in await self._store.list_batches(BatchStatus.SENDING):
            if batch.id in self._in_flight:
                continue
            if await self._store.transition_batch(batch.id, (BatchStatus.SENDING,), BatchStatus.SEALED):
                recovered += 1
        if recovered:
            logger.info("Recovered %d interrupted batch sends", recovered)
        return recovered

    def _skip_reason(self, force: bool) -> str | None:
        if force:
            return None if self._conditions.is_connected else "offline"
        return suspension_reason(self._conditions, self._policy)

    async def _send(self, batch: SyncBatch) -> SyncAttempt | None:
        """Send a sealed batch and record the outcome on it."""
        if batch.id in self._in_flight:
            return None

        self._in_flight.add(batch.id)
        try:
            claimed = await self._store.transition_batch(
                batch.id, (BatchStatus.SEALED,), BatchStatus.SENDING
            )
            if not claimed:
                return None

            attempt = SyncAttempt(batch_id=batch.id, attempt_number=batch.attempt_count + 1)

            try:
                events = await self._store.get_events(batch.event_ids)
                attempt.status_code = await self._client.send_batch(batch.id, events)
            except (asyncio.CancelledError, StorageError):
                attempt.outcome = "cancelled"
                await asyncio.shield(self._release(batch.id))
                raise
            except ServerRejection as e:
                attempt.status_code = e.status_code
                attempt.outcome = "rejected"
                logger.error("Batch %s rejected by ingest endpoint: %s", batch.id, e)
                await self._finish(
                    batch.id,
                    BatchStatus.FAILED,
                    attempt_count=attempt.attempt_number,
                    last_error=str(e),
                )
            except NetworkError as e:
                attempt.status_code = e.status_code
                await self._record_network_failure(batch, attempt, e)
            else:
                attempt.outcome = "sent"
                await self._finish(
                    batch.id,
                    BatchStatus.SENT,
                    sent_at=self._clock(),
                    next_attempt_at=None,
                    last_error=None,
                )
                logger.info("Sent batch %s (%d events)", batch.id, batch.event_count)

            attempt.finished_at = self._clock()
            return attempt
        finally:
            self._in_flight.discard(batch.id)

    async def _finish(self, batch_id: str, to_status: BatchStatus, **values) -> None:
        """Record the outcome of a completed request.

        The write is shielded so that cancellation after the server
        answered cannot leave the batch stranded in sending.
        """
        await asyncio.shield(
            self._store.transition_batch(batch_id, (BatchStatus.SENDING,), to_status, **values)
        )

    async def _record_network_failure(
        self,
        batch: SyncBatch,
        attempt: SyncAttempt,
        error: NetworkError,
    ) -> None:
        attempts = attempt.attempt_number

        if attempts >= self._max_attempts:
            attempt.outcome = "failed"
            await self._finish(
                batch.id,
                BatchStatus.FAILED,
                attempt_count=attempts,
                next_attempt_at=None,
                last_error=str(error),
            )
            logger.warning(
                "Batch %s failed after %d attempts, awaiting manual retry: %s",
                batch.id,
                attempts,
                error,
            )
            return

        delay = self._backoff.delay(attempts)
        attempt.outcome = "retry"
        attempt.retry_delay_seconds = delay
        await self._finish(
            batch.id,
            BatchStatus.SEALED,
            attempt_count=attempts,
            next_attempt_at=self._clock() + timedelta(seconds=delay),
            last_error=str(error),
        )
        logger.debug("Batch %s send failed (%s), retrying in %.0fs", batch.id, error, delay)

    async def _release(self, batch_id: str) -> None:
        """Return an interrupted send to sealed without counting an attempt."""
        try:
            await self._store.transition_batch(batch_id, (BatchStatus.SENDING,), BatchStatus.SEALED)
        except StorageError as e:
            logger.error("Could not release batch %s after interrupted send: %s", batch_id, e)

    # ------------------------------------------------------------------
    # Background operation
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background sync task."""
        if self.is_running:
            return
        await self.recover_interrupted_sends()
        self._task = asyncio.create_task(self._run(), name="analytics-sync")
        self.request_sync("startup")
        logger.info("Analytics sync started with strategy %s", self.strategy.value)

    async def stop(self) -> None:
        """Stop the background task, aborting any in-flight send."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Analytics sync stopped")

    def request_sync(self, reason: str = "manual") -> None:
        """Queue a sync pass for the background task."""
        self._triggers.put_nowait(reason)

    def notify_conditions_changed(self, conditions: DeviceConditions) -> None:
        """Record new device conditions and queue a sync pass."""
        previous = self.strategy
        self._conditions = conditions
        current = self.strategy
        if current != previous:
            logger.info("Sync strategy changed: %s -> %s", previous.value, current.value)
        self.request_sync("conditions_changed")

    async def _run(self) -> None:
        while True:
            try:
                reason = await asyncio.wait_for(
                    self._triggers.get(),
                    timeout=self.strategy.interval_seconds,
                )
            except asyncio.TimeoutError:
                reason = "timer"

            logger.debug("Sync triggered: %s", reason)
            try:
                await self.sync_once()
            except StorageError as e:
                logger.error("Sync pass failed: %s", e)

    async def get_health_status(self) -> dict[str, Any]:
        """Combine the backlog report with coordinator status."""
        report = await self._batches.get_health_report()
        return {
            **report.to_dict(),
            "sync_state": self.state.value,
            "strategy": self.strategy.value,
            "is_running": self.is_running,
            "in_flight_batches": len(self._in_flight),
            "last_successful_sync": format_iso(self._last_success_at),
        }
