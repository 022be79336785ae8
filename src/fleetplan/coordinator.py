"""
Redeploy trigger coordination.

Consumes external change events (parameter updates, secret rotations),
matches them against the fleet's trigger rules and emits coalesced
RedeployRequests for exactly the affected services.

Coalescing:
- Requests are keyed by the affected service set. A matching event opens a
  window of `coalesce_window` seconds; further matching events for the same
  set join the pending request and slide its deadline, capped at
  `max_coalesce_window` after the first event.
- Rules with overlapping but different service sets never merge.
- A window that has flushed is never reopened; later events start a new one.

Delivery:
- At-least-once. A request counts as delivered when the sink's send()
  returns within `ack_timeout`; otherwise the same request (same request_id)
  is resent with exponential backoff until `max_attempts`, then logged as
  undelivered and dropped. Delivery failures never stop the coordinator.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Protocol
from uuid import uuid4

from .config import CoordinatorSettings
from .models import ChangeEvent, RedeployRequest, TriggerRule
from .patterns import matches, validate_pattern

logger = logging.getLogger(__name__)


# =============================================================================
# Sinks
# =============================================================================


class RedeploySink(Protocol):
    """Downstream consumer of redeploy requests (the provisioning engine)."""

    async def send(self, request: RedeployRequest) -> None:
        """Deliver a request. Returning normally acknowledges receipt."""
        ...


class QueueSink:
    """
    Outgoing request channel backed by an asyncio.Queue.

    With a bounded queue a full channel delays the acknowledgment, which the
    coordinator treats like any other missing ack.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[RedeployRequest] = asyncio.Queue(maxsize)

    async def send(self, request: RedeployRequest) -> None:
        await self.queue.put(request)

    async def get(self) -> RedeployRequest:
        return await self.queue.get()

    def drain(self) -> list[RedeployRequest]:
        """Return every queued request without waiting."""
        requests = []
        while not self.queue.empty():
            requests.append(self.queue.get_nowait())
        return requests


# =============================================================================
# State
# =============================================================================


@dataclass
class PendingRedeploy:
    """A coalescing window that has not flushed yet."""

    services: frozenset[str]
    request_id: str
    opened_at: float
    deadline: float = 0.0
    generation: int = 0
    causes: list[tuple[float, str]] = field(default_factory=list)
    rules: list[str] = field(default_factory=list)
    timer: asyncio.TimerHandle | None = None

    def add_cause(self, arrived_at: float, event_id: str, rule_names: Iterable[str]) -> None:
        self.causes.append((arrived_at, event_id))
        for name in rule_names:
            if name not in self.rules:
                self.rules.append(name)

    @property
    def cause_event_ids(self) -> tuple[str, ...]:
        # Arrival order, ties broken by event id
        return tuple(event_id for _, event_id in sorted(self.causes))

    def to_request(self) -> RedeployRequest:
        return RedeployRequest(
            request_id=self.request_id,
            services=self.services,
            cause_event_ids=self.cause_event_ids,
            rules=tuple(self.rules),
            created_at=datetime.now(UTC),
        )


@dataclass
class CoordinatorStats:
    """Statistics for a coordinator."""

    events_received: int = 0
    events_matched: int = 0
    events_unmatched: int = 0
    requests_flushed: int = 0
    requests_delivered: int = 0
    requests_undelivered: int = 0
    delivery_attempts: int = 0
    delivery_failures: int = 0
    started_at: datetime | None = None
    last_event_at: datetime | None = None


# =============================================================================
# Coordinator
# =============================================================================


class RedeployCoordinator:
    """
    Long-lived event loop turning change events into redeploy requests.

    Usage:
        sink = QueueSink()
        async with RedeployCoordinator(spec.triggers, sink) as coordinator:
            coordinator.submit(event)
            request = await sink.get()

    submit() never blocks: events go onto an unbounded inbox drained by a
    single worker task. The pending table is only touched under self._lock.
    """

    def __init__(
        self,
        triggers: Iterable[TriggerRule],
        sink: RedeploySink,
        settings: CoordinatorSettings | None = None,
    ) -> None:
        self._rules = list(triggers)
        for rule in self._rules:
            validate_pattern(rule.pattern)
        self._sink = sink
        self.settings = settings or CoordinatorSettings()
        self.stats = CoordinatorStats()
        self.undelivered: list[RedeployRequest] = []

        self._inbox: asyncio.Queue[tuple[float, ChangeEvent]] = asyncio.Queue()
        self._pending: dict[frozenset[str], PendingRedeploy] = {}
        self._lock = asyncio.Lock()
        self._deliveries: set[asyncio.Task[bool]] = set()
        self._worker: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the event-processing worker."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._closed = False
        self.stats.started_at = datetime.now(UTC)
        self._worker = asyncio.create_task(self._run(), name="redeploy-coordinator")
        logger.info("Redeploy coordinator started with %d trigger rules", len(self._rules))

    async def stop(self, drain: bool = True) -> None:
        """
        Stop the coordinator.

        Args:
            drain: Process every submitted event, flush every pending window
                immediately and wait for deliveries. When False, pending
                windows and in-flight deliveries are abandoned.
        """
        self._closed = True
        if drain and self.running:
            await self._inbox.join()
            await self.flush_all()

        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

        if drain:
            if self._deliveries:
                await asyncio.gather(*self._deliveries, return_exceptions=True)
        else:
            abandoned = list(self._deliveries)
            for task in abandoned:
                task.cancel()
            await asyncio.gather(*abandoned, return_exceptions=True)
            async with self._lock:
                for pending in self._pending.values():
                    if pending.timer is not None:
                        pending.timer.cancel()
                if self._pending:
                    logger.warning(
                        "Coordinator stopped with %d pending redeploy windows", len(self._pending)
                    )
                self._pending.clear()
        logger.info("Redeploy coordinator stopped")

    async def __aenter__(self) -> RedeployCoordinator:
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.stop(drain=exc_type is None)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, event: ChangeEvent) -> None:
        """Queue an event. Must be called from the coordinator's event loop."""
        if self._closed:
            raise RuntimeError("Coordinator is stopped")
        loop = self._loop or asyncio.get_running_loop()
        self._inbox.put_nowait((loop.time(), event))

    def submit_threadsafe(self, event: ChangeEvent) -> concurrent.futures.Future[None]:
        """
        Queue an event from another thread.

        The arrival time is stamped and the stopped check repeated on the
        coordinator's loop, so an event racing stop() is either processed
        or refused. The returned future raises RuntimeError when refused.
        """
        if self._loop is None or self._closed:
            raise RuntimeError("Coordinator is not running")
        return asyncio.run_coroutine_threadsafe(self._accept(event), self._loop)

    async def _accept(self, event: ChangeEvent) -> None:
        self.submit(event)

    # -------------------------------------------------------------------------
    # Event Processing
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            arrived_at, event = await self._inbox.get()
            try:
                await self._process(arrived_at, event)
            except Exception:
                logger.error("Failed to process change event %s", event.event_id, exc_info=True)
            finally:
                self._inbox.task_done()

    def match(self, event: ChangeEvent) -> dict[frozenset[str], list[str]]:
        """Affected service set -> names of the rules that fired for it."""
        fired: dict[frozenset[str], list[str]] = defaultdict(list)
        for rule in self._rules:
            if matches(rule.pattern, event.attributes):
                fired[rule.services].append(rule.name)
        return dict(fired)

    async def _process(self, arrived_at: float, event: ChangeEvent) -> None:
        self.stats.events_received += 1
        self.stats.last_event_at = datetime.now(UTC)

        fired = self.match(event)
        if not fired:
            self.stats.events_unmatched += 1
            logger.debug("Change event %s matched no trigger rule", event.event_id)
            return

        self.stats.events_matched += 1
        async with self._lock:
            for services, rule_names in fired.items():
                self._enqueue(services, rule_names, arrived_at, event)

    def _enqueue(
        self,
        services: frozenset[str],
        rule_names: list[str],
        arrived_at: float,
        event: ChangeEvent,
    ) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        pending = self._pending.get(services)
        if pending is None:
            pending = PendingRedeploy(services=services, request_id=uuid4().hex, opened_at=now)
            self._pending[services] = pending
            logger.info(
                "Opened redeploy window for %s (rules: %s)",
                ", ".join(sorted(services)),
                ", ".join(rule_names),
            )
        else:
            logger.debug("Extending redeploy window for %s", ", ".join(sorted(services)))

        pending.add_cause(arrived_at, event.event_id, rule_names)

        settings = self.settings
        deadline = min(now + settings.coalesce_window, pending.opened_at + settings.max_coalesce_window)
        if pending.timer is not None:
            pending.timer.cancel()
        pending.generation += 1
        pending.deadline = deadline
        pending.timer = loop.call_at(deadline, self._window_closed, services, pending.generation)

    def _window_closed(self, services: frozenset[str], generation: int) -> None:
        task = asyncio.create_task(self._flush(services, generation))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _flush(self, services: frozenset[str], generation: int | None = None) -> bool:
        async with self._lock:
            pending = self._pending.get(services)
            if pending is None:
                return False
            if generation is not None and pending.generation != generation:
                # Window was extended after this timer fired
                return False
            del self._pending[services]
            if pending.timer is not None:
                pending.timer.cancel()
                pending.timer = None

        request = pending.to_request()
        self.stats.requests_flushed += 1
        logger.info(
            "Flushing redeploy request %s for %s (%d causes)",
            request.request_id,
            ", ".join(sorted(request.services)),
            len(request.cause_event_ids),
        )
        return await self._deliver(request)

    async def flush_all(self) -> list[bool]:
        """Close every pending window now and deliver the requests."""
        async with self._lock:
            keys = list(self._pending)
        if not keys:
            return []
        return list(await asyncio.gather(*(self._flush(services) for services in keys)))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _deliver(self, request: RedeployRequest) -> bool:
        settings = self.settings
        for attempt in range(1, settings.max_attempts + 1):
            self.stats.delivery_attempts += 1
            try:
                await asyncio.wait_for(self._sink.send(request), timeout=settings.ack_timeout)
            except TimeoutError:
                self.stats.delivery_failures += 1
                logger.warning(
                    "Redeploy request %s not acknowledged within %.1fs (attempt %d/%d)",
                    request.request_id,
                    settings.ack_timeout,
                    attempt,
                    settings.max_attempts,
                )
            except Exception as e:
                self.stats.delivery_failures += 1
                logger.warning(
                    "Redeploy request %s delivery failed (attempt %d/%d): %s",
                    request.request_id,
                    attempt,
                    settings.max_attempts,
                    e,
                    exc_info=True,
                )
            else:
                self.stats.requests_delivered += 1
                logger.info("Redeploy request %s acknowledged", request.request_id)
                return True

            if attempt < settings.max_attempts:
                await asyncio.sleep(settings.backoff(attempt))

        self.stats.requests_undelivered += 1
        self.undelivered.append(request)
        logger.error(
            "Redeploy request %s undelivered after %d attempts, dropping",
            request.request_id,
            settings.max_attempts,
            extra={"context": request.to_dict()},
        )
        return False

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def pending(self) -> dict[frozenset[str], tuple[str, ...]]:
        """Pending service sets and the cause ids collected so far."""
        return {services: p.cause_event_ids for services, p in self._pending.items()}

    async def join(self) -> None:
        """Wait until every submitted event has been processed."""
        await self._inbox.join()
