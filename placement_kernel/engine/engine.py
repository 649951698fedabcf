"""
Placement Engine — runs the guard pipeline and publishes snapshots.

Lifecycle of a run:
1. Seed a builder from the current snapshot and create a fresh context.
2. Hand the builder through every guard in declared order.
3. Freeze the result and compare it with the previous snapshot.
4. If it changed: store it, mark UPDATED, queue state and transition
   notifications. Otherwise return to IDLE quietly.

Runs are serialized on one drain task. Triggers that arrive while a run is
in flight are coalesced into a single follow-up run over the latest
candidates; every caller waiting on one of those triggers gets that run's
outcome. A run is never cancelled part way: the drain task owns it, not the
caller.

Observers are never awaited by the drain task. Each run's notifications go
out on a delivery task chained after the previous run's, so observers see
runs in order and may trigger new runs themselves. A caller outside the
observers returns only once its run's notifications have been delivered.

A failure aborts the run. The previous snapshot stays published, the
failure (wrapped as GuardFailure) goes to the error channel, and waiting
callers see it raised.
"""

import asyncio
import contextvars
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from placement_kernel.diff.equality import states_equal
from placement_kernel.diff.transitions import StateTransition
from placement_kernel.eligibility.rules import utc_now
from placement_kernel.engine.channel import Channel, Unsubscribe
from placement_kernel.errors import GuardFailure, PlacementError
from placement_kernel.guards.base import Guard
from placement_kernel.history.log import HistoryLog
from placement_kernel.models.content import Item
from placement_kernel.models.engine import EngineConfig, EngineStatus
from placement_kernel.models.history import HistoryEntry
from placement_kernel.models.state import MutableState, State
from placement_kernel.storage.base import ItemStorage

logger = structlog.get_logger(__name__)

CandidatesTransform = Callable[[Tuple[Item, ...], State], Iterable[Item]]
Notification = Tuple[Channel, Any]
Outcome = Tuple[State, Optional[GuardFailure], List[Notification]]

# Set inside delivery tasks; triggers from observers skip waiting on delivery.
_delivering = contextvars.ContextVar("delivering", default=False)


class Engine:
    """Owns the guard list, the candidate list and the published snapshot."""

    def __init__(
        self,
        guards: Sequence[Guard],
        storage: ItemStorage,
        history: HistoryLog,
        config: Optional[EngineConfig] = None,
        initial_state: Optional[State] = None,
    ):
        self.guards = list(guards)
        self.storage = storage
        self.history = history
        self.config = config or EngineConfig()

        self._state = initial_state or State.empty()
        self._candidates: Tuple[Item, ...] = ()
        self._status = EngineStatus.IDLE
        self._run_count = 0

        self._states: Channel[State] = Channel("state")
        self._errors: Channel[GuardFailure] = Channel("errors")
        self._transitions: Channel[StateTransition] = Channel("transitions")
        self._recent_errors: Deque[GuardFailure] = deque(maxlen=self.config.error_log_limit)
        self._recent_transitions: Deque[StateTransition] = deque(
            maxlen=self.config.transition_log_limit
        )

        self._pending = False
        self._waiters: List[asyncio.Future] = []
        self._drainer: Optional[asyncio.Task] = None
        self._delivery: Optional[asyncio.Task] = None
        self._closed = False

        self._disconnects: List[Unsubscribe] = [
            guard.refresh.connect(self.request_refresh)
            for guard in self.guards
            if getattr(guard, "refresh", None) is not None
        ]

    # --- Read side ---

    @property
    def status(self) -> EngineStatus:
        return self._status

    @property
    def state(self) -> State:
        return self._state

    @property
    def candidates(self) -> Tuple[Item, ...]:
        return self._candidates

    @property
    def run_count(self) -> int:
        """Number of pipeline runs started so far."""
        return self._run_count

    @property
    def recent_errors(self) -> List[GuardFailure]:
        return list(self._recent_errors)

    @property
    def recent_transitions(self) -> List[StateTransition]:
        return list(self._recent_transitions)

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Observers ---

    def subscribe(self, observer: Callable[[State], Any]) -> Unsubscribe:
        """Called with the new snapshot after every run that changed it."""
        return self._states.subscribe(observer)

    def subscribe_errors(self, observer: Callable[[GuardFailure], Any]) -> Unsubscribe:
        return self._errors.subscribe(observer)

    def subscribe_transitions(self, observer: Callable[[StateTransition], Any]) -> Unsubscribe:
        return self._transitions.subscribe(observer)

    # --- Triggers ---

    async def set_candidates(self, transform: CandidatesTransform) -> State:
        """
        Replace the candidate list with ``transform(previous, current_state)``
        and run the pipeline. Returns the resulting snapshot; raises
        GuardFailure if the covering run failed.
        """
        self._check_open()
        self._candidates = tuple(transform(self._candidates, self._state))
        return await self._trigger()

    async def refresh(self) -> State:
        """Re-run the pipeline over the current candidates."""
        self._check_open()
        return await self._trigger()

    def request_refresh(self) -> None:
        """
        Fire-and-forget refresh. Must be called from inside the running event
        loop. Failures are reported on the error channel only.
        """
        if self._closed:
            logger.debug("engine.refresh_ignored", reason="closed")
            return
        self._schedule()

    async def wait_idle(self) -> None:
        """
        Wait until no run is in flight or pending and every notification has
        been delivered. Not for use from inside an observer.
        """
        while True:
            busy = {
                task for task in (self._drainer, self._delivery)
                if task is not None and not task.done()
            }
            if not busy:
                return
            await asyncio.wait(busy)

    async def close(self) -> None:
        """Stop accepting triggers, let the in-flight run finish, drop observers."""
        if self._closed:
            return
        self._closed = True
        for disconnect in self._disconnects:
            disconnect()
        self._disconnects.clear()
        await self.wait_idle()
        self._states.clear()
        self._errors.clear()
        self._transitions.clear()
        logger.info("engine.closed", runs=self._run_count)

    def _check_open(self) -> None:
        if self._closed:
            raise PlacementError("Engine is closed")

    async def _trigger(self) -> State:
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._schedule()
        state, failure, delivery = await waiter
        if not _delivering.get():
            await asyncio.shield(delivery)
        if failure is not None:
            raise failure
        return state

    def _schedule(self) -> None:
        self._pending = True
        if self._drainer is None or self._drainer.done():
            self._drainer = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending:
            self._pending = False
            waiters, self._waiters = self._waiters, []
            state, failure, notifications = await self._run()
            delivery = self._deliver(notifications)
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result((state, failure, delivery))

    # --- Delivery ---

    def _deliver(self, notifications: List[Notification]) -> asyncio.Task:
        previous = self._delivery
        self._delivery = asyncio.get_running_loop().create_task(
            self._publish(previous, notifications)
        )
        return self._delivery

    async def _publish(
        self, previous: Optional[asyncio.Task], notifications: List[Notification]
    ) -> None:
        _delivering.set(True)
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        for channel, value in notifications:
            await channel.publish(value)

    # --- Run ---

    def _read_history(self) -> List[HistoryEntry]:
        if self.config.history_limit == 0:
            return []
        try:
            return self.history.entries(limit=self.config.history_limit)
        except Exception as exc:
            raise GuardFailure("history", exc) from exc

    async def _run(self) -> Outcome:
        self._run_count += 1
        self._status = EngineStatus.RUNNING
        previous = self._state
        log = logger.bind(run=self._run_count, candidates=len(self._candidates))

        try:
            next_state = await self._run_guards(previous, self._candidates)
            if states_equal(previous, next_state):
                self._status = EngineStatus.IDLE
                log.debug("engine.run_unchanged")
                return previous, None, []
            transition = StateTransition(previous, next_state, utc_now())
        except GuardFailure as failure:
            log.error("engine.run_failed", guard=failure.guard_name, error=repr(failure.cause))
            return self._fail(failure)
        except Exception as exc:
            log.exception("engine.run_crashed")
            return self._fail(GuardFailure("engine", exc))

        self._state = next_state
        self._status = EngineStatus.UPDATED
        self._recent_transitions.append(transition)
        log.info(
            "engine.state_updated",
            surfaces=sorted(transition.diff.slot_diffs),
            active=[item.id for item in next_state.active_items],
        )
        return next_state, None, [(self._states, next_state), (self._transitions, transition)]

    async def _run_guards(self, previous: State, candidates: Tuple[Item, ...]) -> State:
        builder = previous.mutate()
        context: Dict[str, Any] = {}
        try:
            history = self._read_history()
            for guard in tuple(self.guards):
                name = getattr(guard, "name", type(guard).__name__)
                try:
                    result = await guard(self.storage, history, builder, candidates, context)
                except Exception as exc:
                    raise GuardFailure(name, exc) from exc
                if not isinstance(result, MutableState):
                    raise GuardFailure(
                        name,
                        TypeError(f"guard returned {type(result).__name__}, expected MutableState"),
                    )
                if result is not builder:
                    builder.release()
                    builder = result
            return builder.freeze()
        finally:
            builder.release()

    def _fail(self, failure: GuardFailure) -> Outcome:
        self._status = EngineStatus.IDLE
        self._recent_errors.append(failure)
        return self._state, failure, [(self._errors, failure)]
