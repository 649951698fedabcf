"""Tests for the placement Engine."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from placement_kernel.eligibility.resolver import EligibilityResolver
from placement_kernel.eligibility.rules import ConstantRule
from placement_kernel.engine.channel import Signal
from placement_kernel.engine.engine import Engine
from placement_kernel.errors import (
    BuilderReleasedError,
    GuardFailure,
    PlacementError,
    ResolutionError,
    StorageFailure,
)
from placement_kernel.guards.base import Guard
from placement_kernel.guards.context import ContextFactsGuard
from placement_kernel.guards.impressions import ImpressionPolicyGuard
from placement_kernel.guards.removal import RemoveIneligibleGuard
from placement_kernel.guards.scheduling import SchedulingGuard
from placement_kernel.guards.sync import SyncStateGuard
from placement_kernel.history.log import HistoryLog
from placement_kernel.models.conditions import AllOf, BooleanFlag, TimeRange
from placement_kernel.models.content import Item, Option, Payload
from placement_kernel.models.engine import EngineConfig, EngineStatus
from placement_kernel.models.history import HistoryEntry, HistoryEvent
from placement_kernel.models.state import MutableState, State
from placement_kernel.storage.memory import InMemoryItemStorage
from placement_kernel.storage.sqlite import SqliteItemStorage

NOW = datetime(2025, 11, 28, 12, 0, tzinfo=timezone.utc)


def _make_item(payload_id: str, priority: int = 0, eligibility=None, **option_fields) -> Item:
    option = Option(surface="popup", variant="dialog", **option_fields)
    payload = Payload(id=payload_id, priority=priority, options=[option], eligibility=eligibility)
    return Item(payload=payload, option=option)


def _engine(guards, storage=None, history=None, **kwargs) -> Engine:
    return Engine(
        guards=guards,
        storage=storage or InMemoryItemStorage(),
        history=history or HistoryLog(),
        **kwargs,
    )


def _replace(*items):
    return lambda previous, current: list(items)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FailingGuard(Guard):
    async def __call__(self, storage, history, state, candidates, context):
        raise RuntimeError("boom")


class RecordingGuard(Guard):
    """Remembers what each run handed it."""

    def __init__(self, refresh=None):
        super().__init__(refresh=refresh)
        self.contexts = []
        self.histories = []
        self.builders = []

    async def __call__(self, storage, history, state, candidates, context):
        self.contexts.append(dict(context))
        self.histories.append(list(history))
        self.builders.append(state)
        context["seen"] = True
        return state


class GateGuard(Guard):
    """Blocks the run until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        self.seen_candidates = []

    async def __call__(self, storage, history, state, candidates, context):
        self.seen_candidates.append([c.payload_id for c in candidates])
        self.entered.set()
        await self.gate.wait()
        return state


@pytest.mark.asyncio
class TestEngineRuns:
    async def test_set_candidates_publishes_state(self):
        engine = _engine([SchedulingGuard()])
        published = []
        engine.subscribe(published.append)

        a, b = _make_item("A", priority=1), _make_item("B", priority=5)
        state = await engine.set_candidates(_replace(a, b))

        assert state.active("popup") == b
        assert engine.state is state
        assert engine.status == EngineStatus.UPDATED
        assert engine.candidates == (a, b)
        assert published == [state]

    async def test_transform_sees_previous_candidates_and_state(self):
        engine = _engine([SchedulingGuard()])
        a, b = _make_item("A"), _make_item("B")
        await engine.set_candidates(_replace(a))

        seen = {}

        def transform(previous, current):
            seen["previous"] = previous
            seen["active"] = current.active("popup")
            return list(previous) + [b]

        await engine.set_candidates(transform)
        assert seen["previous"] == (a,)
        assert seen["active"] == a
        assert engine.candidates == (a, b)

    async def test_unchanged_run_notifies_nobody(self):
        engine = _engine([SchedulingGuard()])
        published = []
        engine.subscribe(published.append)
        await engine.set_candidates(_replace(_make_item("A")))
        await engine.refresh()
        assert len(published) == 1
        assert engine.status == EngineStatus.IDLE
        assert engine.run_count == 2

    async def test_fresh_context_every_run(self):
        recorder = RecordingGuard()
        engine = _engine([recorder])
        await engine.refresh()
        await engine.refresh()
        assert recorder.contexts == [{}, {}]

    async def test_history_handed_to_guards(self):
        history = HistoryLog()
        for minutes in range(3):
            history.append(HistoryEntry(
                item_id="A::dialog::popup",
                payload_id="A",
                surface="popup",
                variant="dialog",
                event=HistoryEvent.SHOWN,
                timestamp=NOW + timedelta(minutes=minutes),
            ))
        recorder = RecordingGuard()
        engine = _engine([recorder], history=history, config=EngineConfig(history_limit=2))
        await engine.refresh()
        assert [e.timestamp for e in recorder.histories[0]] == [
            NOW + timedelta(minutes=1), NOW + timedelta(minutes=2)
        ]

    async def test_initial_state(self):
        a = _make_item("A")
        initial = MutableState()
        initial.set_active("popup", a)
        engine = _engine([], initial_state=initial.freeze())
        assert engine.state.active("popup") == a


@pytest.mark.asyncio
class TestEngineFailures:
    async def test_guard_failure_keeps_previous_snapshot(self):
        engine = _engine([SchedulingGuard()])
        good = await engine.set_candidates(_replace(_make_item("A")))

        engine.guards.append(FailingGuard())
        with pytest.raises(GuardFailure) as exc_info:
            await engine.set_candidates(_replace(_make_item("B", priority=9)))

        assert exc_info.value.guard_name == "FailingGuard"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert engine.state is good
        assert engine.status == EngineStatus.IDLE

    async def test_failure_goes_to_error_channel(self):
        engine = _engine([FailingGuard()])
        errors = []
        engine.subscribe_errors(errors.append)
        published = []
        engine.subscribe(published.append)

        with pytest.raises(GuardFailure):
            await engine.refresh()

        assert len(errors) == 1
        assert engine.recent_errors == errors
        assert published == []

    async def test_error_log_is_bounded(self):
        engine = _engine([FailingGuard()], config=EngineConfig(error_log_limit=2))
        for _ in range(3):
            with pytest.raises(GuardFailure):
                await engine.refresh()
        assert len(engine.recent_errors) == 2

    async def test_resolution_error_surfaces_as_cause(self):
        resolver = EligibilityResolver(rules=[ConstantRule()], require_complete=False)
        engine = _engine([SchedulingGuard(), RemoveIneligibleGuard(resolver)])
        item = _make_item("A", eligibility=BooleanFlag(key="is_premium"))

        with pytest.raises(GuardFailure) as exc_info:
            await engine.set_candidates(_replace(item))

        assert exc_info.value.guard_name == "RemoveIneligibleGuard"
        assert isinstance(exc_info.value.cause, ResolutionError)
        assert engine.state.slot("popup").is_empty

    async def test_storage_failure_surfaces_as_cause(self):
        storage = SqliteItemStorage()
        storage.close()
        engine = _engine([SchedulingGuard(), ImpressionPolicyGuard()], storage=storage)

        with pytest.raises(GuardFailure) as exc_info:
            await engine.set_candidates(_replace(_make_item("A", max_impressions=1)))

        assert isinstance(exc_info.value.cause, StorageFailure)

    async def test_guard_returning_wrong_type_fails_run(self):
        class BrokenGuard(Guard):
            async def __call__(self, storage, history, state, candidates, context):
                return state.freeze()

        engine = _engine([BrokenGuard()])
        with pytest.raises(GuardFailure) as exc_info:
            await engine.refresh()
        assert isinstance(exc_info.value.cause, TypeError)

    async def test_corrupt_history_fails_run_as_storage_failure(self):
        history = HistoryLog()
        history._conn.execute(
            "INSERT INTO history VALUES (?, ?, ?, ?, ?, ?)",
            ("A::dialog::popup", "A", "popup", "dialog", "shown", "not-a-date"),
        )
        engine = _engine([SchedulingGuard()], history=history)
        errors = []
        engine.subscribe_errors(errors.append)

        with pytest.raises(GuardFailure) as exc_info:
            await engine.set_candidates(_replace(_make_item("A")))

        assert exc_info.value.guard_name == "history"
        assert isinstance(exc_info.value.cause, StorageFailure)
        assert engine.status == EngineStatus.IDLE
        assert errors == [exc_info.value]
        assert engine.recent_errors == errors

    async def test_unexpected_history_error_still_reported(self):
        class ExplodingHistory(HistoryLog):
            def entries(self, limit=None):
                raise RuntimeError("disk on fire")

        engine = _engine([SchedulingGuard()], history=ExplodingHistory())
        with pytest.raises(GuardFailure) as exc_info:
            await engine.refresh()

        assert exc_info.value.guard_name == "history"
        assert isinstance(exc_info.value.cause, RuntimeError)
        assert engine.status == EngineStatus.IDLE
        assert len(engine.recent_errors) == 1


@pytest.mark.asyncio
class TestBuilderOwnership:
    async def test_builder_released_after_run(self):
        recorder = RecordingGuard()
        engine = _engine([recorder])
        await engine.refresh()
        leaked = recorder.builders[0]
        assert leaked.released
        with pytest.raises(BuilderReleasedError):
            leaked.set_active("popup", _make_item("A"))

    async def test_builder_released_after_failure(self):
        recorder = RecordingGuard()
        engine = _engine([recorder, FailingGuard()])
        with pytest.raises(GuardFailure):
            await engine.refresh()
        assert recorder.builders[0].released

    async def test_replaced_builder_released(self):
        a = _make_item("A")

        class ReplacingGuard(Guard):
            original = None

            async def __call__(self, storage, history, state, candidates, context):
                self.original = state
                fresh = MutableState()
                fresh.set_active("popup", a)
                return fresh

        replacing = ReplacingGuard()
        recorder = RecordingGuard()
        engine = _engine([replacing, recorder])
        state = await engine.refresh()

        assert replacing.original.released
        assert recorder.builders[0] is not replacing.original
        assert state.active("popup") == a

    async def test_each_run_gets_new_builder(self):
        recorder = RecordingGuard()
        engine = _engine([recorder])
        await engine.refresh()
        await engine.refresh()
        assert recorder.builders[0] is not recorder.builders[1]


@pytest.mark.asyncio
class TestCoalescing:
    async def test_triggers_during_run_coalesce_into_one_follow_up(self):
        gate = GateGuard()
        engine = _engine([gate, SchedulingGuard()])
        a, b = _make_item("A", priority=5), _make_item("B", priority=1)

        first = asyncio.create_task(engine.set_candidates(_replace(a)))
        await gate.entered.wait()
        assert engine.status == EngineStatus.RUNNING

        second = asyncio.create_task(engine.set_candidates(_replace(a, b)))
        third = asyncio.create_task(engine.refresh())
        await asyncio.sleep(0)
        gate.gate.set()

        s1, s2, s3 = await asyncio.gather(first, second, third)

        assert engine.run_count == 2
        assert gate.seen_candidates == [["A"], ["A", "B"]]
        assert s1.queue("popup") == ()
        assert s2 is s3
        assert [i.payload_id for i in s2.queue("popup")] == ["B"]

    async def test_follow_up_failure_reaches_every_waiter(self):
        gate = GateGuard()
        engine = _engine([gate])
        first = asyncio.create_task(engine.refresh())
        await gate.entered.wait()

        engine.guards.append(FailingGuard())
        second = asyncio.create_task(engine.refresh())
        third = asyncio.create_task(engine.refresh())
        await asyncio.sleep(0)
        gate.gate.set()

        results = await asyncio.gather(first, second, third, return_exceptions=True)
        assert isinstance(results[0], State)
        assert isinstance(results[1], GuardFailure)
        assert results[1] is results[2]

    async def test_request_refresh_runs_in_background(self):
        recorder = RecordingGuard()
        engine = _engine([recorder])
        engine.request_refresh()
        engine.request_refresh()
        await engine.wait_idle()
        assert engine.run_count == 1

    async def test_guard_signal_triggers_run(self):
        signal = Signal("app_foreground")
        recorder = RecordingGuard(refresh=signal)
        engine = _engine([recorder])
        signal.fire()
        await engine.wait_idle()
        assert engine.run_count == 1

    async def test_background_failure_only_on_error_channel(self):
        engine = _engine([FailingGuard()])
        errors = []
        engine.subscribe_errors(errors.append)
        engine.request_refresh()
        await engine.wait_idle()
        assert len(errors) == 1


@pytest.mark.asyncio
class TestObservers:
    async def test_failing_observer_does_not_break_others(self):
        engine = _engine([SchedulingGuard()])
        received = []

        def broken(state):
            raise ValueError("observer bug")

        engine.subscribe(broken)
        engine.subscribe(received.append)
        state = await engine.set_candidates(_replace(_make_item("A")))
        assert received == [state]

    async def test_async_observer(self):
        engine = _engine([SchedulingGuard()])
        received = []

        async def observer(state):
            await asyncio.sleep(0)
            received.append(state)

        engine.subscribe(observer)
        await engine.set_candidates(_replace(_make_item("A")))
        assert len(received) == 1

    async def test_observer_can_trigger_refresh(self):
        engine = _engine([SchedulingGuard()])
        seen = []

        async def observer(state):
            seen.append(state)
            if len(seen) == 1:
                await engine.refresh()

        engine.subscribe(observer)
        state = await asyncio.wait_for(engine.set_candidates(_replace(_make_item("A"))), 2)

        assert seen == [state]
        await asyncio.wait_for(engine.wait_idle(), 2)
        assert engine.run_count == 2
        assert engine.status == EngineStatus.IDLE

    async def test_observer_can_replace_candidates(self):
        engine = _engine([SchedulingGuard()])
        b = _make_item("B", priority=5)
        seen = []

        async def observer(state):
            seen.append(state)
            if len(seen) == 1:
                await engine.set_candidates(lambda previous, current: list(previous) + [b])

        engine.subscribe(observer)
        await asyncio.wait_for(engine.set_candidates(_replace(_make_item("A"))), 2)
        await asyncio.wait_for(engine.wait_idle(), 2)

        assert len(seen) == 2
        assert seen[1].active("popup") == b
        assert engine.state is seen[1]

    async def test_error_observer_can_trigger_refresh(self):
        guard = FailingGuard()
        engine = _engine([guard])
        errors = []

        async def observer(failure):
            errors.append(failure)
            if len(errors) == 1:
                engine.guards.remove(guard)
                await engine.refresh()

        engine.subscribe_errors(observer)
        with pytest.raises(GuardFailure):
            await asyncio.wait_for(engine.refresh(), 2)
        await asyncio.wait_for(engine.wait_idle(), 2)

        assert len(errors) == 1
        assert engine.run_count == 2
        assert engine.status == EngineStatus.IDLE

    async def test_unsubscribe(self):
        engine = _engine([SchedulingGuard()])
        received = []
        unsubscribe = engine.subscribe(received.append)
        unsubscribe()
        await engine.set_candidates(_replace(_make_item("A")))
        assert received == []

    async def test_transitions_channel(self):
        engine = _engine([SchedulingGuard()])
        transitions = []
        engine.subscribe_transitions(transitions.append)
        a = _make_item("A")
        await engine.set_candidates(_replace(a))
        assert len(transitions) == 1
        assert transitions[0].diff.activated == [a]
        assert engine.recent_transitions == transitions

    async def test_close(self):
        signal = Signal()
        engine = _engine([RecordingGuard(refresh=signal)])
        await engine.close()
        assert engine.closed
        assert signal.listener_count == 0
        with pytest.raises(PlacementError):
            await engine.refresh()
        engine.request_refresh()
        assert engine.run_count == 0


@pytest.mark.asyncio
class TestEndToEnd:
    async def test_gated_item_shown_only_while_eligible(self):
        clock = FakeClock(NOW)
        flags = {"promo_enabled": True}
        resolver = EligibilityResolver(clock=clock)
        engine = _engine([
            ContextFactsGuard(lambda: dict(flags)),
            SyncStateGuard(),
            SchedulingGuard(),
            RemoveIneligibleGuard(resolver),
        ])
        gated = _make_item(
            "black_friday",
            priority=10,
            eligibility=AllOf(conditions=[
                TimeRange(start=NOW - timedelta(days=1), end=NOW + timedelta(days=1)),
                BooleanFlag(key="promo_enabled"),
            ]),
        )
        fallback = _make_item("evergreen", priority=1)

        state = await engine.set_candidates(_replace(gated, fallback))
        assert state.active("popup") == gated
        assert state.queue("popup") == (fallback,)

        flags["promo_enabled"] = False
        state = await engine.refresh()
        assert state.active("popup") == fallback
        assert state.queue("popup") == ()

        flags["promo_enabled"] = True
        state = await engine.refresh()
        assert state.active("popup") == gated

        clock.now = NOW + timedelta(days=2)
        state = await engine.refresh()
        assert state.active("popup") == fallback

    async def test_dismissal_promotes_next_item(self):
        storage = InMemoryItemStorage()
        engine = _engine(
            [SyncStateGuard(), SchedulingGuard(), ImpressionPolicyGuard(clock=lambda: NOW)],
            storage=storage,
        )
        top = _make_item("top", priority=10)
        other = _make_item("other", priority=1)
        state = await engine.set_candidates(_replace(top, other))
        assert state.active("popup") == top

        await storage.record_dismissed("top", "popup", "dialog", at=NOW)
        state = await engine.refresh()
        assert state.active("popup") == other
