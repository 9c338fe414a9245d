"""Tests for the escalation state machine."""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import timedelta

import pytest

from edgescan.config import MovementSettings
from edgescan.engine.escalation import (
    EXPIRED,
    REVERTED,
    STARTED,
    EscalationManager,
    new_watch_state,
    transition,
)
from edgescan.engine.movement import MovementReading
from edgescan.errors import IllegalTransition
from edgescan.models.schemas import WatchState

EVENT = "basketball_nba|boston_celtics|los_angeles_lakers|2026-01-10"


@pytest.fixture
def manager():
    return EscalationManager(MovementSettings())


@pytest.fixture
def reading(now):
    """Factory for a qualifying movement reading."""

    def _make(event_key=EVENT, initial=0.50, current=0.58, velocity=0.8):
        return MovementReading(
            event_key=event_key,
            outcome_id="Los Angeles Lakers",
            initial_probability=initial,
            current_probability=current,
            movement_pct=(current - initial) * 100,
            velocity=velocity,
            elapsed_minutes=10.0,
            first_at=now - timedelta(minutes=10),
            last_at=now,
            confirming_sources=3,
            spread_pts=0.4,
            consensus=True,
        )

    return _make


def escalate(manager, reading, now, event_key=EVENT, initial=0.50, current=0.58):
    r = reading(event_key, initial, current)
    manager.observe(event_key, current, now, reading=r)
    return manager.admit([r], now)


def minutes(now, m):
    return now + timedelta(minutes=m)


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize("current,target", [
        (WatchState.WATCHING, WatchState.CONFIRMED),
        (WatchState.WATCHING, WatchState.SIGNAL),
        (WatchState.ACTIVE, WatchState.SIGNAL),
        (WatchState.ACTIVE, WatchState.WATCHING),
        (WatchState.SIGNAL, WatchState.ACTIVE),
        (WatchState.DROPPED, WatchState.ACTIVE),
    ])
    def test_illegal(self, now, current, target):
        state = replace(new_watch_state(EVENT, 0.5, now), watch_state=current)
        with pytest.raises(IllegalTransition):
            transition(state, target, now)

    def test_transition_returns_new_version(self, now):
        state = new_watch_state(EVENT, 0.5, now)
        later = minutes(now, 1)
        active = transition(state, WatchState.ACTIVE, later, movement_pct=7.0)

        assert state.watch_state == WatchState.WATCHING
        assert active.watch_state == WatchState.ACTIVE
        assert active.movement_pct == 7.0
        assert active.updated_at == later

    def test_dropped_can_rearm(self, now):
        state = transition(new_watch_state(EVENT, 0.5, now), WatchState.DROPPED, now)
        assert transition(state, WatchState.WATCHING, now).watch_state == WatchState.WATCHING


class TestObserve:
    """Tests for the watch tier."""

    def test_first_sight_creates_watching_state(self, manager, now):
        state = manager.observe(EVENT, 0.52, now, event_name="Lakers vs Celtics")

        assert state.watch_state == WatchState.WATCHING
        assert state.initial_probability == state.peak_probability == state.current_probability == 0.52
        assert state.event_name == "Lakers vs Celtics"

    def test_reading_updates_movement(self, manager, reading, now):
        manager.observe(EVENT, 0.50, now)
        state = manager.observe(EVENT, 0.58, minutes(now, 10), reading=reading())

        assert state.movement_pct == pytest.approx(8.0)
        assert state.movement_velocity == pytest.approx(0.8)
        assert state.peak_probability == pytest.approx(0.58)


class TestAdmission:
    """Tests for admission into the active tier."""

    def test_promotes_qualifying_event(self, manager, reading, now):
        promoted = escalate(manager, reading, now)

        assert len(promoted) == 1
        state = manager.get(EVENT)
        assert state.watch_state == WatchState.ACTIVE
        assert state.escalated_at == now
        assert state.hold_start_at == now
        assert state.active_until == minutes(now, 20)
        assert state.samples_since_hold == 0
        assert state.initial_probability == pytest.approx(0.50)

    def test_full_slots_block_even_largest_mover(self, reading, now):
        manager = EscalationManager(MovementSettings(max_simultaneous_active=2))
        escalate(manager, reading, now, event_key="e1", current=0.58)
        escalate(manager, reading, now, event_key="e2", current=0.59)

        big = reading("e3", 0.40, 0.60)
        manager.observe("e3", 0.60, now, reading=big)
        assert manager.admit([big], now) == []
        assert manager.get("e3").watch_state == WatchState.WATCHING
        assert manager.hot_count() == 2

    def test_largest_moves_win_slots(self, reading, now):
        manager = EscalationManager(MovementSettings(max_simultaneous_active=2))
        candidates = [
            reading("small", 0.50, 0.57),
            reading("drop", 0.60, 0.48),
            reading("mid", 0.50, 0.59),
            reading("tiny", 0.50, 0.565),
        ]
        for r in candidates:
            manager.observe(r.event_key, r.current_probability, now, reading=r)

        promoted = manager.admit(candidates, now)

        assert sorted(s.event_key for s in promoted) == ["drop", "mid"]
        assert manager.hot_count() == 2

    def test_only_watching_events_are_promoted(self, manager, reading, now):
        escalate(manager, reading, now)
        assert manager.admit([reading()], minutes(now, 1)) == []


class TestSampling:
    """Tests for the active tier."""

    def test_confirms_after_samples_and_hold(self, manager, reading, now):
        escalate(manager, reading, now)

        assert manager.sample(EVENT, 0.58, minutes(now, 1)).watch_state == WatchState.ACTIVE
        # Enough samples, hold window not yet elapsed
        assert manager.sample(EVENT, 0.59, minutes(now, 2)).watch_state == WatchState.ACTIVE
        state = manager.sample(EVENT, 0.585, minutes(now, 3))

        assert state.watch_state == WatchState.CONFIRMED
        assert state.samples_since_hold == 3
        assert state.peak_probability == pytest.approx(0.59)
        logs = manager.drain_logs()
        assert [log.final_state for log in logs] == ["confirmed"]

    def test_reversal_drops(self, manager, reading, now):
        escalate(manager, reading, now)
        state = manager.sample(EVENT, 0.54, minutes(now, 1))

        assert state.watch_state == WatchState.DROPPED
        assert state.reverted
        assert state.drop_reason == REVERTED
        assert manager.hot_count() == 0
        assert manager.drain_logs()[0].final_state == REVERTED

    def test_reversal_on_downward_move(self, manager, reading, now):
        escalate(manager, reading, now, initial=0.60, current=0.52)

        assert manager.sample(EVENT, 0.53, minutes(now, 1)).watch_state == WatchState.ACTIVE
        state = manager.sample(EVENT, 0.57, minutes(now, 2))
        assert state.watch_state == WatchState.DROPPED
        assert state.reverted

    def test_expiry(self, manager, reading, now):
        escalate(manager, reading, now)
        state = manager.sample(EVENT, 0.58, minutes(now, 21))

        assert state.watch_state == WatchState.DROPPED
        assert not state.reverted
        assert state.drop_reason == EXPIRED

    def test_expire_due(self, manager, reading, now):
        escalate(manager, reading, now)
        assert manager.expire_due(minutes(now, 10)) == []

        expired = manager.expire_due(minutes(now, 20))
        assert [s.event_key for s in expired] == [EVENT]
        assert manager.get(EVENT).drop_reason == EXPIRED

    def test_confirmed_events_also_expire(self, manager, reading, now):
        escalate(manager, reading, now)
        manager.sample(EVENT, 0.58, minutes(now, 2))
        manager.sample(EVENT, 0.58, minutes(now, 3))
        assert manager.get(EVENT).watch_state == WatchState.CONFIRMED

        manager.expire_due(minutes(now, 25))
        assert manager.get(EVENT).watch_state == WatchState.DROPPED

    def test_sampling_cold_event_is_a_no_op(self, manager, now):
        state = manager.observe(EVENT, 0.5, now)
        assert manager.sample(EVENT, 0.9, minutes(now, 1)) == state
        assert manager.sample("unknown", 0.5, now) is None

    def test_concurrent_samples_are_not_lost(self, reading, now):
        manager = EscalationManager(MovementSettings(
            samples_required=1000,
            hold_window_minutes=1000,
            active_window_minutes=2000,
        ))
        escalate(manager, reading, now)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: manager.sample(EVENT, 0.58, minutes(now, 1)), range(50)))

        assert manager.get(EVENT).samples_since_hold == 50


class TestSignalAndRetire:
    """Tests for terminal transitions."""

    @pytest.fixture
    def confirmed(self, manager, reading, now):
        escalate(manager, reading, now)
        manager.sample(EVENT, 0.58, minutes(now, 2))
        manager.sample(EVENT, 0.58, minutes(now, 3))
        manager.drain_logs()
        return manager

    def test_mark_signal(self, confirmed, now):
        state = confirmed.mark_signal(EVENT, "m1", minutes(now, 3), edge_pct=8.5)

        assert state.watch_state == WatchState.SIGNAL
        assert state.matched_market_id == "m1"
        assert confirmed.hot_count() == 0
        logs = confirmed.drain_logs()
        assert len(logs) == 1
        assert logs[0].market_matched
        assert logs[0].edge_at_confirmation == 8.5

    def test_mark_signal_twice_logs_once(self, confirmed, now):
        confirmed.mark_signal(EVENT, "m1", minutes(now, 3))
        confirmed.mark_signal(EVENT, "m1", minutes(now, 8))
        assert len(confirmed.drain_logs()) == 1

    def test_watching_event_cannot_signal(self, manager, now):
        manager.observe(EVENT, 0.5, now)
        with pytest.raises(IllegalTransition):
            manager.mark_signal(EVENT, "m1", now)

    def test_retire(self, confirmed, now):
        confirmed.mark_signal(EVENT, "m1", minutes(now, 3))
        state = confirmed.retire(EVENT, STARTED, minutes(now, 60))

        assert state.watch_state == WatchState.DROPPED
        assert state.drop_reason == STARTED
        # Not re-armed, however long we wait
        later = confirmed.observe(EVENT, 0.5, minutes(now, 300))
        assert later.watch_state == WatchState.DROPPED


class TestRearm:
    """Tests for re-arming dropped events."""

    def test_rearms_after_cooldown(self, manager, reading, now):
        escalate(manager, reading, now)
        manager.sample(EVENT, 0.58, minutes(now, 21))

        assert manager.observe(EVENT, 0.55, minutes(now, 30)).watch_state == WatchState.DROPPED

        state = manager.observe(EVENT, 0.55, minutes(now, 42))
        assert state.watch_state == WatchState.WATCHING
        assert state.initial_probability == 0.55
        assert state.escalated_at is None
        assert state.drop_reason is None

    def test_forget(self, manager, now):
        manager.observe(EVENT, 0.5, now)
        manager.forget(EVENT)
        assert manager.get(EVENT) is None
