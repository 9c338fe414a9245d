"""
Escalation state machine.

    watching -> active -> confirmed -> signal
        any of the above -> dropped (expiry, reversal, retirement)
        dropped -> watching (re-armed after a cool-down)

transition() is the only function that produces a new EventWatchState.
EscalationManager owns the live states, serialises writes per event_key
and enforces the cap on simultaneously hot events.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog

from edgescan.config import MovementSettings
from edgescan.engine.movement import MovementReading
from edgescan.errors import IllegalTransition
from edgescan.models.schemas import EventWatchState, MovementLog, WatchState

logger = structlog.get_logger()


ALLOWED_TRANSITIONS: dict[WatchState, frozenset[WatchState]] = {
    WatchState.WATCHING: frozenset({WatchState.WATCHING, WatchState.ACTIVE, WatchState.DROPPED}),
    WatchState.ACTIVE: frozenset({WatchState.ACTIVE, WatchState.CONFIRMED, WatchState.DROPPED}),
    WatchState.CONFIRMED: frozenset({WatchState.CONFIRMED, WatchState.SIGNAL, WatchState.DROPPED}),
    WatchState.SIGNAL: frozenset({WatchState.SIGNAL, WatchState.DROPPED}),
    WatchState.DROPPED: frozenset({WatchState.DROPPED, WatchState.WATCHING}),
}

# Drop reasons
EXPIRED = "expired"
REVERTED = "reverted"
STARTED = "started"
MARKET_INACTIVE = "market_inactive"

REARMABLE = (EXPIRED, REVERTED)


def transition(
    state: EventWatchState,
    target: WatchState,
    now: datetime,
    **changes,
) -> EventWatchState:
    """
    Produce the next version of a watch state.

    Raises:
        IllegalTransition: target is not reachable from the current state.
    """
    if target not in ALLOWED_TRANSITIONS[state.watch_state]:
        raise IllegalTransition(state.event_key, state.watch_state.value, target.value)
    return replace(state, watch_state=target, updated_at=now, **changes)


def new_watch_state(
    event_key: str,
    probability: float,
    now: datetime,
    **context,
) -> EventWatchState:
    """State for an event seen for the first time."""
    return EventWatchState(
        event_key=event_key,
        watch_state=WatchState.WATCHING,
        initial_probability=probability,
        peak_probability=probability,
        current_probability=probability,
        updated_at=now,
        **context,
    )


class EscalationManager:
    """
    Live watch states, one per event_key.

    Writes to a given event go through that event's lock. Admission takes
    an additional manager-wide lock because the slot count spans events.
    """

    def __init__(self, settings: Optional[MovementSettings] = None):
        self.settings = settings or MovementSettings()
        self.logger = logger.bind(component="escalation")

        self._states: dict[str, EventWatchState] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._admission_lock = threading.Lock()
        self._logs: list[MovementLog] = []
        self._logs_lock = threading.Lock()

    # =========================================================================
    # Access
    # =========================================================================

    def load(self, states: Iterable[EventWatchState]) -> None:
        """Seed from persisted states (e.g. after a restart)."""
        for state in states:
            self._states[state.event_key] = state

    def get(self, event_key: str) -> Optional[EventWatchState]:
        return self._states.get(event_key)

    def states(self) -> list[EventWatchState]:
        return list(self._states.values())

    def hot(self) -> list[EventWatchState]:
        return [s for s in self._states.values() if s.is_hot]

    def in_state(self, *states: WatchState) -> list[EventWatchState]:
        return [s for s in self._states.values() if s.watch_state in states]

    def hot_count(self) -> int:
        return sum(1 for s in self._states.values() if s.is_hot)

    def drain_logs(self) -> list[MovementLog]:
        with self._logs_lock:
            logs, self._logs = self._logs, []
        return logs

    def forget(self, event_key: str) -> None:
        """Archive an event that is finished with (dropped and not re-armable)."""
        with self._lock_for(event_key):
            self._states.pop(event_key, None)
        with self._locks_guard:
            self._locks.pop(event_key, None)

    def _lock_for(self, event_key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(event_key)
            if lock is None:
                lock = self._locks[event_key] = threading.Lock()
            return lock

    def _apply(
        self,
        state: EventWatchState,
        target: WatchState,
        now: datetime,
        **changes,
    ) -> EventWatchState:
        new_state = transition(state, target, now, **changes)
        self._states[state.event_key] = new_state
        return new_state

    # =========================================================================
    # Watch tier
    # =========================================================================

    def observe(
        self,
        event_key: str,
        probability: float,
        now: datetime,
        reading: Optional[MovementReading] = None,
        **context,
    ) -> EventWatchState:
        """
        Record the latest consensus probability for an event.

        Creates the state on first sight. Watching events take the window
        movement from `reading`; hot events only refresh current_probability,
        their movement is tracked by sample(). Dropped events are re-armed
        once the cool-down (one active window) has passed.
        """
        with self._lock_for(event_key):
            state = self._states.get(event_key)
            if state is None:
                state = new_watch_state(event_key, probability, now, **context)
                self._states[event_key] = state
                return state

            if state.watch_state == WatchState.DROPPED:
                cooldown = timedelta(minutes=self.settings.active_window_minutes)
                if (
                    state.drop_reason in REARMABLE
                    and state.updated_at is not None
                    and now - state.updated_at >= cooldown
                ):
                    self.logger.debug("Event re-armed", event_key=event_key)
                    return self._apply(
                        state,
                        WatchState.WATCHING,
                        now,
                        initial_probability=probability,
                        peak_probability=probability,
                        current_probability=probability,
                        movement_pct=0.0,
                        movement_velocity=0.0,
                        escalated_at=None,
                        active_until=None,
                        hold_start_at=None,
                        samples_since_hold=0,
                        reverted=False,
                        drop_reason=None,
                        **context,
                    )
                # updated_at marks the drop time, so the cool-down is left untouched
                return state

            if state.watch_state == WatchState.WATCHING:
                changes = {"current_probability": probability}
                if reading is not None:
                    changes.update(
                        initial_probability=reading.initial_probability,
                        movement_pct=reading.movement_pct,
                        movement_velocity=reading.velocity,
                    )
                    peak = _further(state.peak_probability, probability, reading.direction)
                    changes["peak_probability"] = peak
                return self._apply(state, WatchState.WATCHING, now, **changes, **context)

            return self._apply(state, state.watch_state, now, current_probability=probability)

    def admit(
        self,
        candidates: Iterable[MovementReading],
        now: datetime,
    ) -> list[EventWatchState]:
        """
        Promote qualifying watching events to active, largest move first,
        while hot slots remain. Returns the promoted states.
        """
        ranked = sorted(candidates, key=lambda r: abs(r.movement_pct), reverse=True)
        promoted: list[EventWatchState] = []

        with self._admission_lock:
            slots = self.settings.max_simultaneous_active - self.hot_count()
            for reading in ranked:
                if slots <= 0:
                    self.logger.info(
                        "Active slots full",
                        event_key=reading.event_key,
                        movement_pct=round(reading.movement_pct, 2),
                        max_active=self.settings.max_simultaneous_active,
                    )
                    continue
                with self._lock_for(reading.event_key):
                    state = self._states.get(reading.event_key)
                    if state is None or state.watch_state != WatchState.WATCHING:
                        continue
                    new_state = self._apply(
                        state,
                        WatchState.ACTIVE,
                        now,
                        initial_probability=reading.initial_probability,
                        current_probability=reading.current_probability,
                        peak_probability=reading.current_probability,
                        movement_pct=reading.movement_pct,
                        movement_velocity=reading.velocity,
                        escalated_at=now,
                        active_until=now + timedelta(minutes=self.settings.active_window_minutes),
                        hold_start_at=now,
                        samples_since_hold=0,
                    )
                promoted.append(new_state)
                slots -= 1
                self.logger.info(
                    "Event escalated",
                    event_key=reading.event_key,
                    movement_pct=round(reading.movement_pct, 2),
                    velocity=round(reading.velocity, 3),
                    confirming=reading.confirming_sources,
                )

        return promoted

    # =========================================================================
    # Active tier
    # =========================================================================

    def sample(
        self,
        event_key: str,
        probability: float,
        now: datetime,
        velocity: Optional[float] = None,
    ) -> Optional[EventWatchState]:
        """
        Apply one high-frequency sample to a hot event.

        Active events expire at active_until, drop as reverted when the move
        in the escalation direction shrinks below threshold - reversal_band,
        and confirm after samples_required samples once the hold window has
        elapsed. Confirmed events still expire if no market shows up.
        """
        with self._lock_for(event_key):
            state = self._states.get(event_key)
            if state is None or not state.is_hot:
                return state

            if self._is_due(state, now):
                return self._expire(state, now, current_probability=probability)

            if state.watch_state == WatchState.CONFIRMED:
                return self._apply(state, WatchState.CONFIRMED, now, current_probability=probability)

            movement_pct = (probability - state.initial_probability) * 100
            signed = movement_pct * state.direction
            floor = self.settings.movement_threshold_pct - self.settings.reversal_band_pct
            if signed < floor:
                new_state = self._apply(
                    state,
                    WatchState.DROPPED,
                    now,
                    current_probability=probability,
                    movement_pct=movement_pct,
                    reverted=True,
                    drop_reason=REVERTED,
                )
                self._record(new_state, REVERTED, now)
                self.logger.info(
                    "Movement reverted",
                    event_key=event_key,
                    movement_pct=round(movement_pct, 2),
                    floor=floor,
                )
                return new_state

            samples = state.samples_since_hold + 1
            changes = dict(
                current_probability=probability,
                peak_probability=_further(state.peak_probability, probability, state.direction),
                movement_pct=movement_pct,
                samples_since_hold=samples,
            )
            if velocity is not None:
                changes["movement_velocity"] = velocity

            hold = timedelta(minutes=self.settings.hold_window_minutes)
            held = state.hold_start_at is None or now - state.hold_start_at >= hold
            if samples >= self.settings.samples_required and held:
                new_state = self._apply(state, WatchState.CONFIRMED, now, **changes)
                self._record(new_state, WatchState.CONFIRMED.value, now)
                self.logger.info(
                    "Movement confirmed",
                    event_key=event_key,
                    movement_pct=round(movement_pct, 2),
                    samples=samples,
                )
                return new_state

            return self._apply(state, WatchState.ACTIVE, now, **changes)

    def expire_due(self, now: datetime) -> list[EventWatchState]:
        """Drop every hot event whose active window has lapsed."""
        expired = []
        for candidate in self.hot():
            with self._lock_for(candidate.event_key):
                state = self._states.get(candidate.event_key)
                if state is not None and state.is_hot and self._is_due(state, now):
                    expired.append(self._expire(state, now))
        return expired

    @staticmethod
    def _is_due(state: EventWatchState, now: datetime) -> bool:
        return state.active_until is not None and now >= state.active_until

    def _expire(self, state: EventWatchState, now: datetime, **changes) -> EventWatchState:
        new_state = self._apply(
            state,
            WatchState.DROPPED,
            now,
            reverted=False,
            drop_reason=EXPIRED,
            **changes,
        )
        self._record(new_state, EXPIRED, now)
        self.logger.info("Active window expired", event_key=state.event_key)
        return new_state

    def mark_signal(
        self,
        event_key: str,
        market_id: str,
        now: datetime,
        edge_pct: Optional[float] = None,
    ) -> EventWatchState:
        """Confirmed event matched to exactly one market and scored."""
        with self._lock_for(event_key):
            state = self._states[event_key]
            already_signal = state.watch_state == WatchState.SIGNAL
            new_state = self._apply(state, WatchState.SIGNAL, now, matched_market_id=market_id)
            if not already_signal:
                self._record(new_state, WatchState.SIGNAL.value, now, edge_pct=edge_pct)
            return new_state

    def retire(self, event_key: str, reason: str, now: datetime) -> Optional[EventWatchState]:
        """Drop an event whose market went inactive or whose game started."""
        with self._lock_for(event_key):
            state = self._states.get(event_key)
            if state is None or state.watch_state == WatchState.DROPPED:
                return state
            new_state = self._apply(state, WatchState.DROPPED, now, drop_reason=reason)
            self.logger.info("Event retired", event_key=event_key, reason=reason)
            return new_state

    def _record(
        self,
        state: EventWatchState,
        final_state: str,
        now: datetime,
        edge_pct: Optional[float] = None,
    ) -> None:
        hold_seconds = 0.0
        if state.hold_start_at is not None:
            hold_seconds = (now - state.hold_start_at).total_seconds()
        log = MovementLog(
            event_key=state.event_key,
            final_state=final_state,
            movement_pct=state.movement_pct,
            velocity=state.movement_velocity,
            hold_duration_seconds=hold_seconds,
            samples_captured=state.samples_since_hold,
            market_matched=state.matched_market_id is not None,
            logged_at=now,
            edge_at_confirmation=edge_pct,
        )
        with self._logs_lock:
            self._logs.append(log)


def _further(peak: float, probability: float, direction: int) -> float:
    if direction > 0:
        return max(peak, probability)
    if direction < 0:
        return min(peak, probability)
    return peak
