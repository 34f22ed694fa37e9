"""
Layer 3 — Engine State
Immutable auto-capture state and the transitions between states.

Every function here is pure: it takes a state and returns the next one.
Cancelling timers that a new state no longer references is the engine's job.
"""
from dataclasses import dataclass, replace
from typing import Optional

from .scheduler import TimerHandle

IDLE = 'idle'
ACCUMULATING = 'accumulating'
ARMED = 'armed'
CAPTURING = 'capturing'
CLOSED = 'closed'


@dataclass(frozen=True)
class EngineState:
    """Snapshot of the auto-capture engine."""
    consecutive_acceptable_count: int = 0
    pending_capture_timer: Optional[TimerHandle] = None
    capture_in_progress: bool = False

    @property
    def timer_pending(self) -> bool:
        return self.pending_capture_timer is not None


INITIAL_STATE = EngineState()


def reset_streak(state: EngineState) -> EngineState:
    """No face in frame, or a capture is running: drop the streak and any armed timer."""
    return replace(state, consecutive_acceptable_count=0, pending_capture_timer=None)


def record_verdict(state: EngineState, acceptable: bool, cancel_on_break: bool = True) -> EngineState:
    """
    Count one evaluated face.

    With ``cancel_on_break`` False, a rejected face only zeroes the counter and
    an already-armed timer stays scheduled.
    """
    if acceptable:
        return replace(state, consecutive_acceptable_count=state.consecutive_acceptable_count + 1)
    if cancel_on_break:
        return reset_streak(state)
    return replace(state, consecutive_acceptable_count=0)


def should_arm(state: EngineState, threshold: int, count: Optional[int] = None) -> bool:
    """True when the streak reached the threshold and nothing is armed or running."""
    if count is None:
        count = state.consecutive_acceptable_count
    return (
        count >= threshold
        and state.pending_capture_timer is None
        and not state.capture_in_progress
    )


def arm(state: EngineState, handle: TimerHandle) -> EngineState:
    return replace(state, pending_capture_timer=handle)


def timer_fired(state: EngineState, handle: TimerHandle) -> EngineState:
    """Forget the handle that just fired so the capture path cannot cancel it."""
    if state.pending_capture_timer is not handle:
        return state
    return replace(state, pending_capture_timer=None)


def begin_capture(state: EngineState) -> EngineState:
    return replace(state, capture_in_progress=True, pending_capture_timer=None)


def finish_capture(state: EngineState) -> EngineState:
    """Capture settled (either outcome): back to the initial shape."""
    return INITIAL_STATE


def phase(state: EngineState, closed: bool = False) -> str:
    """Name of the state-machine node the state sits in."""
    if closed:
        return CLOSED
    if state.capture_in_progress:
        return CAPTURING
    if state.pending_capture_timer is not None:
        return ARMED
    if state.consecutive_acceptable_count > 0:
        return ACCUMULATING
    return IDLE
