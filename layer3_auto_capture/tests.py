"""
Tests for the auto-capture engine: streak counter, debounce, capture gate.
"""
import threading
import time
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from layer3_auto_capture import (
    AutoCaptureConfig,
    AutoCaptureEngine,
    EngineState,
    ThreadingScheduler,
    TimerHandle,
    VirtualScheduler
)
from layer3_auto_capture import state as transitions

FRAME = 1 / 30
DEBOUNCE = 0.3


@pytest.fixture
def capture_action():
    """Capture action that succeeds immediately."""
    return MagicMock(return_value='photo-1')


@pytest.fixture
def engine(capture_action, scheduler):
    """Engine with default config on a virtual clock."""
    return AutoCaptureEngine(capture_action=capture_action, scheduler=scheduler)


def feed(engine, scheduler, faces, frames):
    """Feed the same frame ``frames`` times, one virtual frame tick apart."""
    for _ in range(frames):
        engine.process_faces(faces)
        scheduler.advance(FRAME)


class TestStateTransitions:
    """Test the pure state functions."""

    def test_acceptable_verdict_increments(self):
        """Test an acceptable face increments the counter."""
        state = transitions.record_verdict(EngineState(consecutive_acceptable_count=3), True)
        assert state.consecutive_acceptable_count == 4

    def test_rejected_verdict_resets_and_drops_timer(self):
        """Test a rejected face drops the streak and armed timer."""
        handle = TimerHandle(lambda: None)
        state = EngineState(consecutive_acceptable_count=12, pending_capture_timer=handle)
        state = transitions.record_verdict(state, False)
        assert state == EngineState()

    def test_rejected_verdict_keeps_timer_without_cancel_on_break(self):
        """Test legacy mode only zeroes the counter."""
        handle = TimerHandle(lambda: None)
        state = EngineState(consecutive_acceptable_count=12, pending_capture_timer=handle)
        state = transitions.record_verdict(state, False, cancel_on_break=False)
        assert state.consecutive_acceptable_count == 0
        assert state.pending_capture_timer is handle

    def test_should_arm_requires_threshold(self):
        """Test arming needs count >= threshold."""
        assert not transitions.should_arm(EngineState(consecutive_acceptable_count=9), 10)
        assert transitions.should_arm(EngineState(consecutive_acceptable_count=10), 10)
        assert transitions.should_arm(EngineState(consecutive_acceptable_count=15), 10)

    def test_should_arm_blocked_by_pending_timer_or_capture(self):
        """Test arming is idempotent and blocked during capture."""
        handle = TimerHandle(lambda: None)
        armed = EngineState(consecutive_acceptable_count=10, pending_capture_timer=handle)
        capturing = EngineState(consecutive_acceptable_count=10, capture_in_progress=True)
        assert not transitions.should_arm(armed, 10)
        assert not transitions.should_arm(capturing, 10)

    def test_begin_capture_clears_timer(self):
        """Test entering capture clears the pending timer."""
        state = EngineState(10, TimerHandle(lambda: None), False)
        state = transitions.begin_capture(state)
        assert state.capture_in_progress is True
        assert state.pending_capture_timer is None

    def test_finish_capture_returns_initial_state(self):
        """Test completion restores the initial shape."""
        state = transitions.finish_capture(EngineState(7, None, True))
        assert state == transitions.INITIAL_STATE

    def test_timer_fired_ignores_foreign_handle(self):
        """Test only the referenced handle is cleared."""
        handle = TimerHandle(lambda: None)
        state = EngineState(10, handle, False)
        assert transitions.timer_fired(state, TimerHandle(lambda: None)) is state
        assert transitions.timer_fired(state, handle).pending_capture_timer is None

    def test_phase_names(self):
        """Test phase reporting."""
        assert transitions.phase(EngineState()) == 'idle'
        assert transitions.phase(EngineState(3)) == 'accumulating'
        assert transitions.phase(EngineState(10, TimerHandle(lambda: None))) == 'armed'
        assert transitions.phase(EngineState(0, None, True)) == 'capturing'
        assert transitions.phase(EngineState(), closed=True) == 'closed'


class TestVirtualScheduler:
    """Test the virtual clock."""

    def test_fires_when_due(self, scheduler):
        """Test callbacks fire only once their time arrives."""
        callback = MagicMock()
        scheduler.schedule(0.3, callback)
        scheduler.advance(0.29)
        callback.assert_not_called()
        scheduler.advance(0.01)
        callback.assert_called_once()

    def test_cancelled_never_fires(self, scheduler):
        """Test cancellation before the due time."""
        callback = MagicMock()
        handle = scheduler.schedule(0.3, callback)
        assert handle.cancel() is True
        scheduler.advance(10)
        callback.assert_not_called()
        assert handle.cancelled

    def test_cancel_is_idempotent(self, scheduler):
        """Test cancelling fired or cancelled handles is a safe no-op."""
        handle = scheduler.schedule(0.1, MagicMock())
        scheduler.advance(0.2)
        assert handle.fired
        assert handle.cancel() is False
        other = scheduler.schedule(0.1, MagicMock())
        other.cancel()
        assert other.cancel() is False

    def test_fires_in_due_order(self, scheduler):
        """Test ordering of several callbacks."""
        order = []
        scheduler.schedule(0.2, lambda: order.append('late'))
        scheduler.schedule(0.1, lambda: order.append('early'))
        assert scheduler.pending_count == 2
        assert scheduler.advance(1) == 2
        assert order == ['early', 'late']
        assert scheduler.pending_count == 0


class TestConsecutiveCounter:
    """Test the consecutive-success counter."""

    def test_nine_frames_do_not_arm(self, engine, scheduler, good_observation):
        """Test 9 acceptable frames never arm the timer."""
        feed(engine, scheduler, [good_observation], 9)
        assert engine.state.consecutive_acceptable_count == 9
        assert engine.state.pending_capture_timer is None
        assert scheduler.pending_count == 0

    def test_tenth_frame_arms(self, engine, scheduler, good_observation):
        """Test the 10th acceptable frame arms the timer."""
        feed(engine, scheduler, [good_observation], 9)
        engine.process_faces([good_observation])
        assert engine.state.consecutive_acceptable_count == 10
        assert engine.state.timer_pending
        assert engine.phase == 'armed'

    def test_extra_frames_do_not_rearm(self, engine, scheduler, good_observation):
        """Test further acceptable frames keep a single timer."""
        for _ in range(15):
            engine.process_faces([good_observation])
        assert engine.state.consecutive_acceptable_count == 15
        assert scheduler.pending_count == 1

    def test_unacceptable_frame_resets(self, engine, scheduler, good_observation, bad_observation):
        """Test one bad frame resets the counter."""
        feed(engine, scheduler, [good_observation], 5)
        engine.process_faces([bad_observation])
        assert engine.state.consecutive_acceptable_count == 0

    def test_empty_frame_resets_and_cancels(self, engine, scheduler, good_observation, capture_action):
        """Test an empty frame resets the count and cancels an armed capture."""
        for _ in range(10):
            engine.process_faces([good_observation])
        handle = engine.state.pending_capture_timer
        engine.process_faces([])
        assert engine.state == EngineState()
        assert handle.cancelled
        scheduler.advance(1)
        capture_action.assert_not_called()

    def test_only_first_face_evaluated(self, engine, good_observation, bad_observation):
        """Test multi-face frames use the first face only."""
        engine.process_faces([good_observation, bad_observation])
        assert engine.state.consecutive_acceptable_count == 1
        engine.process_faces([bad_observation, good_observation])
        assert engine.state.consecutive_acceptable_count == 0

    def test_frames_counted(self, engine, good_observation):
        """Test frames_processed bookkeeping."""
        engine.process_faces([good_observation])
        engine.process_faces([])
        assert engine.frames_processed == 2


class TestStreakBreak:
    """Test a broken streak after arming."""

    def test_break_cancels_armed_capture(self, engine, scheduler, good_observation,
                                         bad_observation, capture_action):
        """Test a bad frame after arming cancels the pending capture."""
        for _ in range(10):
            engine.process_faces([good_observation])
        engine.process_faces([bad_observation])
        assert engine.state.pending_capture_timer is None
        scheduler.advance(1)
        capture_action.assert_not_called()

    def test_two_streaks_capture_once(self, engine, scheduler, good_observation,
                                      bad_observation, capture_action):
        """Test 10 good, 1 bad, 10 good: one timer at a time, one capture."""
        original_schedule = scheduler.schedule
        scheduled = []

        def tracking_schedule(delay, callback):
            handle = original_schedule(delay, callback)
            scheduled.append(handle)
            return handle

        scheduler.schedule = tracking_schedule

        for _ in range(10):
            engine.process_faces([good_observation])
        engine.process_faces([bad_observation])
        for _ in range(10):
            engine.process_faces([good_observation])

        assert scheduler.pending_count == 1
        assert scheduled[0].cancelled
        assert engine.state.pending_capture_timer is scheduled[-1]

        scheduler.advance(DEBOUNCE)
        capture_action.assert_called_once()

    def test_legacy_mode_keeps_first_timer(self, scheduler, good_observation,
                                           bad_observation, capture_action):
        """Test cancel_on_streak_break=False arms once and fires regardless."""
        engine = AutoCaptureEngine(
            capture_action=capture_action,
            config=AutoCaptureConfig(cancel_on_streak_break=False),
            scheduler=scheduler
        )
        for _ in range(10):
            engine.process_faces([good_observation])
        first = engine.state.pending_capture_timer
        engine.process_faces([bad_observation])
        assert engine.state.consecutive_acceptable_count == 0
        assert engine.state.pending_capture_timer is first

        for _ in range(10):
            engine.process_faces([good_observation])
        assert engine.state.pending_capture_timer is first
        assert scheduler.pending_count == 1

        scheduler.advance(DEBOUNCE)
        capture_action.assert_called_once()

    def test_legacy_mode_stale_timer_still_fires(self, scheduler, good_observation,
                                                 bad_observation, capture_action):
        """Test legacy mode captures even though the live streak broke."""
        engine = AutoCaptureEngine(
            capture_action=capture_action,
            config=AutoCaptureConfig(cancel_on_streak_break=False),
            scheduler=scheduler
        )
        for _ in range(10):
            engine.process_faces([good_observation])
        engine.process_faces([bad_observation])
        scheduler.advance(DEBOUNCE)
        capture_action.assert_called_once()


class TestDebouncer:
    """Test debounced arming."""

    def test_capture_waits_for_debounce(self, engine, scheduler, good_observation, capture_action):
        """Test nothing is captured before the delay elapses."""
        for _ in range(10):
            engine.process_faces([good_observation])
        scheduler.advance(DEBOUNCE - 0.01)
        capture_action.assert_not_called()
        scheduler.advance(0.01)
        capture_action.assert_called_once()

    def test_arm_if_needed_below_threshold(self, engine):
        """Test arm_if_needed ignores counts below threshold."""
        assert engine.arm_if_needed(9) is False
        assert engine.state.pending_capture_timer is None

    def test_arm_if_needed_idempotent(self, engine, scheduler):
        """Test a second crossing while armed is a no-op."""
        assert engine.arm_if_needed(10) is True
        assert engine.arm_if_needed(11) is False
        assert scheduler.pending_count == 1

    def test_handle_cleared_before_capture_runs(self, scheduler, good_observation):
        """Test the fired handle is gone from state when the capture starts."""
        seen = {}

        def capture():
            seen['state'] = engine.state
            return 'photo'

        engine = AutoCaptureEngine(capture_action=capture, scheduler=scheduler)
        for _ in range(10):
            engine.process_faces([good_observation])
        scheduler.advance(DEBOUNCE)
        assert seen['state'].pending_capture_timer is None
        assert seen['state'].capture_in_progress is True

    def test_custom_threshold_and_delay(self, scheduler, good_observation, capture_action):
        """Test config overrides."""
        engine = AutoCaptureEngine(
            capture_action=capture_action,
            config=AutoCaptureConfig(required_frames=3, debounce_ms=100),
            scheduler=scheduler
        )
        for _ in range(3):
            engine.process_faces([good_observation])
        scheduler.advance(0.1)
        capture_action.assert_called_once()


class TestCaptureGate:
    """Test the capture gate shared by auto and manual capture."""

    def test_manual_capture_invokes_action(self, engine, capture_action):
        """Test an accepted manual trigger."""
        assert engine.trigger_manual_capture() is True
        capture_action.assert_called_once()
        assert engine.last_result.success is True
        assert engine.last_result.trigger == 'manual'
        assert engine.last_result.photo == 'photo-1'

    def test_manual_during_capture_is_noop(self, scheduler):
        """Test a second trigger while capturing does not invoke the action again."""
        future = Future()
        action = MagicMock(return_value=future)
        engine = AutoCaptureEngine(capture_action=action, scheduler=scheduler)

        assert engine.trigger_manual_capture() is True
        assert engine.state.capture_in_progress is True
        assert engine.trigger_manual_capture() is False
        assert engine.trigger_auto_capture() is False
        action.assert_called_once()

        future.set_result('photo')
        assert engine.state.capture_in_progress is False

    def test_frames_during_capture_reset_and_do_not_arm(self, scheduler, good_observation):
        """Test frames while capturing reset the counter and never arm."""
        future = Future()
        engine = AutoCaptureEngine(capture_action=MagicMock(return_value=future), scheduler=scheduler)
        engine.trigger_manual_capture()

        for _ in range(20):
            engine.process_faces([good_observation])
            assert engine.state.consecutive_acceptable_count == 0
        assert engine.state.pending_capture_timer is None
        assert scheduler.pending_count == 0
        assert engine.phase == 'capturing'

        future.set_result('photo')

    def test_manual_capture_cancels_armed_timer(self, engine, scheduler, good_observation,
                                                capture_action):
        """Test a manual capture while armed replaces the automatic one."""
        for _ in range(10):
            engine.process_faces([good_observation])
        handle = engine.state.pending_capture_timer
        engine.trigger_manual_capture()
        assert handle.cancelled
        scheduler.advance(1)
        capture_action.assert_called_once()

    def test_state_reset_after_success(self, engine, scheduler, good_observation):
        """Test state after a successful capture."""
        for _ in range(10):
            engine.process_faces([good_observation])
        scheduler.advance(DEBOUNCE)
        assert engine.state == EngineState()
        assert engine.last_result.trigger == 'auto'

    def test_state_reset_after_failure(self, scheduler, good_observation):
        """Test a raising capture action is absorbed and state resets."""
        action = MagicMock(side_effect=RuntimeError('camera unplugged'))
        engine = AutoCaptureEngine(capture_action=action, scheduler=scheduler)
        for _ in range(10):
            engine.process_faces([good_observation])
        scheduler.advance(DEBOUNCE)

        action.assert_called_once()
        assert engine.state == EngineState()
        assert engine.last_result.success is False
        assert 'camera unplugged' in engine.last_result.error

    def test_future_failure_resets_state(self, scheduler):
        """Test a Future that fails later still resets state."""
        future = Future()
        engine = AutoCaptureEngine(capture_action=MagicMock(return_value=future), scheduler=scheduler)
        engine.trigger_manual_capture()
        future.set_exception(IOError('disk full'))
        assert engine.state == EngineState()
        assert engine.last_result.success is False

    def test_cancelled_future_resets_state(self, scheduler):
        """Test a cancelled Future counts as a failed capture."""
        future = Future()
        engine = AutoCaptureEngine(capture_action=MagicMock(return_value=future), scheduler=scheduler)
        engine.trigger_manual_capture()
        future.cancel()
        assert engine.state.capture_in_progress is False
        assert engine.last_result.success is False

    def test_no_retry_after_failure(self, scheduler, good_observation):
        """Test a failed capture is not retried without a fresh streak."""
        action = MagicMock(side_effect=RuntimeError('boom'))
        engine = AutoCaptureEngine(capture_action=action, scheduler=scheduler)
        for _ in range(10):
            engine.process_faces([good_observation])
        scheduler.advance(DEBOUNCE)
        scheduler.advance(5)
        assert action.call_count == 1

        for _ in range(10):
            engine.process_faces([good_observation])
        scheduler.advance(DEBOUNCE)
        assert action.call_count == 2

    def test_listener_receives_result(self, scheduler, capture_action):
        """Test on_capture_complete is called with the result."""
        listener = MagicMock()
        engine = AutoCaptureEngine(capture_action=capture_action, scheduler=scheduler,
                                   on_capture_complete=listener)
        engine.trigger_manual_capture()
        listener.assert_called_once_with(engine.last_result)

    def test_listener_error_absorbed(self, scheduler, capture_action):
        """Test a failing listener does not break the engine."""
        engine = AutoCaptureEngine(capture_action=capture_action, scheduler=scheduler,
                                   on_capture_complete=MagicMock(side_effect=ValueError('bad')))
        assert engine.trigger_manual_capture() is True
        assert engine.state == EngineState()


class TestTeardown:
    """Test engine teardown."""

    def test_close_cancels_pending_capture(self, engine, scheduler, good_observation, capture_action):
        """Test no capture fires after teardown, even past the delay."""
        for _ in range(10):
            engine.process_faces([good_observation])
        engine.close()
        scheduler.advance(10)
        capture_action.assert_not_called()
        assert engine.state.pending_capture_timer is None
        assert engine.phase == 'closed'

    def test_close_is_idempotent(self, engine):
        """Test repeated close calls are safe."""
        engine.close()
        engine.close()
        assert engine.closed

    def test_events_ignored_after_close(self, engine, scheduler, good_observation, capture_action):
        """Test frames and triggers after close do nothing."""
        engine.close()
        for _ in range(10):
            engine.process_faces([good_observation])
        assert engine.trigger_manual_capture() is False
        scheduler.advance(1)
        capture_action.assert_not_called()
        assert engine.frames_processed == 0

    def test_timer_claimed_before_close_does_not_capture(self, engine, good_observation,
                                                         capture_action):
        """Test a timer callback that loses the race with close is ignored."""
        for _ in range(10):
            engine.process_faces([good_observation])
        handle = engine.state.pending_capture_timer
        handle._status = 'fired'
        engine.close()
        engine._on_debounce_elapsed()
        capture_action.assert_not_called()

    def test_context_manager_closes(self, capture_action, scheduler, good_observation):
        """Test the engine closes on context exit."""
        with AutoCaptureEngine(capture_action=capture_action, scheduler=scheduler) as engine:
            for _ in range(10):
                engine.process_faces([good_observation])
        scheduler.advance(1)
        capture_action.assert_not_called()
        assert engine.closed


class TestEndToEnd:
    """Full auto-capture scenario on a virtual clock."""

    def test_ten_good_frames_capture_once(self, engine, scheduler, good_observation, capture_action):
        """Test 10 acceptable frames lead to one capture after the debounce."""
        feed(engine, scheduler, [good_observation], 10)
        scheduler.advance(DEBOUNCE)

        capture_action.assert_called_once()
        assert engine.state == EngineState()
        assert engine.phase == 'idle'
        assert engine.captures_attempted == 1

        status = engine.status()
        assert status['consecutive_acceptable_count'] == 0
        assert status['timer_pending'] is False
        assert status['capture_in_progress'] is False
        assert status['last_result']['success'] is True

    def test_status_progress(self, engine, good_observation):
        """Test progress reporting while accumulating."""
        for _ in range(5):
            engine.process_faces([good_observation])
        status = engine.status()
        assert status['phase'] == 'accumulating'
        assert status['progress'] == 0.5
        assert status['required_frames'] == 10


class TestAutoCaptureConfig:
    """Test configuration loading."""

    def test_defaults(self):
        """Test default values."""
        config = AutoCaptureConfig()
        assert config.required_frames == 10
        assert config.debounce_ms == 300
        assert config.debounce_seconds == 0.3
        assert config.cancel_on_streak_break is True

    def test_from_env(self, monkeypatch):
        """Test environment overrides."""
        monkeypatch.setenv('AUTO_CAPTURE_REQUIRED_FRAMES', '15')
        monkeypatch.setenv('AUTO_CAPTURE_DEBOUNCE_MS', '500')
        monkeypatch.setenv('AUTO_CAPTURE_CANCEL_ON_BREAK', 'false')
        config = AutoCaptureConfig.from_env()
        assert config.required_frames == 15
        assert config.debounce_ms == 500
        assert config.cancel_on_streak_break is False


class TestThreadingScheduler:
    """Test the real timer-thread scheduler and the engine on top of it."""

    @pytest.fixture
    def threaded_engine(self, capture_action):
        """Engine with a short real debounce."""
        engine = AutoCaptureEngine(
            capture_action=capture_action,
            config=AutoCaptureConfig(debounce_ms=10),
            scheduler=ThreadingScheduler()
        )
        yield engine
        engine.close()

    def test_callback_fires_once(self):
        """Test a scheduled callback runs exactly once."""
        calls = []
        fired = threading.Event()

        def callback():
            calls.append(1)
            fired.set()

        handle = ThreadingScheduler().schedule(0.01, callback)
        assert fired.wait(1)
        handle.timer.join(1)
        assert calls == [1]
        assert handle.fired
        assert handle.cancel() is False

    def test_cancel_stops_timer(self):
        """Test cancel prevents the callback and stops the timer thread."""
        callback = MagicMock()
        handle = ThreadingScheduler().schedule(0.05, callback)
        assert handle.cancel() is True
        handle.timer.join(1)
        time.sleep(0.1)
        callback.assert_not_called()
        assert handle.cancelled
        assert handle.timer.finished.is_set()

    def test_debounce_fires_capture_once(self, threaded_engine, capture_action, good_observation):
        """Test an armed capture runs once on the timer thread and resets state."""
        done = threading.Event()
        threaded_engine.on_capture_complete = lambda result: done.set()
        for _ in range(10):
            threaded_engine.process_faces([good_observation])

        assert done.wait(1)
        time.sleep(0.05)
        capture_action.assert_called_once()
        assert threaded_engine.state == EngineState()
        assert threaded_engine.last_result.success is True

    def test_close_before_debounce_prevents_capture(self, threaded_engine, capture_action,
                                                    good_observation):
        """Test closing inside the debounce window cancels the capture."""
        for _ in range(10):
            threaded_engine.process_faces([good_observation])
        handle = threaded_engine.state.pending_capture_timer
        threaded_engine.close()

        handle.timer.join(1)
        time.sleep(0.05)
        capture_action.assert_not_called()
        assert handle.cancelled

    def test_close_after_timer_claims_handle(self, threaded_engine, capture_action,
                                             good_observation):
        """Test a timer thread blocked on the engine lock is ignored after close."""
        with threaded_engine._lock:
            for _ in range(10):
                threaded_engine.process_faces([good_observation])
            handle = threaded_engine.state.pending_capture_timer
            for _ in range(100):
                if handle.fired:
                    break
                time.sleep(0.01)
            assert handle.fired
            threaded_engine.close()

        handle.timer.join(1)
        capture_action.assert_not_called()
        assert threaded_engine.captures_attempted == 0
