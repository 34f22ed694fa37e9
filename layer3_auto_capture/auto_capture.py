"""
Layer 3 — Auto-Capture Engine
Decides when to take a photo from a stream of per-frame face detections.

Features:
- Consecutive acceptable-face counter, reset on any bad or empty frame
- Debounced arming: one delayed capture once the streak reaches threshold
- Capture gate shared by automatic and manual triggers (never overlap)
- State reset after every capture attempt, success or failure
- Teardown cancels any scheduled capture
"""
import logging
import os
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from layer2_face_quality import FaceObservation, FaceQualityEvaluator

from . import state as transitions
from .scheduler import ThreadingScheduler
from .state import EngineState, INITIAL_STATE

logger = logging.getLogger(__name__)

TRIGGER_AUTO = 'auto'
TRIGGER_MANUAL = 'manual'


@dataclass
class AutoCaptureConfig:
    """Configuration for the auto-capture engine."""
    # Streak settings
    required_frames: int = 10          # ~0.3-0.5 s at 30-60 fps

    # Debounce settings
    debounce_ms: int = 300             # Delay between arming and capture

    # A rejected face after arming cancels the armed capture
    cancel_on_streak_break: bool = True

    @property
    def debounce_seconds(self) -> float:
        return self.debounce_ms / 1000.0

    @classmethod
    def from_env(cls) -> 'AutoCaptureConfig':
        """Read overrides from AUTO_CAPTURE_* environment variables."""
        defaults = cls()
        return cls(
            required_frames=int(os.environ.get('AUTO_CAPTURE_REQUIRED_FRAMES', defaults.required_frames)),
            debounce_ms=int(os.environ.get('AUTO_CAPTURE_DEBOUNCE_MS', defaults.debounce_ms)),
            cancel_on_streak_break=os.environ.get(
                'AUTO_CAPTURE_CANCEL_ON_BREAK', 'true'
            ).lower() in ('1', 'true', 'yes'),
        )


@dataclass
class CaptureResult:
    """Outcome of one capture attempt."""
    success: bool
    trigger: str
    timestamp: str = ""
    photo: Any = None
    error: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'success': self.success,
            'trigger': self.trigger,
            'timestamp': self.timestamp,
            'error': self.error,
            'metadata': self.metadata
        }
        if self.photo is not None:
            shape = getattr(self.photo, 'shape', None)
            result['photo'] = {'shape': list(shape)} if shape is not None else str(self.photo)
        return result


class AutoCaptureEngine:
    """
    Auto-capture decision engine for one camera session.

    Feed it one frame's detected faces at a time with process_faces().
    All public operations are serialised by one re-entrant lock, so frames,
    timer callbacks and capture completions never interleave.
    """

    def __init__(
        self,
        capture_action: Callable[[], Any],
        config: Optional[AutoCaptureConfig] = None,
        scheduler=None,
        evaluator: Optional[FaceQualityEvaluator] = None,
        on_capture_complete: Optional[Callable[[CaptureResult], None]] = None
    ):
        """
        Initialize auto-capture engine.

        Args:
            capture_action: Takes the photo. May return the photo, raise,
                or return a Future that settles later.
            config: Engine configuration (uses defaults if not provided)
            scheduler: Object with schedule(delay_seconds, callback)
            evaluator: Face quality gate
            on_capture_complete: Called with every CaptureResult
        """
        self.config = config or AutoCaptureConfig()
        self.capture_action = capture_action
        self.scheduler = scheduler or ThreadingScheduler()
        self.evaluator = evaluator or FaceQualityEvaluator()
        self.on_capture_complete = on_capture_complete

        self._lock = threading.RLock()
        self._state: EngineState = INITIAL_STATE
        self._closed = False
        self._active_trigger: Optional[str] = None

        self.last_result: Optional[CaptureResult] = None
        self.frames_processed = 0
        self.captures_attempted = 0

        logger.info("AutoCaptureEngine initialized")
        logger.debug(f"Config: {self.config}")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def phase(self) -> str:
        return transitions.phase(self._state, self._closed)

    def _apply(self, next_state: EngineState):
        """Install the next state, cancelling a timer it no longer holds."""
        previous = self._state.pending_capture_timer
        if previous is not None and next_state.pending_capture_timer is not previous:
            if previous.cancel():
                logger.debug("Pending capture cancelled")
        self._state = next_state

    # ------------------------------------------------------------------
    # Consecutive-success counter
    # ------------------------------------------------------------------

    def process_faces(self, faces: List[FaceObservation]) -> EngineState:
        """
        Handle one frame's detection result.

        Only the first face is evaluated. An empty frame, or any frame while
        a capture is running, resets the streak and cancels an armed capture.

        Returns:
            EngineState: State after this frame
        """
        with self._lock:
            if self._closed:
                logger.debug("Frame ignored, engine closed")
                return self._state

            self.frames_processed += 1

            if not faces or self._state.capture_in_progress:
                self._apply(transitions.reset_streak(self._state))
                return self._state

            acceptable = self.evaluator.evaluate(faces[0])
            self._apply(transitions.record_verdict(
                self._state, acceptable, self.config.cancel_on_streak_break
            ))

            count = self._state.consecutive_acceptable_count
            if acceptable:
                logger.debug(f"Acceptable face streak: {count}/{self.config.required_frames}")
                self.arm_if_needed(count)

            return self._state

    # ------------------------------------------------------------------
    # Debouncer
    # ------------------------------------------------------------------

    def arm_if_needed(self, count: int) -> bool:
        """
        Schedule the delayed auto-capture once the streak reaches threshold.

        Returns:
            bool: True if a timer was armed by this call
        """
        with self._lock:
            if self._closed:
                return False
            if not transitions.should_arm(self._state, self.config.required_frames, count):
                return False

            handle = self.scheduler.schedule(self.config.debounce_seconds, self._on_debounce_elapsed)
            self._apply(transitions.arm(self._state, handle))
            logger.info(
                f"Face stable for {count} frames, capturing in {self.config.debounce_ms} ms"
            )
            return True

    def _on_debounce_elapsed(self):
        """Timer callback: hand over to the capture gate."""
        with self._lock:
            handle = self._state.pending_capture_timer
            # A timer thread can claim its handle just before close() or a
            # cancel takes the lock; only the handle still in state may fire.
            if self._closed or handle is None or not handle.fired:
                logger.debug("Stale capture timer ignored")
                return
            self._apply(transitions.timer_fired(self._state, handle))
            self.trigger_auto_capture()

    # ------------------------------------------------------------------
    # Capture gate
    # ------------------------------------------------------------------

    def trigger_auto_capture(self) -> bool:
        return self._trigger(TRIGGER_AUTO)

    def trigger_manual_capture(self) -> bool:
        """User-requested capture, guarded like the automatic one."""
        return self._trigger(TRIGGER_MANUAL)

    def _trigger(self, trigger: str) -> bool:
        """
        Start a capture unless one is already running.

        Returns:
            bool: True if the capture action was invoked
        """
        with self._lock:
            if self._closed:
                logger.warning(f"{trigger.capitalize()} capture ignored, engine closed")
                return False
            if self._state.capture_in_progress:
                logger.info(f"{trigger.capitalize()} capture ignored, capture already in progress")
                return False

            self._apply(transitions.begin_capture(self._state))
            self._active_trigger = trigger
            self.captures_attempted += 1
            logger.info(f"[Capture] {trigger} capture started")

            try:
                outcome = self.capture_action()
            except Exception as e:
                self._complete(trigger, error=e)
                return True

            if isinstance(outcome, Future):
                outcome.add_done_callback(partial(self._on_capture_future_done, trigger))
            else:
                self._complete(trigger, photo=outcome)
            return True

    def _on_capture_future_done(self, trigger: str, future: Future):
        try:
            photo = future.result()
        except Exception as e:
            self._complete(trigger, error=e)
            return
        self._complete(trigger, photo=photo)

    def _complete(self, trigger: str, photo: Any = None, error: Optional[BaseException] = None):
        """Single convergence point after a capture attempt, whatever the outcome."""
        with self._lock:
            result = CaptureResult(
                success=error is None,
                trigger=trigger,
                timestamp=datetime.now().strftime("%Y%m%d_%H%M%S"),
                photo=photo,
                error=str(error) if error is not None else None,
                metadata={'attempt': self.captures_attempted}
            )
            if error is not None:
                logger.warning(f"[Capture] {trigger} capture failed: {error}", exc_info=error)
            else:
                logger.info(f"[Capture] {trigger} capture succeeded")

            self._apply(transitions.finish_capture(self._state))
            self._active_trigger = None
            self.last_result = result
            listener = self.on_capture_complete

        if listener is not None:
            try:
                listener(result)
            except Exception as e:
                logger.error(f"Capture listener failed: {e}")

    # ------------------------------------------------------------------
    # Status & teardown
    # ------------------------------------------------------------------

    def status(self) -> Dict:
        """Engine snapshot for API responses."""
        with self._lock:
            state = self._state
            required = self.config.required_frames
            return {
                'phase': self.phase,
                'consecutive_acceptable_count': state.consecutive_acceptable_count,
                'required_frames': required,
                'progress': min(state.consecutive_acceptable_count / required, 1.0) if required else 1.0,
                'timer_pending': state.timer_pending,
                'capture_in_progress': state.capture_in_progress,
                'active_trigger': self._active_trigger,
                'frames_processed': self.frames_processed,
                'captures_attempted': self.captures_attempted,
                'last_result': self.last_result.to_dict() if self.last_result else None
            }

    def close(self):
        """Tear down: cancel any scheduled capture and ignore later events."""
        with self._lock:
            if self._closed:
                return
            self._apply(transitions.reset_streak(self._state))
            self._closed = True
        logger.info("AutoCaptureEngine closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False
