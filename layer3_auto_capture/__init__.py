"""
Layer 3 — Auto-Capture
Turns a stream of per-frame face detections into at most one photo capture
at a time: streak counter, debounced arming, and a capture gate shared with
manual capture.
"""
from .auto_capture import AutoCaptureEngine, AutoCaptureConfig, CaptureResult
from .scheduler import ThreadingScheduler, VirtualScheduler, TimerHandle
from .state import EngineState

__all__ = [
    'AutoCaptureEngine',
    'AutoCaptureConfig',
    'CaptureResult',
    'ThreadingScheduler',
    'VirtualScheduler',
    'TimerHandle',
    'EngineState'
]
