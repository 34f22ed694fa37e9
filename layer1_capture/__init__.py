"""
Layer 1 — Capture
Camera handling for the underlying photo capture action
"""
from .camera import Camera

__all__ = ['Camera']
