"""Viewer side of the relay.

A viewer follows one session record, rebuilds the full response from the
fragments it observes, and paces their display with a typewriter animation
and per-panel auto-scroll.
"""

from .accumulator import TranscriptAccumulator, TranscriptUpdate
from .autoscroll import AutoScrollController, Viewport, ViewportMetrics
from .session_viewer import FRAGMENT_PANEL, TRANSCRIPT_PANEL, SessionViewer
from .typewriter import TypewriterRenderer, typewriter_frames

__all__ = [
    "AutoScrollController",
    "FRAGMENT_PANEL",
    "SessionViewer",
    "TRANSCRIPT_PANEL",
    "TranscriptAccumulator",
    "TranscriptUpdate",
    "TypewriterRenderer",
    "Viewport",
    "ViewportMetrics",
    "typewriter_frames",
]
