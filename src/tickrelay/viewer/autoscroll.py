from dataclasses import dataclass
from typing import Protocol

DEFAULT_THRESHOLD = 50


class Viewport(Protocol):
    scroll_top: float
    scroll_height: float
    client_height: float

    def scroll_to_bottom(self) -> None: ...


@dataclass
class ViewportMetrics:
    """Viewport whose geometry is reported by a remote display.

    ``scroll_to_bottom`` moves the local copy and raises ``pin_requested`` so
    the caller can forward the pin to the display.
    """

    scroll_top: float = 0
    scroll_height: float = 0
    client_height: float = 0
    pin_requested: bool = False

    def report(self, scroll_top: float, scroll_height: float, client_height: float) -> None:
        self.scroll_top = scroll_top
        self.scroll_height = scroll_height
        self.client_height = client_height

    def scroll_to_bottom(self) -> None:
        self.scroll_top = max(self.scroll_height - self.client_height, 0)
        self.pin_requested = True

    def take_pin_request(self) -> bool:
        requested, self.pin_requested = self.pin_requested, False
        return requested


class AutoScrollController:
    """Keeps one panel pinned to its bottom unless the user scrolled away from it."""

    def __init__(self, viewport: Viewport, threshold: float = DEFAULT_THRESHOLD) -> None:
        self.viewport = viewport
        self.threshold = threshold
        self.user_scrolled_away = False

    def distance_from_bottom(self) -> float:
        vp = self.viewport
        return vp.scroll_height - vp.scroll_top - vp.client_height

    def is_at_bottom(self) -> bool:
        return self.distance_from_bottom() <= self.threshold

    def on_user_scroll(self) -> None:
        self.user_scrolled_away = not self.is_at_bottom()

    def on_content_added(self) -> bool:
        """Pin to the bottom after growth; returns whether a scroll happened."""
        if self.user_scrolled_away:
            return False
        self.viewport.scroll_to_bottom()
        return True
