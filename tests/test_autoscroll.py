from tickrelay.viewer import AutoScrollController, ViewportMetrics


def make(scroll_top: float = 0, scroll_height: float = 1000, client_height: float = 200, threshold: float = 50):
    viewport = ViewportMetrics(scroll_top, scroll_height, client_height)
    return viewport, AutoScrollController(viewport, threshold=threshold)


def test_content_growth_pins_to_bottom() -> None:
    viewport, controller = make(scroll_top=800)
    viewport.scroll_height = 1300
    assert controller.on_content_added() is True
    assert viewport.scroll_top == 1100
    assert viewport.take_pin_request() is True
    assert viewport.take_pin_request() is False


def test_scrolling_away_suspends_until_user_returns() -> None:
    viewport, controller = make(scroll_top=800)
    viewport.report(scroll_top=300, scroll_height=1000, client_height=200)
    controller.on_user_scroll()
    assert controller.user_scrolled_away
    assert controller.on_content_added() is False
    assert viewport.scroll_top == 300

    viewport.report(scroll_top=760, scroll_height=1000, client_height=200)
    controller.on_user_scroll()
    assert not controller.user_scrolled_away
    assert controller.on_content_added() is True


def test_threshold_boundary() -> None:
    viewport, controller = make(threshold=50)
    viewport.report(scroll_top=750, scroll_height=1000, client_height=200)
    controller.on_user_scroll()
    assert controller.distance_from_bottom() == 50
    assert not controller.user_scrolled_away

    viewport.report(scroll_top=749, scroll_height=1000, client_height=200)
    controller.on_user_scroll()
    assert controller.user_scrolled_away


def test_panels_scroll_independently() -> None:
    fragment_vp, fragment_panel = make(scroll_top=800)
    transcript_vp, transcript_panel = make(scroll_top=800)
    transcript_vp.report(scroll_top=0, scroll_height=1000, client_height=200)
    transcript_panel.on_user_scroll()

    assert fragment_panel.on_content_added() is True
    assert transcript_panel.on_content_added() is False
