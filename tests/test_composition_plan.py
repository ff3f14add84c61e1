"""Unit tests for composition planning."""

from __future__ import annotations

import itertools
import math

import pytest

from domain.short_video import (
    INVALID_LAYOUT_CODE,
    MISSING_CLIP_CODE,
    MISSING_TAGLINE_CODE,
    AudioConfig,
    ComposeValidationError,
    CompositionRequest,
    DisplayConfig,
    DisplayMode,
    FitMode,
    LayoutConfig,
    TextAnchor,
    TextConfig,
)
from service.composition_plan import (
    TITLE_MAX_CHARS,
    build_composition_plan,
    build_layout_plan,
    build_timing_plan,
    build_upload_handoff,
    compute_max_chars_per_line,
    resolve_duration_plan,
    wrap_tagline,
)


class FixedRandom:
    """Uniform source that always returns the same draw."""

    def __init__(self, value: float) -> None:
        self.value = value

    def random(self) -> float:
        return self.value


def build_request(**overrides: object) -> CompositionRequest:
    """Build a request with default settings."""
    values: dict[str, object] = {
        "source_clip_path": "clip.mp4",
        "tagline_text": "the quick brown fox jumps over the lazy dog",
        "candidate_audio_paths": (),
        "target_duration_seconds": 15.0,
        "min_duration_seconds": 10.0,
        "max_duration_seconds": 25.0,
        "layout": LayoutConfig(),
        "text": TextConfig(),
        "display": DisplayConfig(),
        "audio": AudioConfig(),
        "output_path": "final.mp4",
        "work_dir": "out",
        "title_prefix": "Road to 2112",
        "description_lines": ("line one", "", "#tag"),
    }
    values.update(overrides)
    return CompositionRequest(**values)


def test_max_chars_uses_safe_width() -> None:
    """Derive the character budget from font size and margins."""
    assert compute_max_chars_per_line(72, 0.06, 1080) == 23


def test_max_chars_has_floor() -> None:
    """Never return fewer than eight characters per line."""
    assert compute_max_chars_per_line(400, 0.06, 1080) == 8


def test_wrap_breaks_on_word_boundaries() -> None:
    """Pack words greedily into two lines."""
    wrapped = wrap_tagline("the quick brown fox jumps over the lazy dog", 72, 0.06, 2)

    assert wrapped.lines == ("the quick brown fox", "jumps over the lazy dog")
    assert not wrapped.overflowed
    assert wrapped.text == "the quick brown fox\njumps over the lazy dog"


def test_wrap_overflows_last_line() -> None:
    """Keep every word when the line limit is reached."""
    wrapped = wrap_tagline("the quick brown fox jumps over the lazy dog", 72, 0.06, 1)

    assert wrapped.lines == ("the quick brown fox jumps over the lazy dog",)
    assert wrapped.overflowed


def test_wrap_keeps_long_word_whole() -> None:
    """Place a word longer than the budget alone on its line."""
    wrapped = wrap_tagline("supercalifragilisticexpialidocious is long", 72, 0.06, 2)

    assert wrapped.lines == ("supercalifragilisticexpialidocious", "is long")


def test_wrap_collapses_whitespace() -> None:
    """Collapse tabs, newlines and repeated spaces."""
    wrapped = wrap_tagline("  hello \t\n  world  ", 72, 0.06, 2)

    assert wrapped.lines == ("hello world",)


def test_wrap_empty_text() -> None:
    """Return no lines for blank input."""
    assert wrap_tagline(" \n ", 72, 0.06, 2).lines == ()


def test_wrap_clamps_line_limit() -> None:
    """Treat a non-positive line limit as one line."""
    wrapped = wrap_tagline("the quick brown fox jumps over the lazy dog", 72, 0.06, 0)

    assert len(wrapped.lines) == 1


def test_explicit_duration_is_clamped() -> None:
    """Clamp explicit durations into the supported range."""
    rng = FixedRandom(0.5)

    assert resolve_duration_plan(12.3, 10, 25, rng).total_seconds == pytest.approx(12.3)
    assert resolve_duration_plan(90, 10, 25, rng).total_seconds == 60.0
    assert resolve_duration_plan(2, 10, 25, rng).total_seconds == 5.0
    assert not resolve_duration_plan(12.3, 10, 25, rng).drawn


def test_drawn_duration_uses_bounds() -> None:
    """Draw between min and max when no duration is given."""
    plan = resolve_duration_plan(None, 10, 20, FixedRandom(0.5))

    assert plan.total_seconds == 15.0
    assert plan.drawn


def test_drawn_duration_swaps_reversed_bounds() -> None:
    """Accept min and max in either order."""
    plan = resolve_duration_plan(None, 20, 10, FixedRandom(0.25))

    assert plan.total_seconds == 12.5


def test_non_finite_duration_is_drawn() -> None:
    """Treat NaN as an unset duration."""
    plan = resolve_duration_plan(math.nan, 10, 20, FixedRandom(0.0))

    assert plan.drawn
    assert plan.total_seconds == 10.0


def test_headline_reappear_windows() -> None:
    """Show the tagline at the start and again near the end."""
    timing = build_timing_plan(15.0, DisplayMode.HEADLINE_REAPPEAR, 3.0, 11.0, 0.5)

    assert timing.headline_window.start_seconds == 0.0
    assert timing.headline_window.end_seconds == 3.0
    assert timing.reappear_window is not None
    assert timing.reappear_window.start_seconds == 11.0
    assert timing.reappear_window.end_seconds == pytest.approx(14.5)
    assert len(timing.tagline_windows) == 2


def test_always_on_single_window() -> None:
    """Keep the tagline visible until the tail-off."""
    timing = build_timing_plan(15.0, DisplayMode.ALWAYS_ON, 3.0, 11.0, 0.8)

    assert timing.reappear_window is None
    assert timing.headline_window.start_seconds == 0.0
    assert timing.headline_window.end_seconds == pytest.approx(14.2)


def test_reappear_is_pulled_before_end() -> None:
    """Move a late reappear start to half a second before the end."""
    timing = build_timing_plan(8.0, DisplayMode.HEADLINE_REAPPEAR, 3.0, 11.0, 0.2)

    assert timing.reappear_window is not None
    assert timing.reappear_window.start_seconds == pytest.approx(7.5)
    assert timing.reappear_window.end_seconds == pytest.approx(7.8)


def test_headline_wins_overlap() -> None:
    """Start the reappear window no earlier than the headline end."""
    timing = build_timing_plan(15.0, DisplayMode.HEADLINE_REAPPEAR, 12.0, 11.0, 0.5)

    assert timing.reappear_window is not None
    assert timing.reappear_window.start_seconds == 12.0


def test_reappear_dropped_when_headline_fills_clip() -> None:
    """Omit the reappear window when no room is left."""
    timing = build_timing_plan(10.0, DisplayMode.HEADLINE_REAPPEAR, 20.0, 11.0, 0.8)

    assert timing.headline_window.end_seconds == 10.0
    assert timing.reappear_window is None
    assert timing.tagline_windows == (timing.headline_window,)


def test_fade_instants() -> None:
    """Fade video over 0.35s and audio over 0.5s at both ends."""
    timing = build_timing_plan(15.0, DisplayMode.HEADLINE_REAPPEAR, 3.0, 11.0, 0.8)

    assert timing.video_fade_in.end_seconds == 0.35
    assert timing.video_fade_out_start == pytest.approx(14.65)
    assert timing.audio_fade_in.end_seconds == 0.5
    assert timing.audio_fade_out_start == pytest.approx(14.5)


def test_cover_layout_fills_canvas() -> None:
    """Use the full canvas without padding for cover at full inset."""
    layout = build_layout_plan(LayoutConfig(fit_mode=FitMode.COVER), 72, 18)

    assert (layout.inner_width, layout.inner_height) == (1080, 1920)
    assert (layout.pad_x, layout.pad_y) == (0, 0)
    assert not layout.needs_pad


def test_contain_layout_with_inset() -> None:
    """Shrink and center the frame for contain with an inset."""
    layout = build_layout_plan(
        LayoutConfig(fit_mode=FitMode.CONTAIN, inset_fraction=0.9), 72, 18
    )

    assert (layout.inner_width, layout.inner_height) == (972, 1728)
    assert (layout.pad_x, layout.pad_y) == (54, 96)
    assert layout.needs_pad


def test_inset_is_clamped() -> None:
    """Clamp the inset to at least 0.8."""
    layout = build_layout_plan(
        LayoutConfig(fit_mode=FitMode.CONTAIN, inset_fraction=0.5), 72, 18
    )

    assert layout.inset_fraction == 0.8
    assert (layout.inner_width, layout.inner_height) == (864, 1536)


@pytest.mark.parametrize(
    ("anchor", "expected_top"),
    [
        (TextAnchor.TOP, 230),
        (TextAnchor.CENTER, 906),
        (TextAnchor.BOTTOM, 1466),
    ],
)
def test_bar_position_by_anchor(anchor: TextAnchor, expected_top: int) -> None:
    """Place the bar according to the text anchor."""
    layout = build_layout_plan(LayoutConfig(text_anchor=anchor), 72, 18)

    assert layout.bar_height == 108
    assert layout.bar_top_y == expected_top
    assert layout.text_center_y_expr == f"({expected_top}+(108-text_h)/2)"


def test_bar_taller_than_canvas() -> None:
    """Reject a font that cannot fit on the canvas."""
    with pytest.raises(ComposeValidationError) as excinfo:
        build_layout_plan(LayoutConfig(), 1900, 18)

    assert excinfo.value.code == INVALID_LAYOUT_CODE


def test_upload_title_and_description() -> None:
    """Join the prefix and tagline and keep the description lines."""
    handoff = build_upload_handoff(
        "  hello   world ", "Road to 2112", ("a", "", "b"), "/tmp/final.mp4"
    )

    assert handoff.title == "Road to 2112 — hello world"
    assert handoff.description == "a\n\nb"
    assert handoff.output_path == "/tmp/final.mp4"


def test_upload_title_is_truncated() -> None:
    """Cut long titles to the upload limit."""
    handoff = build_upload_handoff("x" * 200, "Prefix", (), "final.mp4")

    assert len(handoff.title) == TITLE_MAX_CHARS
    assert handoff.title.startswith("Prefix — x")


def test_upload_title_without_prefix() -> None:
    """Use the tagline alone when the prefix is blank."""
    assert build_upload_handoff("hello", " ", (), "f.mp4").title == "hello"


def test_request_requires_clip_and_tagline() -> None:
    """Reject requests without a clip or tagline."""
    with pytest.raises(ComposeValidationError) as clip_error:
        build_request(source_clip_path=" ")
    with pytest.raises(ComposeValidationError) as tagline_error:
        build_request(tagline_text="\n\t")

    assert clip_error.value.code == MISSING_CLIP_CODE
    assert tagline_error.value.code == MISSING_TAGLINE_CODE


def test_composition_plan_combines_parts() -> None:
    """Build every part of the plan from one request."""
    request = build_request(
        display=DisplayConfig(tail_off_seconds=0.5),
        layout=LayoutConfig(fit_mode=FitMode.CONTAIN, inset_fraction=0.9),
    )

    plan = build_composition_plan(request, FixedRandom(0.5))

    assert plan.duration.total_seconds == 15.0
    assert plan.wrapped_text.lines == ("the quick brown fox", "jumps over the lazy dog")
    assert plan.timing.reappear_window is not None
    assert plan.layout.pad_x == 54
    assert plan.handoff.title.startswith("Road to 2112 — the quick")


SWEEP_SECONDS = (-3.0, 0.0, 0.5, 3.0, 11.0, 59.5, 100.0, math.nan, math.inf)


@pytest.mark.parametrize("total_seconds", [5.0, 8.0, 15.0, 60.0])
@pytest.mark.parametrize("display_mode", list(DisplayMode))
def test_timing_windows_stay_inside_duration(
    total_seconds: float, display_mode: DisplayMode
) -> None:
    """Keep every window and fade inside the clip for any settings."""
    for headline, reappear_at, tail_off in itertools.product(SWEEP_SECONDS, repeat=3):
        timing = build_timing_plan(
            total_seconds, display_mode, headline, reappear_at, tail_off
        )

        assert 0.0 <= timing.headline_window.end_seconds <= total_seconds
        for window in timing.tagline_windows:
            assert 0.0 <= window.start_seconds <= window.end_seconds <= total_seconds
        if timing.reappear_window is not None:
            assert display_mode == DisplayMode.HEADLINE_REAPPEAR
            reappear_start = timing.reappear_window.start_seconds
            assert reappear_start <= total_seconds - 0.5
            assert reappear_start >= timing.headline_window.end_seconds
        assert 0.0 <= timing.video_fade_out_start <= total_seconds
        assert 0.0 <= timing.audio_fade_out_start <= total_seconds
