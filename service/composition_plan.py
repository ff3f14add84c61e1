"""Composition plan construction for compose_short_video."""

from __future__ import annotations

from dataclasses import dataclass
import math
from typing import Protocol, Sequence, Tuple

from domain.short_video import (
    CANVAS_WIDTH,
    INVALID_CONFIG_CODE,
    INVALID_LAYOUT_CODE,
    INVALID_WINDOW_CODE,
    MAX_DURATION_SECONDS,
    MAX_INSET,
    MAX_TEXT_MARGIN,
    MIN_DURATION_SECONDS,
    MIN_INSET,
    ComposeValidationError,
    CompositionRequest,
    DisplayMode,
    FitMode,
    LayoutConfig,
    TextAnchor,
    clamp_float,
    normalize_whitespace,
    round_half_up,
)

AVERAGE_GLYPH_WIDTH_RATIO = 0.56
MIN_CHARS_PER_LINE = 8
VIDEO_FADE_SECONDS = 0.35
AUDIO_FADE_SECONDS = 0.5
REAPPEAR_END_GUARD_SECONDS = 0.5
BAR_TOP_ANCHOR_RATIO = 0.12
BAR_BOTTOM_ANCHOR_RATIO = 0.82
TITLE_MAX_CHARS = 95
TITLE_SEPARATOR = " — "
DEFAULT_TITLE_PREFIX = "Road to 2112"


class UniformSource(Protocol):
    """Source of uniform floats in [0, 1)."""

    def random(self) -> float:
        ...


@dataclass(frozen=True)
class WrappedText:
    """Tagline broken into display lines."""

    lines: Tuple[str, ...]
    max_chars_per_line: int
    overflowed: bool

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass(frozen=True)
class DurationPlan:
    """Resolved clip duration."""

    total_seconds: float
    drawn: bool

    def __post_init__(self) -> None:
        if not MIN_DURATION_SECONDS <= self.total_seconds <= MAX_DURATION_SECONDS:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "duration outside supported bounds"
            )


@dataclass(frozen=True)
class TimeWindow:
    """Closed interval on the output clock."""

    start_seconds: float
    end_seconds: float

    def __post_init__(self) -> None:
        if self.start_seconds < 0:
            raise ComposeValidationError(
                INVALID_WINDOW_CODE, "window start must be non-negative"
            )
        if self.end_seconds < self.start_seconds:
            raise ComposeValidationError(
                INVALID_WINDOW_CODE, "window end precedes window start"
            )


@dataclass(frozen=True)
class TimingPlan:
    """Tagline windows and fade instants for one duration."""

    total_seconds: float
    display_mode: DisplayMode
    headline_window: TimeWindow
    reappear_window: TimeWindow | None
    video_fade_in: TimeWindow
    video_fade_out_start: float
    audio_fade_in: TimeWindow
    audio_fade_out_start: float

    def __post_init__(self) -> None:
        windows = [self.headline_window, self.video_fade_in, self.audio_fade_in]
        if self.reappear_window is not None:
            windows.append(self.reappear_window)
        for window in windows:
            if window.end_seconds > self.total_seconds:
                raise ComposeValidationError(
                    INVALID_WINDOW_CODE, "window exceeds duration"
                )
        for instant in (self.video_fade_out_start, self.audio_fade_out_start):
            if instant < 0 or instant > self.total_seconds:
                raise ComposeValidationError(
                    INVALID_WINDOW_CODE, "fade start outside duration"
                )
        if self.reappear_window is not None:
            if self.display_mode == DisplayMode.ALWAYS_ON:
                raise ComposeValidationError(
                    INVALID_WINDOW_CODE, "always-on display has a single window"
                )
            if self.reappear_window.start_seconds < self.headline_window.end_seconds:
                raise ComposeValidationError(
                    INVALID_WINDOW_CODE, "reappear window overlaps headline window"
                )

    @property
    def tagline_windows(self) -> Tuple[TimeWindow, ...]:
        if self.reappear_window is None:
            return (self.headline_window,)
        return (self.headline_window, self.reappear_window)


@dataclass(frozen=True)
class LayoutPlan:
    """Resolved scale, pad and bar geometry on the canvas."""

    fit_mode: FitMode
    inset_fraction: float
    canvas_width: int
    canvas_height: int
    inner_width: int
    inner_height: int
    pad_x: int
    pad_y: int
    bar_top_y: int
    bar_height: int

    def __post_init__(self) -> None:
        if not MIN_INSET <= self.inset_fraction <= MAX_INSET:
            raise ComposeValidationError(
                INVALID_LAYOUT_CODE, "inset fraction outside supported bounds"
            )
        if self.bar_height <= 0:
            raise ComposeValidationError(
                INVALID_LAYOUT_CODE, "bar height must be positive"
            )
        if self.bar_top_y < 0 or self.bar_top_y + self.bar_height > self.canvas_height:
            raise ComposeValidationError(
                INVALID_LAYOUT_CODE, "bar does not fit inside the canvas"
            )

    @property
    def needs_pad(self) -> bool:
        return self.fit_mode == FitMode.CONTAIN or self.inset_fraction < MAX_INSET

    @property
    def text_center_y_expr(self) -> str:
        return f"({self.bar_top_y}+({self.bar_height}-text_h)/2)"


@dataclass(frozen=True)
class UploadHandoff:
    """Values handed to the upload step."""

    title: str
    description: str
    output_path: str


@dataclass(frozen=True)
class CompositionPlan:
    """Everything derived from a request before any media work."""

    request: CompositionRequest
    duration: DurationPlan
    wrapped_text: WrappedText
    timing: TimingPlan
    layout: LayoutPlan
    handoff: UploadHandoff


def compute_safe_width(margin_fraction: float, canvas_width: int) -> float:
    """Width left for text once both side margins are removed."""
    margin = clamp_float(margin_fraction, 0.0, MAX_TEXT_MARGIN)
    return canvas_width * (1.0 - 2.0 * margin)


def compute_max_chars_per_line(
    font_size: int, margin_fraction: float, canvas_width: int
) -> int:
    """Estimate how many characters fit inside the horizontal safe area."""
    safe_width = compute_safe_width(margin_fraction, canvas_width)
    average_char_width = font_size * AVERAGE_GLYPH_WIDTH_RATIO
    return max(MIN_CHARS_PER_LINE, int(math.floor(safe_width / average_char_width)))


def wrap_tagline(
    text_value: str,
    font_size: int,
    margin_fraction: float,
    max_lines: int,
    canvas_width: int = CANVAS_WIDTH,
) -> WrappedText:
    """Greedily pack words into at most max_lines lines.

    Once max_lines - 1 breaks have been made every remaining word goes onto the
    final line, so a long tagline overflows the last line instead of losing words.
    A word longer than the budget sits alone on its own line, unsplit.
    """
    line_limit = max(1, max_lines)
    max_chars = compute_max_chars_per_line(font_size, margin_fraction, canvas_width)
    normalized = normalize_whitespace(text_value)
    if not normalized:
        return WrappedText(lines=(), max_chars_per_line=max_chars, overflowed=False)

    lines: list[str] = []
    current_line = ""
    overflowed = False
    for word in normalized.split(" "):
        if not current_line:
            current_line = word
            continue
        candidate = f"{current_line} {word}"
        if len(candidate) <= max_chars:
            current_line = candidate
        elif len(lines) >= line_limit - 1:
            current_line = candidate
            overflowed = True
        else:
            lines.append(current_line)
            current_line = word
    lines.append(current_line)

    return WrappedText(
        lines=tuple(lines), max_chars_per_line=max_chars, overflowed=overflowed
    )


def resolve_duration_plan(
    requested_seconds: float | None,
    min_seconds: float,
    max_seconds: float,
    rng: UniformSource,
) -> DurationPlan:
    """Resolve the clip duration from an explicit value or a uniform draw."""
    drawn = requested_seconds is None or not math.isfinite(requested_seconds)
    if drawn:
        low, high = sorted((min_seconds, max_seconds))
        raw_seconds = low + rng.random() * (high - low)
    else:
        raw_seconds = requested_seconds
    total_seconds = clamp_float(
        round(raw_seconds, 2), MIN_DURATION_SECONDS, MAX_DURATION_SECONDS
    )
    return DurationPlan(total_seconds=total_seconds, drawn=drawn)


def build_timing_plan(
    total_seconds: float,
    display_mode: DisplayMode,
    headline_seconds: float,
    reappear_at_seconds: float,
    tail_off_seconds: float,
) -> TimingPlan:
    """Compute tagline windows and fade instants for a duration."""
    tail_off = clamp_float(tail_off_seconds, 0.0, total_seconds)
    visible_end = total_seconds - tail_off

    if display_mode == DisplayMode.ALWAYS_ON:
        headline_window = TimeWindow(0.0, visible_end)
        reappear_window = None
    else:
        headline_end = clamp_float(headline_seconds, 0.0, total_seconds)
        headline_window = TimeWindow(0.0, headline_end)
        latest_start = max(0.0, total_seconds - REAPPEAR_END_GUARD_SECONDS)
        reappear_start = clamp_float(reappear_at_seconds, 0.0, latest_start)
        # headline wins when the two windows would overlap
        reappear_start = max(reappear_start, headline_end)
        if reappear_start <= latest_start and reappear_start < visible_end:
            reappear_window = TimeWindow(reappear_start, visible_end)
        else:
            reappear_window = None

    return TimingPlan(
        total_seconds=total_seconds,
        display_mode=display_mode,
        headline_window=headline_window,
        reappear_window=reappear_window,
        video_fade_in=TimeWindow(0.0, min(VIDEO_FADE_SECONDS, total_seconds)),
        video_fade_out_start=max(0.0, total_seconds - VIDEO_FADE_SECONDS),
        audio_fade_in=TimeWindow(0.0, min(AUDIO_FADE_SECONDS, total_seconds)),
        audio_fade_out_start=max(0.0, total_seconds - AUDIO_FADE_SECONDS),
    )


def resolve_inset_fraction(inset_fraction: float) -> float:
    """Clamp the inset into its supported range."""
    if not math.isfinite(inset_fraction):
        return MAX_INSET
    return clamp_float(inset_fraction, MIN_INSET, MAX_INSET)


def compute_bar_top(anchor: TextAnchor, canvas_height: int, bar_height: int) -> int:
    """Place the tagline bar for an anchor, kept inside the canvas."""
    if anchor == TextAnchor.TOP:
        bar_top = round_half_up(canvas_height * BAR_TOP_ANCHOR_RATIO)
    elif anchor == TextAnchor.BOTTOM:
        bar_top = round_half_up(canvas_height * BAR_BOTTOM_ANCHOR_RATIO - bar_height)
    else:
        bar_top = round_half_up((canvas_height - bar_height) / 2)
    return max(0, min(bar_top, canvas_height - bar_height))


def build_layout_plan(
    layout: LayoutConfig, font_size: int, bar_padding: int
) -> LayoutPlan:
    """Compute fit geometry and bar placement."""
    inset = resolve_inset_fraction(layout.inset_fraction)
    width = layout.canvas_width
    height = layout.canvas_height
    if layout.fit_mode == FitMode.COVER and inset >= MAX_INSET:
        inner_width, inner_height = width, height
    else:
        inner_width = round_half_up(width * inset)
        inner_height = round_half_up(height * inset)

    bar_height = font_size + 2 * bar_padding
    if bar_height > height:
        raise ComposeValidationError(
            INVALID_LAYOUT_CODE, "font size and bar padding exceed canvas height"
        )

    return LayoutPlan(
        fit_mode=layout.fit_mode,
        inset_fraction=inset,
        canvas_width=width,
        canvas_height=height,
        inner_width=inner_width,
        inner_height=inner_height,
        pad_x=(width - inner_width) // 2,
        pad_y=(height - inner_height) // 2,
        bar_top_y=compute_bar_top(layout.text_anchor, height, bar_height),
        bar_height=bar_height,
    )


def build_upload_handoff(
    tagline_text: str,
    title_prefix: str,
    description_lines: Sequence[str],
    output_path: str,
) -> UploadHandoff:
    """Derive the upload title and description from the chosen tagline."""
    tagline = normalize_whitespace(tagline_text)
    prefix = title_prefix.strip()
    title = f"{prefix}{TITLE_SEPARATOR}{tagline}" if prefix else tagline
    return UploadHandoff(
        title=title[:TITLE_MAX_CHARS],
        description="\n".join(description_lines),
        output_path=output_path,
    )


def build_composition_plan(
    request: CompositionRequest, rng: UniformSource
) -> CompositionPlan:
    """Run wrap, duration, timing and layout planning for a request."""
    wrapped_text = wrap_tagline(
        request.tagline_text,
        request.text.font_size,
        request.text.margin_fraction,
        request.text.max_lines,
        request.layout.canvas_width,
    )
    duration = resolve_duration_plan(
        request.target_duration_seconds,
        request.min_duration_seconds,
        request.max_duration_seconds,
        rng,
    )
    timing = build_timing_plan(
        duration.total_seconds,
        request.display.display_mode,
        request.display.headline_seconds,
        request.display.reappear_at_seconds,
        request.display.tail_off_seconds,
    )
    layout = build_layout_plan(
        request.layout, request.text.font_size, request.text.bar_padding
    )
    handoff = build_upload_handoff(
        request.tagline_text,
        request.title_prefix,
        request.description_lines,
        request.output_path,
    )
    return CompositionPlan(
        request=request,
        duration=duration,
        wrapped_text=wrapped_text,
        timing=timing,
        layout=layout,
        handoff=handoff,
    )
