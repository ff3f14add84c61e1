"""Domain types and parsing for compose_short_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import re
from typing import Tuple

INVALID_CONFIG_CODE = "compose_short_video.input.invalid_config"
INVALID_CHOICE_CODE = "compose_short_video.input.invalid_choice"
MISSING_CLIP_CODE = "compose_short_video.input.missing_clip"
MISSING_TAGLINE_CODE = "compose_short_video.input.missing_tagline"
FONT_LOAD_CODE = "compose_short_video.input.font_unloadable"
INPUT_FILE_CODE = "compose_short_video.input.file_error"
INVALID_LABEL_CODE = "compose_short_video.graph.invalid_label"
INVALID_STAGE_CODE = "compose_short_video.graph.invalid_stage"
INVALID_WINDOW_CODE = "compose_short_video.plan.invalid_window"
INVALID_LAYOUT_CODE = "compose_short_video.plan.invalid_layout"

CANVAS_WIDTH = 1080
CANVAS_HEIGHT = 1920
MIN_DURATION_SECONDS = 5.0
MAX_DURATION_SECONDS = 60.0
MIN_INSET = 0.8
MAX_INSET = 1.0
MAX_TEXT_MARGIN = 0.2
DEFAULT_FONT_FILE = "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"

WHITESPACE_PATTERN = re.compile(r"\s+")


class ComposeValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class ComposePipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class FitMode(str, Enum):
    """How the source frame is reconciled with the canvas."""

    COVER = "cover"
    CONTAIN = "contain"


class TextAnchor(str, Enum):
    """Vertical anchor of the tagline bar."""

    TOP = "top"
    CENTER = "center"
    BOTTOM = "bottom"


class MixMode(str, Enum):
    """Background music handling when the clip carries its own audio."""

    BGM = "bgm"
    MIX = "mix"


class DisplayMode(str, Enum):
    """Tagline appearance schedule."""

    ALWAYS_ON = "always_on"
    HEADLINE_REAPPEAR = "headline_reappear"


class AudioStrategy(str, Enum):
    """Resolved audio sub-graph shape."""

    MIX = "mix"
    BGM_ONLY = "bgm_only"
    SOURCE_ONLY = "source_only"
    SILENT = "silent"


class AssetStatus(str, Enum):
    """Lifecycle of a background audio candidate."""

    UNTRIED = "untried"
    NORMALIZED = "normalized"
    FAILED = "failed"


@dataclass(frozen=True)
class LayoutConfig:
    """Canvas and fit preferences."""

    fit_mode: FitMode = FitMode.COVER
    inset_fraction: float = 1.0
    text_anchor: TextAnchor = TextAnchor.CENTER
    canvas_width: int = CANVAS_WIDTH
    canvas_height: int = CANVAS_HEIGHT

    def __post_init__(self) -> None:
        if not isinstance(self.fit_mode, FitMode):
            raise ComposeValidationError(INVALID_CHOICE_CODE, "fit_mode is invalid")
        if not isinstance(self.text_anchor, TextAnchor):
            raise ComposeValidationError(
                INVALID_CHOICE_CODE, "text_anchor is invalid"
            )
        if self.canvas_width <= 0 or self.canvas_height <= 0:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "canvas width and height must be positive"
            )
        if self.canvas_width % 2 or self.canvas_height % 2:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "canvas width and height must be even"
            )


@dataclass(frozen=True)
class TextConfig:
    """Tagline font, wrapping and bar styling."""

    font_file: str = DEFAULT_FONT_FILE
    font_size: int = 72
    max_lines: int = 2
    margin_fraction: float = 0.06
    text_color: str = "black"
    border_width: int = 2
    border_color: str = "black"
    bar_color: str = "white"
    bar_opacity: float = 0.35
    bar_padding: int = 18
    box_opacity: float = 0.0

    def __post_init__(self) -> None:
        if not self.font_file.strip():
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "font_file must be non-empty"
            )
        if self.font_size <= 0:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "font_size must be positive"
            )
        if self.border_width < 0:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "border_width must be non-negative"
            )
        if self.bar_padding < 0:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "bar_padding must be non-negative"
            )
        for color_value in (self.text_color, self.border_color, self.bar_color):
            if not color_value.strip():
                raise ComposeValidationError(
                    INVALID_CONFIG_CODE, "color values must be non-empty"
                )


@dataclass(frozen=True)
class DisplayConfig:
    """Tagline appearance schedule settings."""

    display_mode: DisplayMode = DisplayMode.HEADLINE_REAPPEAR
    headline_seconds: float = 3.0
    reappear_at_seconds: float = 11.0
    tail_off_seconds: float = 0.8

    def __post_init__(self) -> None:
        if not isinstance(self.display_mode, DisplayMode):
            raise ComposeValidationError(
                INVALID_CHOICE_CODE, "display_mode is invalid"
            )


@dataclass(frozen=True)
class AudioConfig:
    """Background music mixing settings."""

    mix_mode: MixMode = MixMode.BGM
    video_volume: float = 1.0
    bgm_volume: float = 0.28

    def __post_init__(self) -> None:
        if not isinstance(self.mix_mode, MixMode):
            raise ComposeValidationError(INVALID_CHOICE_CODE, "mix_mode is invalid")
        if self.video_volume < 0 or self.bgm_volume < 0:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "volumes must be non-negative"
            )


@dataclass(frozen=True)
class CompositionRequest:
    """Fully resolved inputs for a single composition."""

    source_clip_path: str
    tagline_text: str
    candidate_audio_paths: Tuple[str, ...]
    target_duration_seconds: float | None
    min_duration_seconds: float
    max_duration_seconds: float
    layout: LayoutConfig
    text: TextConfig
    display: DisplayConfig
    audio: AudioConfig
    output_path: str
    work_dir: str
    title_prefix: str
    description_lines: Tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.source_clip_path.strip():
            raise ComposeValidationError(
                MISSING_CLIP_CODE, "source clip path must be non-empty"
            )
        if not normalize_whitespace(self.tagline_text):
            raise ComposeValidationError(
                MISSING_TAGLINE_CODE, "tagline text must be non-empty"
            )
        if not self.output_path.strip():
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "output path must be non-empty"
            )
        if not self.work_dir.strip():
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "work dir must be non-empty"
            )


def normalize_whitespace(text_value: str) -> str:
    """Collapse runs of whitespace into single spaces."""
    return WHITESPACE_PATTERN.sub(" ", text_value.replace("\ufeff", "")).strip()


def clamp_float(value: float, min_value: float, max_value: float) -> float:
    """Clamp a float into a closed range."""
    return max(min_value, min(max_value, value))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return int(math.floor(value + 0.5))


def parse_fit_mode(value: str) -> FitMode:
    """Parse a fit mode name into a FitMode."""
    normalized = value.strip().lower()
    try:
        return FitMode(normalized)
    except ValueError as exc:
        raise ComposeValidationError(
            INVALID_CHOICE_CODE, f"invalid fit mode: {value!r}"
        ) from exc


def parse_text_anchor(value: str) -> TextAnchor:
    """Parse a tagline position into a TextAnchor."""
    normalized = value.strip().lower()
    try:
        return TextAnchor(normalized)
    except ValueError as exc:
        raise ComposeValidationError(
            INVALID_CHOICE_CODE, f"invalid text position: {value!r}"
        ) from exc


def parse_mix_mode(value: str) -> MixMode:
    """Parse an audio mix mode into a MixMode."""
    normalized = value.strip().lower()
    try:
        return MixMode(normalized)
    except ValueError as exc:
        raise ComposeValidationError(
            INVALID_CHOICE_CODE, f"invalid mix mode: {value!r}"
        ) from exc


def parse_display_mode(always_on: bool) -> DisplayMode:
    """Map the always-on flag onto a DisplayMode."""
    if always_on:
        return DisplayMode.ALWAYS_ON
    return DisplayMode.HEADLINE_REAPPEAR
