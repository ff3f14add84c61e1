"""Filter graph compilation for compose_short_video."""

from __future__ import annotations

from dataclasses import dataclass
import re
from typing import Sequence, Tuple

from domain.short_video import (
    INVALID_LABEL_CODE,
    INVALID_STAGE_CODE,
    AudioConfig,
    AudioStrategy,
    ComposeValidationError,
    FitMode,
    MixMode,
    TextConfig,
    clamp_float,
)
from service.composition_plan import CompositionPlan, LayoutPlan, TimeWindow, TimingPlan

SOURCE_VIDEO_INPUT = "0:v"
SOURCE_AUDIO_INPUT = "0:a"
BGM_AUDIO_INPUT = "1:a"
VIDEO_OUTPUT_LABEL = "v"
AUDIO_OUTPUT_LABEL = "aout"
SOURCE_VOLUME_LABEL = "a0"
BGM_VOLUME_LABEL = "a1"
CENTERED_PAD_X = "(ow-iw)/2"
CENTERED_PAD_Y = "(oh-ih)/2"
CENTERED_TEXT_X = "(w-text_w)/2"
LEGACY_BOX_BORDER = 18
AMIX_DROPOUT_SECONDS = 2

H264_CODEC = "libx264"
H264_PRESET = "medium"
H264_PIXEL_FORMAT = "yuv420p"
OUTPUT_FPS = "30"
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "128k"

STAGE_NAME_PATTERN = re.compile(r"[a-z][a-z0-9_]*")
LABEL_PATTERN = re.compile(r"[0-9a-z_:]+")
OPTION_SPECIAL_PATTERN = re.compile(r"([\\':])")
GRAPH_SPECIAL_PATTERN = re.compile(r"([\\'\[\],;])")


def escape_filter_value(value: str) -> str:
    """Escape an option value for both the option and graph parsers."""
    option_escaped = OPTION_SPECIAL_PATTERN.sub(r"\\\1", value)
    return GRAPH_SPECIAL_PATTERN.sub(r"\\\1", option_escaped)


def format_seconds(value: float) -> str:
    """Format an instant with centisecond precision."""
    return f"{value:.2f}"


def format_number(value: float) -> str:
    """Format a scalar without trailing zeros."""
    return f"{value:g}"


def enable_expression(window: TimeWindow) -> str:
    """Build a global-clock predicate for a time window."""
    return (
        f"between(t,{format_seconds(window.start_seconds)},"
        f"{format_seconds(window.end_seconds)})"
    )


@dataclass(frozen=True)
class FilterStage:
    """A single filter with named options in emission order."""

    name: str
    options: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not STAGE_NAME_PATTERN.fullmatch(self.name):
            raise ComposeValidationError(
                INVALID_STAGE_CODE, f"invalid filter name: {self.name!r}"
            )
        for key, _ in self.options:
            if not STAGE_NAME_PATTERN.fullmatch(key):
                raise ComposeValidationError(
                    INVALID_STAGE_CODE, f"invalid option name: {key!r}"
                )

    def render(self) -> str:
        if not self.options:
            return self.name
        rendered_options = ":".join(
            f"{key}={escape_filter_value(value)}" for key, value in self.options
        )
        return f"{self.name}={rendered_options}"


def stage(name: str, **options: object) -> FilterStage:
    """Build a FilterStage, formatting numeric option values."""
    rendered: list[tuple[str, str]] = []
    for key, value in options.items():
        if isinstance(value, float):
            rendered.append((key, format_number(value)))
        else:
            rendered.append((key, str(value)))
    return FilterStage(name=name, options=tuple(rendered))


@dataclass(frozen=True)
class FilterChain:
    """Linear run of stages from input labels to one output label."""

    inputs: Tuple[str, ...]
    stages: Tuple[FilterStage, ...]
    output: str

    def __post_init__(self) -> None:
        if not self.inputs:
            raise ComposeValidationError(INVALID_LABEL_CODE, "chain has no inputs")
        if not self.stages:
            raise ComposeValidationError(INVALID_STAGE_CODE, "chain has no stages")
        for label in (*self.inputs, self.output):
            if not LABEL_PATTERN.fullmatch(label):
                raise ComposeValidationError(
                    INVALID_LABEL_CODE, f"invalid label: {label!r}"
                )

    def render(self) -> str:
        input_labels = "".join(f"[{label}]" for label in self.inputs)
        stages = ",".join(filter_stage.render() for filter_stage in self.stages)
        return f"{input_labels}{stages}[{self.output}]"


@dataclass(frozen=True)
class FilterGraph:
    """Video chain plus optional audio chains, validated for label flow."""

    input_labels: Tuple[str, ...]
    video_chain: FilterChain
    audio_chains: Tuple[FilterChain, ...]
    audio_strategy: AudioStrategy

    def __post_init__(self) -> None:
        available = set(self.input_labels)
        produced: set[str] = set()
        consumed: set[str] = set()
        for chain in self.chains:
            for label in chain.inputs:
                if label not in available:
                    raise ComposeValidationError(
                        INVALID_LABEL_CODE, f"label used before it is produced: {label}"
                    )
                if label in produced:
                    if label in consumed:
                        raise ComposeValidationError(
                            INVALID_LABEL_CODE, f"label consumed twice: {label}"
                        )
                    consumed.add(label)
            if chain.output in available:
                raise ComposeValidationError(
                    INVALID_LABEL_CODE, f"label produced twice: {chain.output}"
                )
            available.add(chain.output)
            produced.add(chain.output)

        if self.video_chain.output != VIDEO_OUTPUT_LABEL:
            raise ComposeValidationError(
                INVALID_LABEL_CODE, "video chain must end in the video output label"
            )
        if self.audio_chains:
            if self.audio_chains[-1].output != AUDIO_OUTPUT_LABEL:
                raise ComposeValidationError(
                    INVALID_LABEL_CODE, "audio chain must end in the audio output label"
                )
            dangling = produced - consumed - {VIDEO_OUTPUT_LABEL, AUDIO_OUTPUT_LABEL}
            if dangling:
                raise ComposeValidationError(
                    INVALID_LABEL_CODE, f"unconsumed labels: {sorted(dangling)}"
                )
        if (self.audio_strategy == AudioStrategy.SILENT) != (not self.audio_chains):
            raise ComposeValidationError(
                INVALID_LABEL_CODE, "audio chains do not match the audio strategy"
            )

    @property
    def chains(self) -> Tuple[FilterChain, ...]:
        return (self.video_chain, *self.audio_chains)

    @property
    def audio_output_label(self) -> str | None:
        return AUDIO_OUTPUT_LABEL if self.audio_chains else None

    @property
    def uses_bgm_input(self) -> bool:
        return BGM_AUDIO_INPUT in self.input_labels

    def render(self) -> str:
        return ";".join(chain.render() for chain in self.chains)


def select_audio_strategy(
    has_source_audio: bool, has_bgm: bool, mix_mode: MixMode
) -> AudioStrategy:
    """Pick the audio sub-graph shape from stream availability."""
    if has_bgm:
        if has_source_audio and mix_mode == MixMode.MIX:
            return AudioStrategy.MIX
        return AudioStrategy.BGM_ONLY
    if has_source_audio:
        return AudioStrategy.SOURCE_ONLY
    return AudioStrategy.SILENT


def build_fit_stages(layout: LayoutPlan) -> list[FilterStage]:
    """Scale, crop and pad stages that bring the source onto the canvas."""
    width = layout.canvas_width
    height = layout.canvas_height
    if layout.fit_mode == FitMode.COVER:
        stages = [
            stage("scale", w=width, h=height, force_original_aspect_ratio="increase"),
            stage("crop", w=width, h=height),
        ]
        if layout.needs_pad:
            stages.append(stage("scale", w=layout.inner_width, h=layout.inner_height))
    else:
        stages = [
            stage(
                "scale",
                w=layout.inner_width,
                h=layout.inner_height,
                force_original_aspect_ratio="decrease",
            )
        ]
    if layout.needs_pad:
        stages.append(
            stage("pad", w=width, h=height, x=CENTERED_PAD_X, y=CENTERED_PAD_Y)
        )
    return stages


def build_fade_stages(timing: TimingPlan) -> list[FilterStage]:
    """Video fade-in and fade-out stages."""
    fade_in = timing.video_fade_in
    fade_out_duration = timing.total_seconds - timing.video_fade_out_start
    return [
        stage(
            "fade",
            t="in",
            st=format_seconds(fade_in.start_seconds),
            d=format_seconds(fade_in.end_seconds - fade_in.start_seconds),
        ),
        stage(
            "fade",
            t="out",
            st=format_seconds(timing.video_fade_out_start),
            d=format_seconds(fade_out_duration),
        ),
    ]


def build_tagline_stages(
    layout: LayoutPlan,
    text: TextConfig,
    tagline_file: str,
    window: TimeWindow,
) -> list[FilterStage]:
    """Background bar plus text, both gated on one window."""
    enable = enable_expression(window)
    bar_opacity = clamp_float(text.bar_opacity, 0.0, 1.0)
    bar = stage(
        "drawbox",
        x=0,
        y=layout.bar_top_y,
        w=layout.canvas_width,
        h=layout.bar_height,
        color=f"{text.bar_color}@{format_number(bar_opacity)}",
        t="fill",
        enable=enable,
    )
    text_options: list[tuple[str, object]] = [
        ("fontfile", text.font_file),
        ("textfile", tagline_file),
        ("expansion", "none"),
        ("fontsize", text.font_size),
        ("fontcolor", text.text_color),
        ("borderw", text.border_width),
        ("bordercolor", text.border_color),
    ]
    if text.box_opacity > 0:
        box_opacity = clamp_float(text.box_opacity, 0.0, 1.0)
        text_options.extend(
            [
                ("box", 1),
                ("boxcolor", f"black@{format_number(box_opacity)}"),
                ("boxborderw", LEGACY_BOX_BORDER),
            ]
        )
    text_options.extend(
        [
            ("x", CENTERED_TEXT_X),
            ("y", layout.text_center_y_expr),
            ("enable", enable),
        ]
    )
    return [bar, stage("drawtext", **dict(text_options))]


def build_audio_fade_stages(timing: TimingPlan) -> list[FilterStage]:
    """Audio fade-in and fade-out stages."""
    fade_in = timing.audio_fade_in
    fade_out_duration = timing.total_seconds - timing.audio_fade_out_start
    return [
        stage(
            "afade",
            t="in",
            st=format_seconds(fade_in.start_seconds),
            d=format_seconds(fade_in.end_seconds - fade_in.start_seconds),
        ),
        stage(
            "afade",
            t="out",
            st=format_seconds(timing.audio_fade_out_start),
            d=format_seconds(fade_out_duration),
        ),
    ]


def build_audio_chains(
    strategy: AudioStrategy, timing: TimingPlan, audio: AudioConfig
) -> Tuple[FilterChain, ...]:
    """Audio chains for a strategy; empty for silent output."""
    fades = build_audio_fade_stages(timing)
    source_volume = stage("volume", volume=float(audio.video_volume))
    bgm_volume = stage("volume", volume=float(audio.bgm_volume))
    if strategy == AudioStrategy.MIX:
        return (
            FilterChain((SOURCE_AUDIO_INPUT,), (source_volume,), SOURCE_VOLUME_LABEL),
            FilterChain((BGM_AUDIO_INPUT,), (bgm_volume,), BGM_VOLUME_LABEL),
            FilterChain(
                (SOURCE_VOLUME_LABEL, BGM_VOLUME_LABEL),
                (
                    stage(
                        "amix",
                        inputs=2,
                        duration="first",
                        dropout_transition=AMIX_DROPOUT_SECONDS,
                    ),
                    *fades,
                ),
                AUDIO_OUTPUT_LABEL,
            ),
        )
    if strategy == AudioStrategy.BGM_ONLY:
        return (
            FilterChain((BGM_AUDIO_INPUT,), (bgm_volume, *fades), AUDIO_OUTPUT_LABEL),
        )
    if strategy == AudioStrategy.SOURCE_ONLY:
        return (
            FilterChain(
                (SOURCE_AUDIO_INPUT,), (source_volume, *fades), AUDIO_OUTPUT_LABEL
            ),
        )
    return ()


def compile_filter_graph(
    plan: CompositionPlan,
    tagline_file: str,
    has_source_audio: bool,
    has_bgm: bool,
) -> FilterGraph:
    """Compile the plan into one video chain and the matching audio chains."""
    text = plan.request.text
    video_stages = build_fit_stages(plan.layout)
    video_stages.extend(build_fade_stages(plan.timing))
    for window in plan.timing.tagline_windows:
        video_stages.extend(
            build_tagline_stages(plan.layout, text, tagline_file, window)
        )

    strategy = select_audio_strategy(
        has_source_audio, has_bgm, plan.request.audio.mix_mode
    )
    input_labels = [SOURCE_VIDEO_INPUT]
    if has_source_audio:
        input_labels.append(SOURCE_AUDIO_INPUT)
    if has_bgm:
        input_labels.append(BGM_AUDIO_INPUT)

    return FilterGraph(
        input_labels=tuple(input_labels),
        video_chain=FilterChain(
            (SOURCE_VIDEO_INPUT,), tuple(video_stages), VIDEO_OUTPUT_LABEL
        ),
        audio_chains=build_audio_chains(strategy, plan.timing, plan.request.audio),
        audio_strategy=strategy,
    )


def build_encoder_command(
    source_clip_path: str,
    bgm_path: str | None,
    duration_seconds: float,
    filter_script_path: str,
    graph: FilterGraph,
    output_path: str,
) -> list[str]:
    """Build the ffmpeg argument list that executes a compiled graph."""
    if graph.uses_bgm_input and bgm_path is None:
        raise ComposeValidationError(
            INVALID_LABEL_CODE, "graph reads background audio but none was supplied"
        )
    command = ["ffmpeg", "-y", "-hide_banner", "-nostdin", "-i", source_clip_path]
    if bgm_path is not None:
        command.extend(["-stream_loop", "-1", "-i", bgm_path])
    command.extend(
        [
            "-t",
            format_seconds(duration_seconds),
            "-filter_complex_script",
            filter_script_path,
            "-map",
            f"[{VIDEO_OUTPUT_LABEL}]",
        ]
    )
    audio_label = graph.audio_output_label
    if audio_label is None:
        command.append("-an")
    else:
        command.extend(["-map", f"[{audio_label}]"])
    command.extend(
        [
            "-shortest",
            "-c:v",
            H264_CODEC,
            "-preset",
            H264_PRESET,
            "-r",
            OUTPUT_FPS,
            "-pix_fmt",
            H264_PIXEL_FORMAT,
        ]
    )
    if audio_label is not None:
        command.extend(["-c:a", AUDIO_CODEC, "-b:a", AUDIO_BITRATE])
    command.extend(["-movflags", "+faststart", output_path])
    return command


def describe_graph(graph: FilterGraph) -> Sequence[str]:
    """One line per chain, for debug logging."""
    return [chain.render() for chain in graph.chains]
