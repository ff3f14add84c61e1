#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10"
# ]
# ///
"""Compose a vertical short from a random clip, a tagline and background music."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path
import random
import sys
from dataclasses import dataclass
from typing import Mapping, Sequence, Tuple

from PIL import ImageFont

from domain.short_video import (
    DEFAULT_FONT_FILE,
    FONT_LOAD_CODE,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    MISSING_CLIP_CODE,
    MISSING_TAGLINE_CODE,
    AudioConfig,
    ComposePipelineError,
    ComposeValidationError,
    CompositionRequest,
    DisplayConfig,
    LayoutConfig,
    TextConfig,
    parse_display_mode,
    parse_fit_mode,
    parse_mix_mode,
    parse_text_anchor,
)
from service.audio_normalization import NormalizationResult, normalize_background_audio
from service.composition_plan import (
    DEFAULT_TITLE_PREFIX,
    CompositionPlan,
    UniformSource,
    UploadHandoff,
    WrappedText,
    build_composition_plan,
    compute_safe_width,
)
from service.filter_graph import (
    FilterGraph,
    build_encoder_command,
    compile_filter_graph,
    describe_graph,
)
from service.media_commands import (
    FFMPEG_PROCESS_CODE,
    CommandRunner,
    describe_failure,
    ensure_tool_available,
    probe_has_audio_stream,
    run_command,
)

LOGGER = logging.getLogger("compose_short_video")

REPO_ROOT = Path(__file__).resolve().parent
DEFAULT_VIDEOS_DIR = REPO_ROOT / "assets" / "videos" / "en"
DEFAULT_TAGLINES_FILE = REPO_ROOT / "data" / "en" / "taglines.txt"
DEFAULT_BGM_DIR = REPO_ROOT / "assets" / "bgm" / "en"
DEFAULT_WORK_DIR = "out"
DEFAULT_OUTPUT = "final.mp4"
DEFAULT_DESCRIPTION_LINES = (
    "https://hub.sassamahha.me",
    "",
    "#RoadTo2112 #ShortStory #SciFi #HumansAndRobots",
)
VIDEO_EXTENSIONS = (".mp4", ".mov", ".mkv")
AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a")
TAGLINE_FILE_NAME = "tagline.txt"
FILTER_SCRIPT_NAME = "filters.txt"
HANDOFF_DELIMITER = "EOF"


@dataclass(frozen=True)
class ComposeOptions:
    """Parsed CLI options before any asset is chosen."""

    videos_dir: str
    taglines_file: str
    bgm_dir: str
    duration_seconds: float | None
    min_duration_seconds: float
    max_duration_seconds: float
    layout: LayoutConfig
    text: TextConfig
    display: DisplayConfig
    audio: AudioConfig
    output_path: str
    work_dir: str
    title_prefix: str
    handoff_env_file: str | None
    seed: int | None


@dataclass(frozen=True)
class ComposeResult:
    """Artifacts of a finished composition."""

    output_path: str
    tagline_file: str
    filter_script: str
    graph: FilterGraph
    normalization: NormalizationResult
    has_source_audio: bool
    command: Tuple[str, ...]


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    """Read a float from the environment, falling back when unset or blank."""
    raw_value = environ.get(name, "").strip()
    if not raw_value:
        return default
    try:
        return float(raw_value)
    except ValueError as exc:
        raise ComposeValidationError(
            INVALID_CONFIG_CODE, f"{name} must be a number: {raw_value!r}"
        ) from exc


def env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    """Read an integer from the environment, falling back when unset or blank."""
    raw_value = environ.get(name, "").strip()
    if not raw_value:
        return default
    try:
        return int(float(raw_value))
    except (ValueError, OverflowError) as exc:
        raise ComposeValidationError(
            INVALID_CONFIG_CODE, f"{name} must be an integer: {raw_value!r}"
        ) from exc


def env_optional_float(environ: Mapping[str, str], name: str) -> float | None:
    """Read an optional float from the environment."""
    if not environ.get(name, "").strip():
        return None
    return env_float(environ, name, 0.0)


def parse_args(
    argv: Sequence[str], environ: Mapping[str, str] | None = None
) -> ComposeOptions:
    """Parse CLI arguments, using environment variables as defaults."""
    env = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(prog="compose_short_video.py", add_help=True)
    parser.add_argument("--videos-dir", default=env.get("VIDEOS_DIR", str(DEFAULT_VIDEOS_DIR)))
    parser.add_argument(
        "--taglines-file", default=env.get("TAGLINES_TXT", str(DEFAULT_TAGLINES_FILE))
    )
    parser.add_argument("--bgm-dir", default=env.get("BGM_DIR", str(DEFAULT_BGM_DIR)))
    parser.add_argument(
        "--duration-seconds",
        type=float,
        default=env_optional_float(env, "DURATION_SEC"),
    )
    parser.add_argument(
        "--min-duration", type=float, default=env_float(env, "MIN_DUR", 10.0)
    )
    parser.add_argument(
        "--max-duration", type=float, default=env_float(env, "MAX_DUR", 25.0)
    )
    parser.add_argument("--mix-mode", default=env.get("MIX_MODE", "bgm"), help="bgm or mix")
    parser.add_argument(
        "--video-volume", type=float, default=env_float(env, "VIDEO_VOL", 1.0)
    )
    parser.add_argument(
        "--bgm-volume", type=float, default=env_float(env, "BGM_VOL", 0.28)
    )
    parser.add_argument(
        "--always-on",
        action=argparse.BooleanOptionalAction,
        default=env.get("ALWAYS_ON_COPY") == "1",
        help="keep the tagline visible until the tail-off instead of two windows",
    )
    parser.add_argument(
        "--headline-seconds",
        type=float,
        default=env_float(env, "HEADLINE_SECS", 3.0),
    )
    parser.add_argument(
        "--reappear-at", type=float, default=env_float(env, "REAPPEAR_AT", 11.0)
    )
    parser.add_argument(
        "--tail-off-seconds", type=float, default=env_float(env, "TAIL_OFF_SEC", 0.8)
    )
    parser.add_argument(
        "--fit-mode", default=env.get("FIT_MODE", "cover"), help="cover or contain"
    )
    parser.add_argument("--inset", type=float, default=env_float(env, "INSET_PCT", 1.0))
    parser.add_argument(
        "--tag-position", default=env.get("TAG_POS", "center"), help="top, center or bottom"
    )
    parser.add_argument("--font-file", default=env.get("FONT_FILE", DEFAULT_FONT_FILE))
    parser.add_argument("--font-size", type=int, default=env_int(env, "FONT_SIZE", 72))
    parser.add_argument("--max-lines", type=int, default=env_int(env, "MAX_LINES", 2))
    parser.add_argument(
        "--text-margin", type=float, default=env_float(env, "TEXT_MARGIN_PCT", 0.06)
    )
    parser.add_argument("--text-color", default=env.get("TEXT_COLOR", "black"))
    parser.add_argument(
        "--text-border-width", type=int, default=env_int(env, "TEXT_BORDERW", 2)
    )
    parser.add_argument(
        "--text-border-color", default=env.get("TEXT_BORDERCOLOR", "black")
    )
    parser.add_argument("--bar-color", default=env.get("BAR_COLOR", "white"))
    parser.add_argument(
        "--bar-opacity", type=float, default=env_float(env, "BAR_OPACITY", 0.35)
    )
    parser.add_argument("--bar-padding", type=int, default=env_int(env, "BAR_PAD_PX", 18))
    parser.add_argument(
        "--copy-box-opacity",
        type=float,
        default=env_float(env, "COPY_BOX_OPACITY", 0.0),
    )
    parser.add_argument(
        "--title-prefix", default=env.get("TITLE_PREFIX", DEFAULT_TITLE_PREFIX)
    )
    parser.add_argument(
        "--handoff-env-file",
        default=env.get("GITHUB_ENV") or None,
        help="append VIDEO_TITLE/VIDEO_DESC/FINAL_MP4 to this file",
    )
    parser.add_argument("--work-dir", default=DEFAULT_WORK_DIR)
    parser.add_argument("--output", default=DEFAULT_OUTPUT)
    parser.add_argument("--seed", type=int, default=None)

    parsed = parser.parse_args(argv)

    return ComposeOptions(
        videos_dir=parsed.videos_dir,
        taglines_file=parsed.taglines_file,
        bgm_dir=parsed.bgm_dir,
        duration_seconds=parsed.duration_seconds,
        min_duration_seconds=parsed.min_duration,
        max_duration_seconds=parsed.max_duration,
        layout=LayoutConfig(
            fit_mode=parse_fit_mode(parsed.fit_mode),
            inset_fraction=parsed.inset,
            text_anchor=parse_text_anchor(parsed.tag_position),
        ),
        text=TextConfig(
            font_file=parsed.font_file,
            font_size=parsed.font_size,
            max_lines=parsed.max_lines,
            margin_fraction=parsed.text_margin,
            text_color=parsed.text_color,
            border_width=parsed.text_border_width,
            border_color=parsed.text_border_color,
            bar_color=parsed.bar_color,
            bar_opacity=parsed.bar_opacity,
            bar_padding=parsed.bar_padding,
            box_opacity=parsed.copy_box_opacity,
        ),
        display=DisplayConfig(
            display_mode=parse_display_mode(parsed.always_on),
            headline_seconds=parsed.headline_seconds,
            reappear_at_seconds=parsed.reappear_at,
            tail_off_seconds=parsed.tail_off_seconds,
        ),
        audio=AudioConfig(
            mix_mode=parse_mix_mode(parsed.mix_mode),
            video_volume=parsed.video_volume,
            bgm_volume=parsed.bgm_volume,
        ),
        output_path=parsed.output,
        work_dir=parsed.work_dir,
        title_prefix=parsed.title_prefix,
        handoff_env_file=parsed.handoff_env_file,
        seed=parsed.seed,
    )


def list_media_files(directory: str, extensions: Sequence[str]) -> Tuple[str, ...]:
    """List files in a directory whose extension matches, sorted by name."""
    if not os.path.isdir(directory):
        return ()
    matches = [
        os.path.join(directory, entry)
        for entry in sorted(os.listdir(directory))
        if entry.lower().endswith(tuple(extensions))
        and os.path.isfile(os.path.join(directory, entry))
    ]
    return tuple(matches)


def read_taglines(file_path: str) -> Tuple[str, ...]:
    """Read non-empty, trimmed lines from a UTF-8 tagline file."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise ComposeValidationError(
            MISSING_TAGLINE_CODE, f"tagline file not found: {file_path}"
        ) from exc

    try:
        text_value = file_bytes.decode("utf-8-sig", errors="strict")
    except UnicodeDecodeError as exc:
        raise ComposeValidationError(
            INPUT_FILE_CODE,
            f"tagline file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc

    return tuple(line.strip() for line in text_value.splitlines() if line.strip())


def pick(items: Sequence[str], rng: UniformSource) -> str:
    """Pick one item uniformly."""
    index = min(len(items) - 1, int(rng.random() * len(items)))
    return items[index]


def select_source_clip(videos_dir: str, rng: UniformSource) -> str:
    """Choose a random source clip or fail when none exist."""
    clips = list_media_files(videos_dir, VIDEO_EXTENSIONS)
    if not clips:
        raise ComposeValidationError(MISSING_CLIP_CODE, f"no videos in {videos_dir}")
    return pick(clips, rng)


def select_tagline(taglines_file: str, rng: UniformSource) -> str:
    """Choose a random tagline or fail when the file has none."""
    taglines = read_taglines(taglines_file)
    if not taglines:
        raise ComposeValidationError(
            MISSING_TAGLINE_CODE, f"no taglines in {taglines_file}"
        )
    return pick(taglines, rng)


def build_composition_request(
    options: ComposeOptions, rng: UniformSource
) -> CompositionRequest:
    """Choose assets and freeze everything into a CompositionRequest."""
    source_clip = select_source_clip(options.videos_dir, rng)
    tagline = select_tagline(options.taglines_file, rng)
    return CompositionRequest(
        source_clip_path=source_clip,
        tagline_text=tagline,
        candidate_audio_paths=list_media_files(options.bgm_dir, AUDIO_EXTENSIONS),
        target_duration_seconds=options.duration_seconds,
        min_duration_seconds=options.min_duration_seconds,
        max_duration_seconds=options.max_duration_seconds,
        layout=options.layout,
        text=options.text,
        display=options.display,
        audio=options.audio,
        output_path=os.path.abspath(options.output_path),
        work_dir=options.work_dir,
        title_prefix=options.title_prefix,
        description_lines=DEFAULT_DESCRIPTION_LINES,
    )


def load_tagline_font(font_file: str, font_size: int) -> ImageFont.FreeTypeFont:
    """Load the drawtext font so a bad font fails before encoding starts."""
    try:
        return ImageFont.truetype(font_file, font_size)
    except OSError as exc:
        raise ComposeValidationError(
            FONT_LOAD_CODE, f"font could not be loaded: {font_file}"
        ) from exc


def find_overflowing_lines(
    wrapped_text: WrappedText, font: ImageFont.FreeTypeFont, safe_width: float
) -> Tuple[str, ...]:
    """Return wrapped lines whose rendered width exceeds the safe width."""
    return tuple(
        line for line in wrapped_text.lines if font.getlength(line) > safe_width
    )


def log_text_overflow(
    wrapped_text: WrappedText, font: ImageFont.FreeTypeFont, safe_width: float
) -> None:
    """Warn about lines that will not fit inside the safe width."""
    if wrapped_text.overflowed:
        LOGGER.warning(
            "compose_short_video.text.forced_overflow: %d-line limit reached, "
            "last line holds the remaining words",
            len(wrapped_text.lines),
        )
    for line in find_overflowing_lines(wrapped_text, font, safe_width):
        LOGGER.warning("compose_short_video.text.overflow: %r exceeds safe width", line)


def write_text_file(file_path: Path, content: str) -> None:
    """Write UTF-8 text to disk."""
    try:
        file_path.write_text(content, encoding="utf-8")
    except OSError as exc:
        raise ComposeValidationError(
            INPUT_FILE_CODE, f"could not write {file_path}: {exc}"
        ) from exc


def write_handoff_env(env_file: str, handoff: UploadHandoff) -> None:
    """Append upload values to a GitHub-style environment file."""
    lines = [
        f"VIDEO_TITLE={handoff.title}",
        f"VIDEO_DESC<<{HANDOFF_DELIMITER}",
        handoff.description,
        HANDOFF_DELIMITER,
        f"FINAL_MP4={handoff.output_path}",
    ]
    try:
        with open(env_file, "a", encoding="utf-8") as file_handle:
            file_handle.write("\n".join(lines) + "\n")
    except OSError as exc:
        raise ComposeValidationError(
            INPUT_FILE_CODE, f"could not append to {env_file}: {exc}"
        ) from exc


def compose_video(
    plan: CompositionPlan,
    rng: UniformSource,
    runner: CommandRunner = run_command,
) -> ComposeResult:
    """Normalize audio, compile the graph and run the encoder once."""
    request = plan.request
    work_dir = Path(request.work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)

    ensure_tool_available("ffmpeg", runner)
    ensure_tool_available("ffprobe", runner)

    tagline_file = work_dir / TAGLINE_FILE_NAME
    write_text_file(tagline_file, plan.wrapped_text.text)

    has_source_audio = probe_has_audio_stream(request.source_clip_path, runner)
    normalization = normalize_background_audio(
        request.candidate_audio_paths, str(work_dir), rng, runner
    )
    bgm_path = normalization.normalized_path

    graph = compile_filter_graph(
        plan, str(tagline_file), has_source_audio, bgm_path is not None
    )
    for chain_text in describe_graph(graph):
        LOGGER.debug("compose_short_video.graph.chain: %s", chain_text)
    filter_script = work_dir / FILTER_SCRIPT_NAME
    write_text_file(filter_script, graph.render() + "\n")

    command = build_encoder_command(
        request.source_clip_path,
        bgm_path,
        plan.duration.total_seconds,
        str(filter_script),
        graph,
        request.output_path,
    )
    result = runner(command)
    if not result.succeeded:
        raise ComposePipelineError(
            FFMPEG_PROCESS_CODE, f"ffmpeg failed with {describe_failure(result)}"
        )

    return ComposeResult(
        output_path=request.output_path,
        tagline_file=str(tagline_file),
        filter_script=str(filter_script),
        graph=graph,
        normalization=normalization,
        has_source_audio=has_source_audio,
        command=tuple(command),
    )


def log_summary(plan: CompositionPlan, result: ComposeResult) -> None:
    """Log what was generated from which inputs."""
    request = plan.request
    LOGGER.info(
        "compose_short_video.generated: %s (%.2fs)",
        result.output_path,
        plan.duration.total_seconds,
    )
    LOGGER.info(
        "compose_short_video.source: %s", os.path.basename(request.source_clip_path)
    )
    selected = result.normalization.selected
    if selected is None:
        LOGGER.info(
            "compose_short_video.bgm: none, no background audio used (audio=%s)",
            result.graph.audio_strategy.value,
        )
    else:
        LOGGER.info(
            "compose_short_video.bgm: %s mode=%s",
            os.path.basename(selected.original_path),
            request.audio.mix_mode.value,
        )
    LOGGER.info("compose_short_video.tagline: %s", " / ".join(plan.wrapped_text.lines))


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        options = parse_args(sys.argv[1:] if argv is None else argv)
        rng = random.Random(options.seed)
        request = build_composition_request(options, rng)
        plan = build_composition_plan(request, rng)

        font = load_tagline_font(request.text.font_file, request.text.font_size)
        safe_width = compute_safe_width(
            request.text.margin_fraction, request.layout.canvas_width
        )
        log_text_overflow(plan.wrapped_text, font, safe_width)

        if options.handoff_env_file:
            write_handoff_env(options.handoff_env_file, plan.handoff)

        result = compose_video(plan, rng)
        log_summary(plan, result)
        return 0
    except ComposeValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except ComposePipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("compose_short_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
