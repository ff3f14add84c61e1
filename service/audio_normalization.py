"""Background audio normalization chain for compose_short_video."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
import logging
import os
from pathlib import Path
import re
import shutil
from typing import Callable, Sequence, Tuple
import uuid

from domain.short_video import (
    INVALID_CONFIG_CODE,
    AssetStatus,
    ComposeValidationError,
)
from service.composition_plan import UniformSource
from service.media_commands import (
    CommandRunner,
    describe_failure,
    probe_duration_seconds,
    run_command,
)

LOGGER = logging.getLogger("compose_short_video.audio")

AUDIO_CANDIDATE_FAILED_CODE = "compose_short_video.audio.candidate_failed"
AUDIO_NONE_USABLE_CODE = "compose_short_video.audio.none_usable"
NORMALIZED_SAMPLE_RATE = "44100"
NORMALIZED_CHANNELS = "2"
NORMALIZED_CODEC = "pcm_s16le"
PROBE_SIZE = "50M"
ANALYZE_DURATION = "100M"
FORCED_INPUT_FORMAT = "mp3"
FALLBACK_SUFFIX = ".bin"
SAFE_SUFFIX_PATTERN = re.compile(r"\.[a-z0-9]{1,8}")
TOKEN_LENGTH = 12


class AttemptStep(str, Enum):
    """Steps recorded in a candidate's attempt log."""

    COPY = "copy"
    PROBE = "probe"
    FORCED_FORMAT = "forced_format"


DECODE_STRATEGIES = (AttemptStep.PROBE, AttemptStep.FORCED_FORMAT)


@dataclass(frozen=True)
class AudioAttempt:
    """Outcome of one decode strategy on one candidate."""

    step: AttemptStep
    succeeded: bool
    reason: str


@dataclass(frozen=True)
class AudioAsset:
    """A background audio candidate and its working files."""

    original_path: str
    sanitized_path: str | None = None
    normalized_path: str | None = None
    status: AssetStatus = AssetStatus.UNTRIED
    attempts: Tuple[AudioAttempt, ...] = ()

    def __post_init__(self) -> None:
        if self.status == AssetStatus.NORMALIZED and self.normalized_path is None:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "normalized asset requires a normalized path"
            )
        if self.status != AssetStatus.NORMALIZED and self.normalized_path is not None:
            raise ComposeValidationError(
                INVALID_CONFIG_CODE, "only normalized assets carry a normalized path"
            )


@dataclass(frozen=True)
class NormalizationResult:
    """All candidates in the order they were considered."""

    assets: Tuple[AudioAsset, ...]

    @property
    def selected(self) -> AudioAsset | None:
        for asset in self.assets:
            if asset.status == AssetStatus.NORMALIZED:
                return asset
        return None

    @property
    def normalized_path(self) -> str | None:
        selected = self.selected
        return selected.normalized_path if selected else None

    @property
    def attempt_log(self) -> Tuple[Tuple[str, AudioAttempt], ...]:
        return tuple(
            (asset.original_path, attempt)
            for asset in self.assets
            for attempt in asset.attempts
        )


def new_token() -> str:
    """Return a short collision-resistant ASCII token."""
    return uuid.uuid4().hex[:TOKEN_LENGTH]


def shuffle_candidates(
    candidate_paths: Sequence[str], rng: UniformSource
) -> Tuple[str, ...]:
    """Fisher-Yates shuffle driven by uniform draws."""
    items = list(candidate_paths)
    for index in range(len(items) - 1, 0, -1):
        swap_index = min(index, int(rng.random() * (index + 1)))
        items[index], items[swap_index] = items[swap_index], items[index]
    return tuple(items)


def sanitized_copy_name(original_path: str, token: str) -> str:
    """Build an ASCII-only working file name that keeps a safe extension."""
    suffix = Path(original_path).suffix.lower()
    if not SAFE_SUFFIX_PATTERN.fullmatch(suffix):
        suffix = FALLBACK_SUFFIX
    return f"bgm_{token}{suffix}"


def build_decode_command(
    step: AttemptStep, input_path: str, output_path: str
) -> list[str]:
    """Build an ffmpeg command that decodes to stereo PCM with relaxed errors."""
    command = [
        "ffmpeg",
        "-hide_banner",
        "-nostdin",
        "-y",
        "-v",
        "error",
        "-probesize",
        PROBE_SIZE,
        "-analyzeduration",
        ANALYZE_DURATION,
        "-fflags",
        "+discardcorrupt+genpts",
        "-err_detect",
        "ignore_err",
    ]
    if step == AttemptStep.FORCED_FORMAT:
        command.extend(["-f", FORCED_INPUT_FORMAT])
    command.extend(
        [
            "-i",
            input_path,
            "-vn",
            "-sn",
            "-dn",
            "-map",
            "0:a:0",
            "-ac",
            NORMALIZED_CHANNELS,
            "-ar",
            NORMALIZED_SAMPLE_RATE,
            "-c:a",
            NORMALIZED_CODEC,
            output_path,
        ]
    )
    return command


def attempt_decode(
    step: AttemptStep,
    input_path: str,
    output_path: str,
    runner: CommandRunner,
) -> AudioAttempt:
    """Run one decode strategy and verify the output holds audio."""
    result = runner(build_decode_command(step, input_path, output_path))
    if not result.succeeded:
        return AudioAttempt(step, False, describe_failure(result))
    if not os.path.isfile(output_path):
        return AudioAttempt(step, False, "decoder produced no output file")
    duration_seconds = probe_duration_seconds(output_path, runner)
    if duration_seconds is None or not duration_seconds > 0:
        return AudioAttempt(step, False, "decoded output has no audio")
    return AudioAttempt(step, True, f"decoded {duration_seconds:.2f}s")


def normalize_candidate(
    asset: AudioAsset,
    work_dir: Path,
    runner: CommandRunner,
    token_factory: Callable[[], str],
) -> AudioAsset:
    """Copy one candidate under a safe name and try each decode strategy."""
    token = token_factory()
    sanitized_path = work_dir / sanitized_copy_name(asset.original_path, token)
    try:
        shutil.copyfile(asset.original_path, sanitized_path)
    except OSError as exc:
        return replace(
            asset,
            status=AssetStatus.FAILED,
            attempts=(
                AudioAttempt(AttemptStep.COPY, False, f"copy failed: {exc}"),
            ),
        )

    normalized_path = work_dir / f"bgm_{token}_norm.wav"
    attempts: list[AudioAttempt] = []
    for step in DECODE_STRATEGIES:
        attempt = attempt_decode(
            step, str(sanitized_path), str(normalized_path), runner
        )
        attempts.append(attempt)
        if attempt.succeeded:
            return replace(
                asset,
                sanitized_path=str(sanitized_path),
                normalized_path=str(normalized_path),
                status=AssetStatus.NORMALIZED,
                attempts=tuple(attempts),
            )

    return replace(
        asset,
        sanitized_path=str(sanitized_path),
        status=AssetStatus.FAILED,
        attempts=tuple(attempts),
    )


def normalize_background_audio(
    candidate_paths: Sequence[str],
    work_dir: str,
    rng: UniformSource,
    runner: CommandRunner = run_command,
    token_factory: Callable[[], str] = new_token,
) -> NormalizationResult:
    """Produce at most one decodable PCM asset from untrusted candidates.

    Candidates are tried in shuffled order and the chain stops at the first
    success. Exhausting every candidate is not an error: the result simply has
    no selected asset and the composition continues without background music.
    """
    if not candidate_paths:
        LOGGER.info(
            "compose_short_video.audio.no_candidates: no background audio files"
        )
        return NormalizationResult(assets=())

    scratch_dir = Path(work_dir)
    scratch_dir.mkdir(parents=True, exist_ok=True)
    assets = [
        AudioAsset(original_path=path)
        for path in shuffle_candidates(candidate_paths, rng)
    ]

    for index, asset in enumerate(assets):
        outcome = normalize_candidate(asset, scratch_dir, runner, token_factory)
        assets[index] = outcome
        if outcome.status == AssetStatus.NORMALIZED:
            LOGGER.info(
                "compose_short_video.audio.normalized: %s via %s",
                os.path.basename(outcome.original_path),
                outcome.attempts[-1].step.value,
            )
            return NormalizationResult(assets=tuple(assets))
        LOGGER.warning(
            "%s: %s (%s)",
            AUDIO_CANDIDATE_FAILED_CODE,
            os.path.basename(outcome.original_path),
            "; ".join(
                f"{attempt.step.value}: {attempt.reason}"
                for attempt in outcome.attempts
            ),
        )

    LOGGER.warning(
        "%s: no background audio could be used (%d candidates tried)",
        AUDIO_NONE_USABLE_CODE,
        len(assets),
    )
    return NormalizationResult(assets=tuple(assets))
