"""
Timeline Compiler

Turns a validated timeline into locally materialized inputs plus a fully
specified FFmpeg command:

1. Creates the job workspace (<work_dir_base>/job-<job_id>)
2. Downloads each clip image, sequentially and in clip order, as clip_<i><ext>
3. Builds the FFmpeg command

FFmpeg Filter Graph:
- One input per clip; stills use -loop 1 -t <duration>
- Per clip: scale + pad (letterbox to 1920x1080) + drawtext overlay -> [v<i>]
- All clips joined with one concat filter (video only) -> [outv]

Since inputs are fetched in clip order, input index i, filter label [v<i>]
and clip i always line up.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional
from urllib.parse import urlparse

import httpx

from ..core.config import Settings, get_settings
from ..core.errors import ImageDownloadFailed
from ..schemas.timeline import Clip, Timeline
from .ffmpeg_runner import FFmpegCommand

logger = logging.getLogger(__name__)

# Extensions kept from the source URL; anything else is saved as .jpg
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}
DEFAULT_IMAGE_EXTENSION = ".jpg"

JOB_DIR_PREFIX = "job-"
OUTPUT_FILENAME = "output.mp4"
USER_AGENT = "VideoRenderPlatform/1.0"

# Characters with meaning at each filter parsing level. An option value is
# unescaped once when the filter parses its key=value list, and once more
# before that when the filtergraph is split into filters.
_OPTION_SPECIALS = "\\':"
_GRAPH_SPECIALS = "\\'[],;"
# The parser drops unescaped whitespace at either end of a value
_WHITESPACE = " \n\t\r"


# ============================================================================
# Encoding Settings
# ============================================================================


@dataclass(frozen=True)
class EncodingSettings:
    """
    Process-wide output settings.

    Output: 1920x1080, 30fps, medium preset, H.264, no audio
    """

    width: int = 1920
    height: int = 1080
    fps: int = 30
    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = 23
    pix_fmt: str = "yuv420p"

    # Text overlay
    font_size: int = 64
    font_color: str = "white"
    border_width: int = 3
    border_color: str = "black"
    bottom_margin: int = 100


ENCODING = EncodingSettings()


@dataclass
class CompilationResult:
    """Everything one attempt needs; owned and deleted by that attempt."""

    command: FFmpegCommand
    work_dir: Path
    input_asset_paths: List[Path] = field(default_factory=list)


# ============================================================================
# Escaping
# ============================================================================


def _escape(value: str, specials: str) -> str:
    escaped = [f"\\{ch}" if ch in specials else ch for ch in value]
    leading = len(value) - len(value.lstrip(_WHITESPACE))
    trailing = len(value.rstrip(_WHITESPACE))
    for i in [*range(leading), *range(trailing, len(value))]:
        escaped[i] = f"\\{value[i]}"
    return "".join(escaped)


def escape_filter_value(value: str) -> str:
    r"""
    Escape a string for use as a filter option value inside -filter_complex.

    Applies option-level escaping (backslash, quote, colon) and then
    filtergraph-level escaping (backslash, quote, brackets, comma, semicolon),
    so FFmpeg's two unescaping passes give back the original string.
    Whitespace at either end is escaped at both levels as well.
    "it's 10:30" becomes it\\\'s 10\\:30 on the command line.
    """
    return _escape(_escape(value, _OPTION_SPECIALS), _GRAPH_SPECIALS)


# ============================================================================
# FFmpeg Command Builder
# ============================================================================


class FFmpegCommandBuilder:
    """
    Builds the FFmpeg command for a timeline whose images are already local.

    Key design:
    - One input per clip, in clip order
    - Images use -loop 1 with -t set to the clip duration
    - Every clip is normalized (size, SAR, fps) before concat
    """

    def __init__(
        self,
        timeline: Timeline,
        input_paths: List[Path],
        output_path: Path,
        settings: EncodingSettings = ENCODING,
        ffmpeg_binary: str = "ffmpeg",
        font_file: Optional[str] = None,
    ):
        if len(input_paths) != len(timeline.clips):
            raise ValueError(
                f"Expected {len(timeline.clips)} input paths, got {len(input_paths)}"
            )
        self.timeline = timeline
        self.input_paths = input_paths
        self.output_path = output_path
        self.settings = settings
        self.ffmpeg_binary = ffmpeg_binary
        self.font_file = font_file

    def build(self) -> FFmpegCommand:
        """
        Build complete FFmpeg command.

        Returns:
            FFmpegCommand with the argument vector and output path
        """
        args = [self.ffmpeg_binary, "-y", "-hide_banner", "-nostdin"]
        args.extend(self._build_inputs())
        args.extend(["-filter_complex", self.build_filter_complex()])
        args.extend(self._build_output_options())
        args.append(str(self.output_path))

        return FFmpegCommand(args=args, output_path=str(self.output_path))

    def _build_inputs(self) -> List[str]:
        inputs = []
        for clip, path in zip(self.timeline.clips, self.input_paths):
            inputs.extend([
                "-loop", "1",
                "-framerate", str(self.settings.fps),
                "-t", str(clip.duration),
                "-i", str(path),
            ])
        return inputs

    def build_filter_complex(self) -> str:
        """Build the filter_complex string."""
        filters = []
        labels = []

        for idx, clip in enumerate(self.timeline.clips):
            out_label = f"[v{idx}]"
            filters.append(self._build_clip_filter(idx, clip, out_label))
            labels.append(out_label)

        # Always concat, even a single clip, so the output label is uniform
        filters.append(f"{''.join(labels)}concat=n={len(labels)}:v=1:a=0[outv]")

        return ";".join(filters)

    def _build_clip_filter(self, idx: int, clip: Clip, out_label: str) -> str:
        s = self.settings
        w, h = s.width, s.height
        chain = [
            f"scale={w}:{h}:force_original_aspect_ratio=decrease",
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:black",
        ]
        # drawtext rejects an empty text option; blank text draws nothing
        if clip.text.strip():
            chain.append(self._build_drawtext(clip.text))
        chain.extend(["setsar=1", f"fps={s.fps}", "setpts=PTS-STARTPTS"])
        return f"[{idx}:v]{','.join(chain)}{out_label}"

    def _build_drawtext(self, text: str) -> str:
        s = self.settings
        options = [
            f"text={escape_filter_value(text)}",
            "expansion=none",
            f"fontsize={s.font_size}",
            f"fontcolor={s.font_color}",
            f"borderw={s.border_width}",
            f"bordercolor={s.border_color}",
            "x=(w-text_w)/2",
            f"y=h-th-{s.bottom_margin}",
        ]
        if self.font_file:
            options.insert(1, f"fontfile={escape_filter_value(self.font_file)}")
        return "drawtext=" + ":".join(options)

    def _build_output_options(self) -> List[str]:
        s = self.settings
        return [
            "-map", "[outv]",
            "-an",
            "-c:v", s.video_codec,
            "-preset", s.preset,
            "-crf", str(s.crf),
            "-pix_fmt", s.pix_fmt,
            "-r", str(s.fps),
            "-movflags", "+faststart",
        ]


# ============================================================================
# Compiler
# ============================================================================


def get_image_extension(url: str) -> str:
    """
    Pick the local file extension for a clip image.

    Example:
        >>> get_image_extension("https://x/a.PNG?size=large")
        '.png'
        >>> get_image_extension("https://x/image")
        '.jpg'
    """
    ext = PurePosixPath(urlparse(url).path).suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return ext
    return DEFAULT_IMAGE_EXTENSION


class TimelineCompiler:
    """Downloads clip assets into a job workspace and builds the command."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
        encoding: EncodingSettings = ENCODING,
    ):
        self.settings = settings or get_settings()
        self.encoding = encoding
        self.http_client = http_client or httpx.Client(
            timeout=self.settings.image_download_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    def work_dir_for(self, job_id: str) -> Path:
        """Deterministic workspace path of a job."""
        return Path(self.settings.work_dir_base) / f"{JOB_DIR_PREFIX}{job_id}"

    def compile(self, job_id: str, timeline: Timeline) -> CompilationResult:
        """
        Compile a timeline into an FFmpeg command.

        Args:
            job_id: Job UUID, used to name the workspace
            timeline: Validated timeline

        Returns:
            CompilationResult with command, workspace and downloaded inputs

        Raises:
            ImageDownloadFailed: If any clip image cannot be fetched
        """
        work_dir = self.work_dir_for(job_id)
        # Leftovers of an attempt that died before its cleanup
        self.cleanup(work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)

        input_paths = []
        for idx, clip in enumerate(timeline.clips):
            input_paths.append(self._download_image(str(clip.image), work_dir, idx))

        builder = FFmpegCommandBuilder(
            timeline=timeline,
            input_paths=input_paths,
            output_path=work_dir / OUTPUT_FILENAME,
            settings=self.encoding,
            ffmpeg_binary=self.settings.ffmpeg_binary,
            font_file=self.settings.font_file,
        )
        command = builder.build()

        logger.info(f"Compiled timeline for job {job_id}: {len(input_paths)} clips")
        return CompilationResult(command=command, work_dir=work_dir, input_asset_paths=input_paths)

    def _download_image(self, url: str, work_dir: Path, index: int) -> Path:
        file_path = work_dir / f"clip_{index}{get_image_extension(url)}"

        logger.info(f"Downloading image {index}: {url}")
        try:
            with self.http_client.stream(
                "GET", url, timeout=self.settings.image_download_timeout_seconds
            ) as response:
                response.raise_for_status()
                with open(file_path, "wb") as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)
        except httpx.HTTPError as e:
            raise ImageDownloadFailed(
                f"Failed to download image: {e}",
                {"url": url, "clip_index": index},
            ) from e

        logger.debug(f"Downloaded image {index} to {file_path}")
        return file_path

    def cleanup(self, work_dir: Path) -> None:
        """
        Remove a job workspace.

        Safe to call repeatedly or on a missing directory; failures are
        logged and never raised.
        """
        try:
            if work_dir.exists():
                shutil.rmtree(work_dir)
                logger.info(f"Cleaned up work directory: {work_dir}")
        except OSError as e:
            logger.warning(f"Failed to cleanup {work_dir}: {e}")

    def close(self) -> None:
        self.http_client.close()
