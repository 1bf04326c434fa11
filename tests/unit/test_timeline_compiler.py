"""
Unit tests for the timeline compiler.

Covers the FFmpeg command layout, text escaping, image naming and the
workspace lifecycle. Image fetches go through an httpx.MockTransport.
"""

from pathlib import Path
from typing import List, Tuple
from unittest.mock import patch

import httpx
import pytest

from render_worker.core.errors import ErrorCode, ImageDownloadFailed
from render_worker.schemas.timeline import validate_timeline
from render_worker.tasks.timeline_compiler import (
    OUTPUT_FILENAME,
    FFmpegCommandBuilder,
    TimelineCompiler,
    escape_filter_value,
    get_image_extension,
)

FAKE_IMAGE = b"\x89PNG\r\n\x1a\nfake image bytes"
WHITESPACE = " \n\t\r"


# =============================================================================
# Helpers
# =============================================================================


def _get_token(buf: str, term: str) -> Tuple[str, str]:
    """
    Read one token the way FFmpeg's av_get_token does.

    Leading whitespace is skipped, a backslash escapes the next character,
    text between single quotes is taken literally, and reading stops at the
    first unescaped character in term. Unescaped whitespace at the end of
    the token is dropped. Returns (token, rest).
    """
    out = []
    keep = 0
    i = 0
    while i < len(buf) and buf[i] in WHITESPACE:
        i += 1
    while i < len(buf) and buf[i] not in term:
        c = buf[i]
        i += 1
        if c == "\\" and i < len(buf):
            out.append(buf[i])
            i += 1
            keep = len(out)
        elif c == "'":
            while i < len(buf) and buf[i] != "'":
                out.append(buf[i])
                i += 1
            if i < len(buf):
                i += 1
                keep = len(out)
        else:
            out.append(c)
    while len(out) > keep and out[-1] in WHITESPACE:
        out.pop()
    return "".join(out), buf[i:]


def _parse_filter_options(args: str) -> dict:
    """Split a filter's key=value:key=value argument string."""
    options = {}
    rest = args
    while rest:
        key, rest = rest.split("=", 1)
        value, rest = _get_token(rest, ":")
        options[key] = value
        rest = rest[1:]
    return options


def _drawtext_options(filter_complex: str, occurrence: int = 0) -> dict:
    """Parse the drawtext options the way the filtergraph parser sees them."""
    start = -1
    for _ in range(occurrence + 1):
        start = filter_complex.index("drawtext=", start + 1)
    args, rest = _get_token(filter_complex[start + len("drawtext="):], "[],;")
    assert rest.startswith(",setsar=1")
    return _parse_filter_options(args)


def _mock_client(requests: List[httpx.Request], status_for=None) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        status = status_for(request) if status_for else 200
        return httpx.Response(status, content=FAKE_IMAGE)

    return httpx.Client(transport=httpx.MockTransport(handler))


# =============================================================================
# Escaping
# =============================================================================


class TestEscapeFilterValue:
    """Tests for escape_filter_value."""

    @pytest.mark.parametrize(
        "text",
        [
            "Hello World",
            "it's 10:30",
            "a[b],c;d",
            "back\\slash",
            "100% done",
            'say "hi"',
            "%{localtime} stays literal",
            "'''",
            "::",
            " padded ",
            "trail ",
            "   ",
            "\tx\t",
            "ends with backslash \\",
            "ünïcødé ✓",
        ],
    )
    def test_survives_both_parsing_levels(self, text: str):
        """Graph-level then option-level unescaping gives back the original."""
        escaped = escape_filter_value(text)

        graph_token, graph_rest = _get_token(escaped, "[],;")
        option_token, option_rest = _get_token(graph_token, ":")

        assert graph_rest == ""
        assert option_rest == ""
        assert option_token == text

    def test_plain_text_is_unchanged(self):
        assert escape_filter_value("Hello World") == "Hello World"

    def test_colon_and_quote(self):
        assert escape_filter_value("it's 10:30") == "it\\\\\\'s 10\\\\:30"

    def test_edge_whitespace_is_escaped(self):
        assert escape_filter_value(" a ") == "\\\\ a\\\\\\ "
        assert escape_filter_value("a b") == "a b"

    def test_blank_text_stays_non_empty(self):
        """Only-space text must not collapse to an empty option value."""
        escaped = escape_filter_value("   ")

        option_token, _ = _get_token(_get_token(escaped, "[],;")[0], ":")
        assert option_token == "   "


# =============================================================================
# Command Builder
# =============================================================================


class TestFFmpegCommandBuilder:
    """Tests for FFmpegCommandBuilder."""

    def _build(self, timeline, tmp_path: Path, **kwargs):
        paths = [tmp_path / f"clip_{i}.jpg" for i in range(len(timeline.clips))]
        builder = FFmpegCommandBuilder(
            timeline=timeline,
            input_paths=paths,
            output_path=tmp_path / OUTPUT_FILENAME,
            **kwargs,
        )
        return builder, paths

    def test_single_clip_example(self, single_clip_timeline, tmp_path: Path):
        builder, paths = self._build(single_clip_timeline, tmp_path)
        command = builder.build()

        assert command.args[:4] == ["ffmpeg", "-y", "-hide_banner", "-nostdin"]
        assert command.args.count("-i") == 1
        assert command.args[4:12] == [
            "-loop", "1",
            "-framerate", "30",
            "-t", "3",
            "-i", str(paths[0]),
        ]
        assert builder.build_filter_complex() == (
            "[0:v]scale=1920:1080:force_original_aspect_ratio=decrease,"
            "pad=1920:1080:(ow-iw)/2:(oh-ih)/2:black,"
            "drawtext=text=Hello World:expansion=none:fontsize=64:fontcolor=white:"
            "borderw=3:bordercolor=black:x=(w-text_w)/2:y=h-th-100,"
            "setsar=1,fps=30,setpts=PTS-STARTPTS[v0];"
            "[v0]concat=n=1:v=1:a=0[outv]"
        )

    def test_output_options(self, single_clip_timeline, tmp_path: Path):
        builder, _ = self._build(single_clip_timeline, tmp_path)
        command = builder.build()
        args = command.args

        assert args[args.index("-map") + 1] == "[outv]"
        assert "-an" in args
        assert args[args.index("-c:v") + 1] == "libx264"
        assert args[args.index("-preset") + 1] == "medium"
        assert args[args.index("-crf") + 1] == "23"
        assert args[args.index("-pix_fmt") + 1] == "yuv420p"
        assert args[args.index("-r") + 1] == "30"
        assert args[args.index("-movflags") + 1] == "+faststart"
        assert args[-1] == str(tmp_path / OUTPUT_FILENAME)
        assert command.output_path == str(tmp_path / OUTPUT_FILENAME)

    def test_n_clips_give_n_inputs_and_one_concat(self, three_clip_timeline, tmp_path: Path):
        builder, paths = self._build(three_clip_timeline, tmp_path)
        command = builder.build()
        filter_complex = builder.build_filter_complex()

        inputs = [command.args[i + 1] for i, a in enumerate(command.args) if a == "-i"]
        durations = [command.args[i + 1] for i, a in enumerate(command.args) if a == "-t"]
        assert inputs == [str(p) for p in paths]
        assert durations == ["2", "3", "4"]

        for idx in range(3):
            assert f"[{idx}:v]" in filter_complex
            assert filter_complex.count(f"[v{idx}]") == 2
        assert filter_complex.count("concat=") == 1
        assert filter_complex.endswith("[v0][v1][v2]concat=n=3:v=1:a=0[outv]")

    def test_clip_text_goes_to_its_own_chain(self, three_clip_timeline, tmp_path: Path):
        builder, _ = self._build(three_clip_timeline, tmp_path)
        filter_complex = builder.build_filter_complex()

        for idx, text in enumerate(["First", "Second", "Third"]):
            assert _drawtext_options(filter_complex, idx)["text"] == text

    def test_special_characters_in_text(self, tmp_path: Path):
        text = "Q3: sales [up], costs; down's"
        timeline = validate_timeline(
            {"clips": [{"image": "https://example.com/a.jpg", "text": text, "duration": 2}]}
        )
        builder, _ = self._build(timeline, tmp_path)

        options = _drawtext_options(builder.build_filter_complex())

        assert options["text"] == text
        assert options["expansion"] == "none"
        assert options["y"] == "h-th-100"

    @pytest.mark.parametrize("text", ["", "   ", "\t"])
    def test_blank_text_skips_drawtext(self, text: str, tmp_path: Path):
        timeline = validate_timeline(
            {"clips": [{"image": "https://example.com/a.jpg", "text": text, "duration": 2}]}
        )
        builder, _ = self._build(timeline, tmp_path)
        filter_complex = builder.build_filter_complex()

        assert "drawtext" not in filter_complex
        assert "black,setsar=1" in filter_complex

    def test_font_file(self, single_clip_timeline, tmp_path: Path):
        builder, _ = self._build(
            single_clip_timeline, tmp_path, font_file="/fonts/Deja Vu:Sans.ttf"
        )

        options = _drawtext_options(builder.build_filter_complex())

        assert options["fontfile"] == "/fonts/Deja Vu:Sans.ttf"
        assert options["text"] == "Hello World"

    def test_custom_binary(self, single_clip_timeline, tmp_path: Path):
        builder, _ = self._build(single_clip_timeline, tmp_path, ffmpeg_binary="/opt/ffmpeg")
        assert builder.build().args[0] == "/opt/ffmpeg"

    def test_input_count_mismatch(self, three_clip_timeline, tmp_path: Path):
        with pytest.raises(ValueError):
            FFmpegCommandBuilder(
                timeline=three_clip_timeline,
                input_paths=[tmp_path / "clip_0.jpg"],
                output_path=tmp_path / OUTPUT_FILENAME,
            )


class TestGetImageExtension:
    """Tests for get_image_extension."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("https://x.com/a.jpg", ".jpg"),
            ("https://x.com/a.JPEG", ".jpeg"),
            ("https://x.com/a.png?size=large", ".png"),
            ("https://x.com/dir.v2/a.webp#frag", ".webp"),
            ("https://x.com/a.bmp", ".bmp"),
            ("https://x.com/a.gif", ".gif"),
            ("https://x.com/image", ".jpg"),
            ("https://x.com/a.svg", ".jpg"),
            ("https://x.com/", ".jpg"),
        ],
    )
    def test_extension(self, url: str, expected: str):
        assert get_image_extension(url) == expected


# =============================================================================
# Compiler
# =============================================================================


class TestTimelineCompiler:
    """Tests for TimelineCompiler.compile and cleanup."""

    def test_compile_downloads_in_clip_order(self, settings, three_clip_timeline):
        requests: List[httpx.Request] = []
        compiler = TimelineCompiler(settings, http_client=_mock_client(requests))

        result = compiler.compile("job-123", three_clip_timeline)

        assert [str(r.url) for r in requests] == [
            "https://example.com/one.png",
            "https://example.com/two",
            "https://example.com/three.webp?w=800",
        ]
        assert result.work_dir == Path(settings.work_dir_base) / "job-job-123"
        assert [p.name for p in result.input_asset_paths] == [
            "clip_0.png",
            "clip_1.jpg",
            "clip_2.webp",
        ]
        for path in result.input_asset_paths:
            assert path.read_bytes() == FAKE_IMAGE
        assert result.command.output_path == str(result.work_dir / OUTPUT_FILENAME)
        assert result.command.args.count("-i") == 3

    def test_compile_uses_settings_binary(self, settings, single_clip_timeline):
        settings = settings.model_copy(update={"ffmpeg_binary": "/usr/local/bin/ffmpeg"})
        compiler = TimelineCompiler(settings, http_client=_mock_client([]))

        result = compiler.compile("job-1", single_clip_timeline)

        assert result.command.args[0] == "/usr/local/bin/ffmpeg"

    def test_http_error_status_fails_download(self, settings, three_clip_timeline):
        requests: List[httpx.Request] = []
        client = _mock_client(
            requests,
            status_for=lambda r: 404 if r.url.path == "/two" else 200,
        )
        compiler = TimelineCompiler(settings, http_client=client)

        with pytest.raises(ImageDownloadFailed) as exc_info:
            compiler.compile("job-404", three_clip_timeline)

        error = exc_info.value
        assert error.code == ErrorCode.IMAGE_DOWNLOAD_FAILED
        assert error.details == {"url": "https://example.com/two", "clip_index": 1}
        # Stops at the first failure
        assert len(requests) == 2

    def test_transport_error_fails_download(self, settings, single_clip_timeline):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        compiler = TimelineCompiler(settings, http_client=client)

        with pytest.raises(ImageDownloadFailed) as exc_info:
            compiler.compile("job-down", single_clip_timeline)
        assert exc_info.value.details["clip_index"] == 0

    def test_cleanup_removes_partial_workspace(self, settings, three_clip_timeline):
        client = _mock_client([], status_for=lambda r: 500 if r.url.path == "/two" else 200)
        compiler = TimelineCompiler(settings, http_client=client)
        work_dir = compiler.work_dir_for("job-partial")

        with pytest.raises(ImageDownloadFailed):
            compiler.compile("job-partial", three_clip_timeline)
        assert (work_dir / "clip_0.png").exists()

        compiler.cleanup(work_dir)

        assert not work_dir.exists()

    def test_cleanup_is_idempotent(self, settings, single_clip_timeline):
        compiler = TimelineCompiler(settings, http_client=_mock_client([]))
        result = compiler.compile("job-twice", single_clip_timeline)

        compiler.cleanup(result.work_dir)
        compiler.cleanup(result.work_dir)

        assert not result.work_dir.exists()

    def test_cleanup_of_missing_directory(self, settings, tmp_path: Path):
        compiler = TimelineCompiler(settings, http_client=_mock_client([]))
        compiler.cleanup(tmp_path / "never-created")

    def test_compile_starts_from_fresh_workspace(self, settings, single_clip_timeline):
        compiler = TimelineCompiler(settings, http_client=_mock_client([]))
        work_dir = compiler.work_dir_for("job-stale")
        work_dir.mkdir(parents=True)
        (work_dir / "output.mp4").write_bytes(b"from a crashed attempt")

        result = compiler.compile("job-stale", single_clip_timeline)

        assert result.work_dir == work_dir
        assert sorted(p.name for p in work_dir.iterdir()) == ["clip_0.jpg"]

    def test_compile_reuses_workspace_that_survived_cleanup(self, settings, single_clip_timeline):
        compiler = TimelineCompiler(settings, http_client=_mock_client([]))
        work_dir = compiler.work_dir_for("job-locked")
        work_dir.mkdir(parents=True)

        # cleanup only logs when it cannot remove the directory
        with patch.object(compiler, "cleanup"):
            result = compiler.compile("job-locked", single_clip_timeline)

        assert result.work_dir == work_dir
        assert (work_dir / "clip_0.jpg").read_bytes() == FAKE_IMAGE
