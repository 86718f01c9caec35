import stat
import sys
from pathlib import Path

import pytest

from mediajobs.errors import MediaToolError, MediaToolTimeoutError
from mediajobs.tools.ffmpeg import (
    MediaTools,
    parse_duration,
    parse_whisper_json,
    run_tool,
    thumbnail_offset,
)


def write_script(path: Path, body: str) -> str:
    """Create an executable python script standing in for a media tool."""
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.mark.parametrize(
    "duration, expected",
    [
        (120.0, 3.0),
        (20.0, 2.0),
        (10.0, 1.0),
        (0.8, 0.5),
        (0.3, 0.15),
    ],
)
def test_thumbnail_offset(duration, expected):
    assert thumbnail_offset(duration) == pytest.approx(expected)


@pytest.mark.parametrize("duration", [0.2, 0.5, 0.6, 0.8, 1.0, 4.0, 3600.0])
def test_thumbnail_offset_stays_inside_media(duration):
    assert 0 < thumbnail_offset(duration) < duration


def test_thumbnail_offset_rejects_non_positive_duration():
    with pytest.raises(ValueError):
        thumbnail_offset(0)


def test_parse_duration():
    assert parse_duration("120.250000\n") == pytest.approx(120.25)


@pytest.mark.parametrize("output", ["", "N/A\n", "0.000000", "-3", "nan"])
def test_parse_duration_rejects_invalid_output(output):
    with pytest.raises(MediaToolError):
        parse_duration(output)


def test_parse_whisper_json_joins_segments():
    raw = '{"transcription": [{"text": " Hello"}, {"text": "  world. "}]}'

    assert parse_whisper_json(raw) == "Hello world."


def test_parse_whisper_json_falls_back_to_text_field():
    assert parse_whisper_json('{"text": "just text"}') == "just text"


def test_parse_whisper_json_rejects_garbage():
    with pytest.raises(MediaToolError):
        parse_whisper_json("not json")


@pytest.mark.asyncio
async def test_run_tool_returns_output():
    stdout, _ = await run_tool([sys.executable, "-c", "print('ok')"], timeout=10)

    assert stdout.strip() == "ok"


@pytest.mark.asyncio
async def test_run_tool_reports_nonzero_exit_with_stderr():
    script = "import sys; sys.stderr.write('moov atom not found'); sys.exit(1)"

    with pytest.raises(MediaToolError, match="moov atom not found"):
        await run_tool([sys.executable, "-c", script], timeout=10)


@pytest.mark.asyncio
async def test_run_tool_kills_process_on_timeout():
    with pytest.raises(MediaToolTimeoutError):
        await run_tool([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.2)


@pytest.mark.asyncio
async def test_run_tool_missing_executable():
    with pytest.raises(MediaToolError, match="spawn error"):
        await run_tool(["/nonexistent/ffprobe", "-v", "quiet"], timeout=1)


@pytest.mark.asyncio
async def test_probe_duration_parses_tool_output(tmp_path):
    ffprobe = write_script(tmp_path / "ffprobe", "print('42.5')\n")
    tools = MediaTools(ffprobe_path=ffprobe, timeout=10)

    assert await tools.probe_duration("https://cdn.test/a.mp4?token=x&expires=1") == 42.5


@pytest.mark.asyncio
async def test_extract_frame_requires_output_file(tmp_path):
    ffmpeg = write_script(tmp_path / "ffmpeg", "pass\n")
    tools = MediaTools(ffmpeg_path=ffmpeg, timeout=10)

    with pytest.raises(MediaToolError, match="thumbnail"):
        await tools.extract_frame("https://cdn.test/a.mp4", 3.0, tmp_path / "thumb.jpg")


@pytest.mark.asyncio
async def test_transcribe_reads_whisper_json(tmp_path):
    whisper = write_script(
        tmp_path / "whisper",
        "import json, sys\n"
        "base = sys.argv[sys.argv.index('-of') + 1]\n"
        "with open(base + '.json', 'w') as f:\n"
        "    json.dump({'transcription': [{'text': ' Hi'}, {'text': 'there '}]}, f)\n",
    )
    audio = tmp_path / "audio.wav"
    audio.write_bytes(b"RIFF")
    tools = MediaTools(
        whisper_cpp_path=whisper, whisper_model_path=str(tmp_path / "model.bin"), timeout=10
    )

    assert await tools.transcribe(audio) == "Hi there"


@pytest.mark.asyncio
async def test_transcribe_requires_configuration(tmp_path):
    with pytest.raises(MediaToolError, match="not configured"):
        await MediaTools().transcribe(tmp_path / "audio.wav")
