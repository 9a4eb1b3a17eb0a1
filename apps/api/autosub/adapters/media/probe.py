"""Video metadata probing."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import json
import logging
import math
from pathlib import Path
import subprocess

from autosub.errors import InvalidVideo

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MediaInfo:
    duration_seconds: float
    has_audio: bool


class MediaProbe(ABC):
    @abstractmethod
    async def probe(self, path: Path) -> MediaInfo:
        """Return duration and audio presence; raise ``InvalidVideo`` if unreadable."""


def _run(cmd: list[str], timeout: float) -> str:
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        logger.warning("media.probe_timed_out timeout_seconds=%s", timeout)
        raise InvalidVideo("Timed out inspecting the video file") from exc
    except OSError as exc:
        raise InvalidVideo("Could not inspect the video file") from exc
    if result.returncode != 0:
        logger.warning("media.probe_failed returncode=%s", result.returncode)
        raise InvalidVideo()
    return result.stdout.strip()


class FfprobeMediaProbe(MediaProbe):
    """Reads container duration and stream kinds through ``ffprobe``."""

    def __init__(self, binary: str = "ffprobe", timeout_seconds: float = 30.0) -> None:
        self._binary = binary
        self._timeout = timeout_seconds

    async def probe(self, path: Path) -> MediaInfo:
        out = await asyncio.to_thread(
            _run,
            [
                self._binary,
                "-v",
                "error",
                "-show_format",
                "-show_streams",
                "-of",
                "json",
                str(path),
            ],
            self._timeout,
        )
        return parse_ffprobe_output(out)


def parse_ffprobe_output(raw: str) -> MediaInfo:
    try:
        data = json.loads(raw or "{}")
    except ValueError as exc:
        raise InvalidVideo() from exc

    try:
        duration = float((data.get("format") or {}).get("duration", "nan"))
    except (TypeError, ValueError):
        duration = math.nan
    if not math.isfinite(duration):
        duration = 0.0

    streams = data.get("streams") or []
    has_audio = any(stream.get("codec_type") == "audio" for stream in streams)
    return MediaInfo(duration_seconds=duration, has_audio=has_audio)


__all__ = ["FfprobeMediaProbe", "MediaInfo", "MediaProbe", "parse_ffprobe_output"]
