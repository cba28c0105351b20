"""ffprobe helpers for describing a downloaded file."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import ffmpeg

from services.best_effort import BestEffort, best_effort

logger = logging.getLogger(__name__)


def _parse_fps(rate: Optional[str]) -> Optional[float]:
    if not rate or rate in {"0/0", "0"}:
        return None
    try:
        if "/" in rate:
            num, den = rate.split("/", 1)
            return round(float(num) / float(den), 2) if float(den) else None
        return round(float(rate), 2)
    except ValueError:
        return None


def _size_fields(path: Path) -> Dict[str, Any]:
    size = path.stat().st_size if path.exists() else 0
    return {"filesize": size, "filesize_mb": round(size / (1024 * 1024), 2)}


def default_format(path: Path) -> Dict[str, Any]:
    """Format record used when probing is unavailable."""
    return {
        "resolution": "1920x1080",
        "width": 1920,
        "height": 1080,
        "fps": None,
        "vcodec": None,
        "acodec": None,
        "ext": "mp4",
        "format": "1920x1080 (assumed)",
        "is_4k": False,
        **_size_fields(Path(path)),
    }


def describe_probe(probe: Dict[str, Any], path: Path) -> Dict[str, Any]:
    streams = probe.get("streams", [])
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video is None:
        raise ValueError(f"No video stream found in {path}")
    width = int(video.get("width") or 0)
    height = int(video.get("height") or 0)
    return {
        "resolution": f"{width}x{height}",
        "width": width,
        "height": height,
        "fps": _parse_fps(video.get("avg_frame_rate") or video.get("r_frame_rate")),
        "vcodec": video.get("codec_name"),
        "acodec": audio.get("codec_name") if audio else None,
        "ext": Path(path).suffix.lstrip(".") or "mp4",
        "format": f"{width}x{height} {video.get('codec_name') or ''}".strip(),
        "is_4k": height >= 2160,
        **_size_fields(Path(path)),
    }


def _probe(path: Path) -> Dict[str, Any]:
    try:
        return describe_probe(ffmpeg.probe(str(path)), path)
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
        raise RuntimeError(f"ffprobe failed: {stderr.strip()}") from e


async def probe_downloaded_format(path: Path) -> BestEffort[Dict[str, Any]]:
    """Width, height and codecs of ``path``; assumes 1080p mp4 if ffprobe fails."""
    path = Path(path)

    async def _run() -> Dict[str, Any]:
        return await asyncio.to_thread(_probe, path)

    return await best_effort("format probe", _run, default_format(path))
