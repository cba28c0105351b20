"""Ordered yt-dlp extraction strategies with fallback across player clients."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import yt_dlp

from config import settings
from services.best_effort import BestEffort, best_effort
from services.errors import ExtractionFailed
from services.ytdlp_cli import ToolResult, run_tool

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)
PROGRESS_PATTERN = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
MIN_OUTPUT_BYTES = 1024
METADATA_FIELDS = (
    "title",
    "description",
    "duration",
    "upload_date",
    "uploader",
    "channel_id",
    "channel_url",
    "view_count",
    "like_count",
    "thumbnail",
    "categories",
    "tags",
)
FORMAT_FIELDS = ("format_id", "ext", "height", "width", "fps", "vcodec", "acodec", "abr", "tbr")


@dataclass(frozen=True)
class ExtractionStrategy:
    """One attempt configuration: which client to emulate and how high to reach."""

    name: str
    player_client: Optional[str] = None
    max_height: Optional[int] = None
    use_cookies: bool = False
    user_agent: Optional[str] = None
    format: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractionStrategy":
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValueError("Extraction strategy requires a name")
        max_height = data.get("max_height")
        return cls(
            name=name,
            player_client=data.get("player_client") or None,
            max_height=int(max_height) if max_height else None,
            use_cookies=bool(data.get("use_cookies", False)),
            user_agent=data.get("user_agent") or None,
            format=data.get("format") or None,
        )


DEFAULT_STRATEGIES: tuple[ExtractionStrategy, ...] = (
    ExtractionStrategy("tv-cookies-2160", player_client="tv", max_height=2160, use_cookies=True),
    ExtractionStrategy("web-cookies-2160", player_client="web", max_height=2160, use_cookies=True),
    ExtractionStrategy("web-cookies-1080", player_client="web", max_height=1080, use_cookies=True),
    ExtractionStrategy("ios-1080", player_client="ios", max_height=1080),
    ExtractionStrategy("android-1080", player_client="android", max_height=1080),
    ExtractionStrategy("mweb-720", player_client="mweb", max_height=720),
    ExtractionStrategy("default-any", format="best"),
)


def load_strategies(raw: Optional[str] = None) -> List[ExtractionStrategy]:
    """Parse the configured strategy list, falling back to the built-in chain."""
    text = (settings.EXTRACTION_STRATEGIES if raw is None else raw) or ""
    if not text.strip():
        return list(DEFAULT_STRATEGIES)
    try:
        items = json.loads(text)
        strategies = [ExtractionStrategy.from_dict(item) for item in items]
    except (TypeError, ValueError) as exc:
        logger.error("Invalid EXTRACTION_STRATEGIES, using defaults: %s", exc)
        return list(DEFAULT_STRATEGIES)
    return strategies or list(DEFAULT_STRATEGIES)


@dataclass
class FormatSelection:
    video_format_id: str
    audio_format_id: Optional[str]
    height: int

    @property
    def muxed(self) -> bool:
        return self.audio_format_id is None

    def pinned(self) -> str:
        if self.audio_format_id:
            return f"{self.video_format_id}+{self.audio_format_id}"
        return self.video_format_id


def _has(codec: Any) -> bool:
    return bool(codec) and codec != "none"


def select_best_formats(formats: Sequence[Dict[str, Any]], max_height: Optional[int] = None) -> Optional[FormatSelection]:
    """Pick the best video(+audio) pair under ``max_height``.

    A muxed stream wins when it is at least as tall as the best video-only
    stream; otherwise the best video-only stream is paired with the highest
    bitrate audio-only stream. Ties prefer mp4 video and m4a audio.
    """
    muxed: List[Dict[str, Any]] = []
    video_only: List[Dict[str, Any]] = []
    audio_only: List[Dict[str, Any]] = []
    for fmt in formats or []:
        if not fmt.get("format_id"):
            continue
        has_video = _has(fmt.get("vcodec"))
        has_audio = _has(fmt.get("acodec"))
        height = int(fmt.get("height") or 0)
        if has_video and max_height and height > max_height:
            continue
        if has_video and has_audio and height:
            muxed.append(fmt)
        elif has_video and height:
            video_only.append(fmt)
        elif has_audio:
            audio_only.append(fmt)

    def video_rank(fmt: Dict[str, Any]):
        return (int(fmt.get("height") or 0), fmt.get("ext") == "mp4", float(fmt.get("tbr") or 0))

    def audio_rank(fmt: Dict[str, Any]):
        return (float(fmt.get("abr") or 0), fmt.get("ext") == "m4a")

    best_muxed = max(muxed, key=video_rank) if muxed else None
    best_video = max(video_only, key=video_rank) if video_only else None
    best_audio = max(audio_only, key=audio_rank) if audio_only else None

    if best_muxed and (best_video is None or video_rank(best_muxed)[0] >= video_rank(best_video)[0]):
        return FormatSelection(str(best_muxed["format_id"]), None, int(best_muxed.get("height") or 0))
    if best_video and best_audio:
        return FormatSelection(
            str(best_video["format_id"]),
            str(best_audio["format_id"]),
            int(best_video.get("height") or 0),
        )
    if best_muxed:
        return FormatSelection(str(best_muxed["format_id"]), None, int(best_muxed.get("height") or 0))
    return None


def generic_format_selector(strategy: ExtractionStrategy) -> str:
    if strategy.format:
        return strategy.format
    if strategy.max_height:
        h = strategy.max_height
        return (
            f"bv*[height<={h}][ext=mp4]+ba[ext=m4a]/"
            f"bv*[height<={h}]+ba/"
            f"b[height<={h}]/b"
        )
    return "bv*+ba/b"


def build_format_selector(strategy: ExtractionStrategy, formats: Sequence[Dict[str, Any]] = ()) -> str:
    """Pinned format ids from metadata first, then the generic selector."""
    generic = generic_format_selector(strategy)
    if strategy.format:
        return generic
    selection = select_best_formats(formats, strategy.max_height)
    if selection is None:
        return generic
    return f"{selection.pinned()}/{generic}"


def scratch_path(content_id: str, external_id: str, scratch_dir: Optional[str] = None) -> Path:
    root = Path(scratch_dir or settings.DOWNLOAD_SCRATCH_DIR)
    root.mkdir(parents=True, exist_ok=True)
    return root / f"{content_id}_{external_id}.mp4"


@dataclass
class ExtractionRequest:
    url: str
    content_id: str
    external_id: str
    output_path: Path
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    formats: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ExtractionOutcome:
    path: Path
    strategy: str
    attempts: List[str]


def _download_sections(start_time: Optional[int], end_time: Optional[int]) -> Optional[str]:
    if not start_time and not end_time:
        return None
    start = int(start_time or 0)
    end = str(int(end_time)) if end_time else "inf"
    return f"*{start}-{end}"


def build_command(
    strategy: ExtractionStrategy,
    request: ExtractionRequest,
    cookie_path: Optional[str] = None,
) -> List[str]:
    cmd = [
        settings.YTDLP_BINARY,
        "-f",
        build_format_selector(strategy, request.formats),
        "--merge-output-format",
        "mp4",
        "--no-playlist",
        "--progress",
        "--newline",
        "--force-overwrites",
        "--retries",
        str(settings.YTDLP_RETRIES),
        "--fragment-retries",
        str(settings.YTDLP_RETRIES),
        "--socket-timeout",
        str(settings.YTDLP_SOCKET_TIMEOUT_SECONDS),
        "--force-ipv4",
        "--geo-bypass",
        "--user-agent",
        strategy.user_agent or DEFAULT_USER_AGENT,
    ]
    if strategy.player_client:
        cmd += ["--extractor-args", f"youtube:player_client={strategy.player_client}"]
    if strategy.use_cookies and cookie_path:
        cmd += ["--cookies", cookie_path]
    if settings.YTDLP_PROXY:
        cmd += ["--proxy", settings.YTDLP_PROXY]
    sections = _download_sections(request.start_time, request.end_time)
    if sections:
        cmd += ["--download-sections", sections]
    cmd += ["-o", str(request.output_path), request.url]
    return cmd


def cleanup_partial_outputs(output_path: Path) -> None:
    """Remove the target file and yt-dlp intermediates (.part, .f137.mp4, ...)."""
    output_path = Path(output_path)
    if not output_path.parent.exists():
        return
    for candidate in output_path.parent.glob(f"{output_path.stem}*"):
        try:
            candidate.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove partial download %s", candidate)


def _output_ready(path: Path) -> bool:
    return path.exists() and path.stat().st_size > MIN_OUTPUT_BYTES


def _progress_handler(on_progress: Optional[Callable[[int], Any]]):
    last = {"value": -1}

    async def _handle(line: str) -> None:
        if on_progress is None:
            return
        match = PROGRESS_PATTERN.search(line)
        if not match:
            return
        value = int(float(match.group(1)))
        if value <= last["value"]:
            return
        last["value"] = value
        result = on_progress(value)
        if inspect.isawaitable(result):
            await result

    return _handle


async def run_extraction_chain(
    request: ExtractionRequest,
    strategies: Optional[Sequence[ExtractionStrategy]] = None,
    cookie_path: Optional[str] = None,
    on_progress: Optional[Callable[[int], Any]] = None,
    runner: Callable[..., Any] = run_tool,
) -> ExtractionOutcome:
    """Try each strategy in order until one produces the merged output file."""
    chain = list(strategies) if strategies is not None else load_strategies()
    have_cookies = bool(cookie_path) and Path(cookie_path).exists()
    attempts: List[str] = []
    last_error = "No extraction strategy could run"
    output_path = Path(request.output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    for strategy in chain:
        if strategy.use_cookies and not have_cookies:
            logger.info("Skipping strategy %s for %s: no cookie file", strategy.name, request.external_id)
            attempts.append(f"{strategy.name}: skipped (no cookies)")
            continue

        cleanup_partial_outputs(output_path)
        cmd = build_command(strategy, request, cookie_path if have_cookies else None)
        logger.info("Extracting %s with strategy %s", request.external_id, strategy.name)
        result: ToolResult = await runner(cmd, settings.YTDLP_TIMEOUT_SECONDS, _progress_handler(on_progress))

        if result.ok and _output_ready(output_path):
            attempts.append(f"{strategy.name}: ok")
            logger.info("Strategy %s succeeded for %s", strategy.name, request.external_id)
            return ExtractionOutcome(path=output_path, strategy=strategy.name, attempts=attempts)

        last_error = result.error_text() if not result.ok else "Output file missing after download"
        attempts.append(f"{strategy.name}: {last_error.splitlines()[-1] if last_error else 'failed'}")
        logger.warning("Strategy %s failed for %s: %s", strategy.name, request.external_id, last_error)

    cleanup_partial_outputs(output_path)
    raise ExtractionFailed(last_error, attempts)


def _summarize_info(info: Dict[str, Any]) -> Dict[str, Any]:
    metadata = {key: info.get(key) for key in METADATA_FIELDS if info.get(key) is not None}
    formats = [
        {key: fmt.get(key) for key in FORMAT_FIELDS}
        for fmt in (info.get("formats") or [])
        if fmt.get("format_id")
    ]
    return {"metadata": metadata, "formats": formats}


def _extract_info(url: str, cookie_path: Optional[str]) -> Dict[str, Any]:
    ydl_opts: Dict[str, Any] = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "noplaylist": True,
        "socket_timeout": settings.YTDLP_SOCKET_TIMEOUT_SECONDS,
    }
    if cookie_path and Path(cookie_path).exists():
        ydl_opts["cookiefile"] = cookie_path
    if settings.YTDLP_PROXY:
        ydl_opts["proxy"] = settings.YTDLP_PROXY
    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        info = ydl.extract_info(url, download=False)
    return _summarize_info(info or {})


async def fetch_video_metadata(url: str, cookie_path: Optional[str] = None) -> BestEffort[Dict[str, Any]]:
    """Descriptive metadata and available formats; empty on any failure."""

    async def _fetch() -> Dict[str, Any]:
        return await asyncio.wait_for(
            asyncio.to_thread(_extract_info, url, cookie_path),
            timeout=settings.METADATA_TIMEOUT_SECONDS,
        )

    return await best_effort("metadata fetch", _fetch, {"metadata": {}, "formats": []})
