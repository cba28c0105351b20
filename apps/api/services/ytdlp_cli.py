"""Subprocess runner for the yt-dlp command line tool."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], Any]

# Per-line buffer; yt-dlp JSON output arrives as one long line.
STREAM_LIMIT_BYTES = 8 * 1024 * 1024


@dataclass
class ToolResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def error_text(self) -> str:
        if self.timed_out:
            return "process timed out"
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        # The last lines carry the actual ERROR message.
        tail = text.splitlines()[-5:]
        return "\n".join(tail) or f"exit code {self.returncode}"


ToolRunner = Callable[[Sequence[str], float, Optional[LineCallback]], Any]


async def _pump(stream: Optional[asyncio.StreamReader], sink: List[str], on_line: Optional[LineCallback]) -> None:
    if stream is None:
        return
    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip()
        sink.append(line)
        if on_line is not None:
            result = on_line(line)
            if inspect.isawaitable(result):
                await result


async def run_tool(
    cmd: Sequence[str],
    timeout_seconds: float,
    on_line: Optional[LineCallback] = None,
) -> ToolResult:
    """Run ``cmd`` and collect output, killing it if it exceeds ``timeout_seconds``.

    ``on_line`` receives each stdout line as it arrives (progress parsing).
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT_BYTES,
        )
    except FileNotFoundError as exc:
        logger.error("Executable not found for %s: %s", cmd[0] if cmd else "?", exc)
        return ToolResult(returncode=127, stderr=str(exc))

    stdout_lines: List[str] = []
    stderr_lines: List[str] = []
    try:
        await asyncio.wait_for(
            asyncio.gather(
                _pump(proc.stdout, stdout_lines, on_line),
                _pump(proc.stderr, stderr_lines, None),
                proc.wait(),
            ),
            timeout=timeout_seconds,
        )
    except asyncio.TimeoutError:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()
        logger.warning("%s timed out after %.0fs", cmd[0], timeout_seconds)
        return ToolResult(
            returncode=proc.returncode if proc.returncode is not None else -9,
            stdout="\n".join(stdout_lines),
            stderr="\n".join(stderr_lines),
            timed_out=True,
        )

    return ToolResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout="\n".join(stdout_lines),
        stderr="\n".join(stderr_lines),
    )
