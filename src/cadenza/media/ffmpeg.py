"""ffmpeg / ffprobe wrappers run as asyncio subprocesses."""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from typing import Optional, Sequence

from cadenza.core.exceptions import MediaCompileError

logger = logging.getLogger(__name__)


class FfmpegCompiler:
    """IMediaCompiler shelling out to the ffmpeg binaries on PATH.

    Sources may be local paths or URLs; ffmpeg reads both.
    """

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe") -> None:
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe

    async def _run(self, command: str, args: Sequence[str], log_prefix: str) -> str:
        logger.debug("%s: Executing: %s %s", log_prefix, command, " ".join(shlex.quote(a) for a in args))
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise MediaCompileError(f"{log_prefix}: cannot start {command}: {exc}") from exc

        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        elapsed = time.monotonic() - start

        if process.returncode != 0:
            logger.error("%s: %s exited with %s (%.3fs)", log_prefix, command, process.returncode, elapsed)
            tail = stderr.splitlines()[-1] if stderr else "no stderr"
            raise MediaCompileError(f"{log_prefix}: {command} failed: {tail}")
        logger.debug("%s: done (%.3fs)", log_prefix, elapsed)
        return stdout

    async def probe_duration(self, source: str) -> float:
        stdout = await self._run(
            self._ffprobe,
            ["-v", "error", "-show_entries", "format=duration", "-of", "default=noprint_wrappers=1:nokey=1", source],
            "FFprobe",
        )
        try:
            return float(stdout.splitlines()[0])
        except (IndexError, ValueError) as exc:
            raise MediaCompileError(f"FFprobe: no duration for {source}") from exc

    async def concat_videos(self, sources: Sequence[str], output_path: str) -> None:
        """Join clips end to end, video only."""
        if not sources:
            raise MediaCompileError("Concat: no input clips")
        args: list[str] = ["-y"]
        for source in sources:
            args += ["-i", source]
        inputs = "".join(f"[{i}:v]" for i in range(len(sources)))
        args += [
            "-filter_complex", f"{inputs}concat=n={len(sources)}:v=1:a=0[outv]",
            "-map", "[outv]",
            output_path,
        ]
        await self._run(self._ffmpeg, args, "Concat")

    async def add_audio(
        self, video_path: str, audio_source: str, output_path: str, duration: Optional[float] = None
    ) -> None:
        args = [
            "-y",
            "-i", video_path,
            "-i", audio_source,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-c:v", "copy",
            "-c:a", "aac",
        ]
        if duration is not None:
            args += ["-t", f"{duration:g}"]
        args.append(output_path)
        await self._run(self._ffmpeg, args, "AddAudio")
