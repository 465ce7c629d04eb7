from __future__ import annotations

import asyncio
import logging
import os
import subprocess  # nosec
import tempfile
from typing import Optional

logger = logging.getLogger("app.utils.media")


def probe_duration_file(file_path: str) -> Optional[float]:
    """Get media duration in seconds using ffprobe.

    Returns:
        Duration in seconds, or None if ffprobe could not read it
    """
    try:
        result = subprocess.run(  # nosec
            [
                "ffprobe",
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                file_path,
            ],
            capture_output=True,
            text=True,
            check=False,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Failed to get media duration for %s: %s", file_path, exc)
        return None
    output = result.stdout.strip()
    if result.returncode != 0 or not output:
        logger.warning(
            "ffprobe exited with %s for %s: %s", result.returncode, file_path, result.stderr.strip()
        )
        return None
    try:
        duration = float(output)
    except ValueError:
        logger.warning("Unexpected ffprobe output for %s: %r", file_path, output)
        return None
    if duration < 0:
        return None
    return duration


async def probe_duration(content: bytes, suffix: str = "") -> Optional[float]:
    """Write ``content`` to a temp file and probe it off the event loop."""
    fd, tmp_path = tempfile.mkstemp(suffix=suffix)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(content)
        return await asyncio.to_thread(probe_duration_file, tmp_path)
    finally:
        try:
            os.remove(tmp_path)
        except OSError:
            logger.debug("Temp file already removed: %s", tmp_path)
