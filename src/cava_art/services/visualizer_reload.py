"""Ask running cava instances to reload their colors (SIGUSR2)."""

from __future__ import annotations

import asyncio
import logging
import shutil
from contextlib import suppress

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_NAME = "cava"
RELOAD_SIGNAL = "USR2"


async def reload_visualizer(
    process_name: str = DEFAULT_PROCESS_NAME,
    *,
    timeout_s: float = 2.0,
) -> bool:
    """Signal every process named exactly `process_name`; True if any matched."""
    pkill = shutil.which("pkill")
    if pkill is None:
        logger.warning("pkill not found; cannot ask %s to reload", process_name)
        return False
    try:
        proc = await asyncio.create_subprocess_exec(
            pkill,
            f"-{RELOAD_SIGNAL}",
            "-x",
            process_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning("Could not launch pkill: %s", exc)
        return False
    try:
        returncode = await asyncio.wait_for(proc.wait(), timeout=timeout_s)
    except asyncio.TimeoutError:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        logger.warning("pkill did not finish within %.1fs", timeout_s)
        return False
    # pkill exits 1 when nothing matched.
    if returncode == 0:
        logger.debug("Sent SIG%s to %s", RELOAD_SIGNAL, process_name)
        return True
    if returncode == 1:
        logger.debug("No running %s process to reload", process_name)
    else:
        logger.warning("pkill exited with %d", returncode)
    return False
