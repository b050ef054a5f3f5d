"""Asynchronous child process execution with timeout."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Mapping, Optional

from brewhouse.core.errors import CommandTimeoutError
from brewhouse.core.logging import get_logger

log = get_logger(__name__)

ENV_OVERRIDES = {
    "LANG": "C",
    "HOMEBREW_NO_COLOR": "1",
}


async def run_capture(
    *cmd: str,
    timeout: Optional[float] = None,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously with optional timeout.

    Args:
        *cmd: Command and its arguments to run.
        timeout: Timeout in seconds, or None to wait indefinitely.
        cwd: Working directory of the child process.
        env: Complete environment of the child process. ENV_OVERRIDES
            are applied on top of it.

    Returns:
        A tuple of (stdout, stderr, returncode).

    Raises:
        CommandTimeoutError: If the command times out.
    """
    start = time.perf_counter()
    log.debug("command_start", command=" ".join(cmd), timeout=timeout, cwd=str(cwd) if cwd else None)

    child_env = None
    if env is not None:
        child_env = {**env, **ENV_OVERRIDES}

    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd) if cwd else None,
        env=child_env,
    )

    try:
        out, err = await asyncio.wait_for(process.communicate(), timeout)
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "command_complete",
            command=" ".join(cmd),
            returncode=process.returncode,
            duration_ms=duration_ms
        )

    except asyncio.TimeoutError as e:
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.error(
            "command_timeout",
            command=" ".join(cmd),
            timeout=timeout,
            duration_ms=duration_ms
        )
        try:
            process.kill()
        finally:
            raise CommandTimeoutError(
                command=" ".join(cmd),
                timeout=timeout,
                context={"duration_ms": duration_ms},
            ) from e

    return (
        out.decode(errors="replace").strip(),
        err.decode(errors="replace").strip(),
        process.returncode,
    )
