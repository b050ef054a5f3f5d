"""Isolated execution of build and post-install scripts."""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import BuildError
from brewhouse.core.logging import get_logger
from brewhouse.core.shell import run_capture

log = get_logger(__name__)

# Variables passed through from the caller's environment; everything else
# is dropped so each child starts from a pristine environment.
PASSTHROUGH_ENV = ("PATH", "HOME", "USER", "LOGNAME", "SHELL", "TMPDIR", "TERM")


@dataclass(frozen=True)
class ExitStatus:
    """Outcome of one isolated run."""

    returncode: int
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        return self.returncode == 0


class IsolatedRunner(Protocol):
    """Runs a script in a separate process.

    The caller only sees the exit status and where the output went.
    """

    def run(
        self,
        script: Path,
        args: Sequence[str],
        *,
        cwd: Path,
        sandbox: bool,
        log_path: Path | None = None,
    ) -> ExitStatus:
        ...


class SubprocessRunner:
    """Runs scripts as child processes with a scrubbed environment.

    Args:
        env: Brewhouse environment; its prefix and cellar are exported to
            the child and its sandbox command, if any, wraps sandboxed runs.
        timeout: Seconds before the child is killed, or None.
    """

    def __init__(self, env: BrewhouseENV, timeout: float | None = None) -> None:
        self.env = env
        self.timeout = timeout

    def child_env(self) -> dict[str, str]:
        child = {k: os.environ[k] for k in PASSTHROUGH_ENV if k in os.environ}
        child["BREWHOUSE_PREFIX"] = str(self.env.prefix)
        child["BREWHOUSE_CELLAR"] = str(self.env.cellar)
        return child

    def command(self, script: Path, args: Sequence[str], sandbox: bool) -> list[str]:
        cmd = [str(script), *args]
        if not os.access(script, os.X_OK):
            cmd = ["/bin/sh", *cmd]
        if sandbox and self.env.sandbox_command:
            cmd = [*self.env.sandbox_command, *cmd]
        return ["nice", *cmd]

    def run(
        self,
        script: Path,
        args: Sequence[str],
        *,
        cwd: Path,
        sandbox: bool,
        log_path: Path | None = None,
    ) -> ExitStatus:
        if not script.is_file():
            raise BuildError(
                script.stem,
                message=f"Script not found: {script}",
                context={"script": str(script)},
            )

        cmd = self.command(script, args, sandbox)
        start = time.perf_counter()
        out, err, code = asyncio.run(
            run_capture(*cmd, timeout=self.timeout, cwd=cwd, env=self.child_env())
        )
        duration_ms = int((time.perf_counter() - start) * 1000)

        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text("\n".join(part for part in (" ".join(cmd), out, err) if part) + "\n")

        log.info(
            "isolated_run_complete",
            script=str(script),
            returncode=code,
            sandbox=sandbox,
            log=str(log_path) if log_path else None,
            duration_ms=duration_ms,
        )
        return ExitStatus(code, log_path)
