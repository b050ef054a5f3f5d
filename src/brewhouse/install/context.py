"""Run-scoped state shared by a top-level install and its sub-installs."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.logging import get_logger
from brewhouse.formula.formulary import Formulary

if TYPE_CHECKING:
    from brewhouse.formula.tab import Tab
    from brewhouse.install.fetcher import ArtifactFetcher
    from brewhouse.install.isolation import IsolatedRunner
    from brewhouse.install.locks import LockCoordinator

log = get_logger(__name__)


@dataclass(frozen=True)
class InstallOptions:
    """Flags of one install request.

    `build_from_source_formulae` and `include_test_formulae` name the
    formulae the flags were requested for; dependencies that are not
    named are installed with their own defaults.
    """

    force_bottle: bool = False
    build_from_source: bool = False
    include_test: bool = False
    keep_tmp: bool = False
    interactive: bool = False
    build_bottle: bool = False
    installed_as_dependency: bool = False
    installed_on_request: bool = True
    force: bool = False
    verbose: bool = False
    debug: bool = False
    ignore_deps: bool = False
    cc: str | None = None
    options: tuple[str, ...] = ()
    build_from_source_formulae: frozenset[str] = frozenset()
    include_test_formulae: frozenset[str] = frozenset()

    def builds_from_source(self, name: str) -> bool:
        return name in self.build_from_source_formulae

    def includes_test(self, name: str) -> bool:
        """Whether test dependencies and requirements of `name` are wanted."""
        return self.include_test and name in self.include_test_formulae


@dataclass
class RunContext:
    """State owned by one top-level install call.

    Replaces process-wide registries: the attempted and installed sets,
    the lock holder, the messages shown after the run and the records
    produced so far all live here, and the context is discarded when the
    top-level call returns.
    """

    env: BrewhouseENV
    formulary: Formulary
    runner: IsolatedRunner
    fetcher: ArtifactFetcher
    locks: LockCoordinator
    attempted: set[str] = field(default_factory=set)
    installed: set[str] = field(default_factory=set)
    records: dict[str, Tab] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    requirement_messages: list[str] = field(default_factory=list)
    caveats: dict[str, str] = field(default_factory=dict)
    summaries: list[str] = field(default_factory=list)
    fetched: dict[str, Path] = field(default_factory=dict)
    _mutex: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def warn(self, message: str, **context) -> None:
        """Record a non-fatal degradation for the end-of-run summary."""
        with self._mutex:
            self.warnings.append(message)
        log.warning("install_warning", message=message, **context)

    def mark_attempted(self, name: str) -> None:
        with self._mutex:
            self.attempted.add(name)

    def was_attempted(self, name: str) -> bool:
        with self._mutex:
            return name in self.attempted

