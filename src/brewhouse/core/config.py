"""Configuration module for the Brewhouse environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(item for item in raw.replace(",", " ").split() if item)


@dataclass
class BrewhouseENV:
    """Configuration for the Brewhouse environment."""
    prefix: Path
    cellar: Path
    cache: Path
    taps: Path
    logs: Path
    temp: Path
    developer: bool = False
    no_bottle_source_fallback: bool = False
    forbidden_licenses: tuple[str, ...] = ()
    build_tools: tuple[str, ...] = ("cc", "make")
    bottle_dependencies: tuple[str, ...] = ()
    relocation_formulae: tuple[str, ...] = ()
    sandbox_command: tuple[str, ...] = ()
    fetch_retries: int = 3
    fetch_retry_delay: float = 1.0
    inheritable_options: frozenset[str] = field(default_factory=lambda: frozenset({"universal"}))

    @property
    def opt(self) -> Path:
        return self.prefix / "opt"

    @property
    def linked(self) -> Path:
        """Directory of `<name> -> keg` records for linked kegs."""
        return self.prefix / "var" / "homebrew" / "linked"

    @property
    def pinned(self) -> Path:
        return self.prefix / "var" / "homebrew" / "pinned"

    @property
    def locks(self) -> Path:
        return self.prefix / "var" / "homebrew" / "locks"

    @property
    def backup(self) -> Path:
        """Side directory for files moved away during linking."""
        return self.cache / "Backup"


_DEF_HOME = Path.home() / ".brewhouse"


def discover_env() -> BrewhouseENV:
    """Discover Brewhouse environment based on system settings."""
    prefix = Path(os.environ.get("BREWHOUSE_PREFIX", "/usr/local/brewhouse"))
    cellar = Path(os.environ.get("BREWHOUSE_CELLAR", prefix / "Cellar"))
    cache = Path(os.environ.get("BREWHOUSE_CACHE", _DEF_HOME / "cache"))
    taps = Path(os.environ.get("BREWHOUSE_TAPS", prefix / "Library" / "Taps"))
    logs = Path(os.environ.get("BREWHOUSE_LOGS", _DEF_HOME / "logs"))
    temp = Path(os.environ.get("BREWHOUSE_TEMP", os.environ.get("TMPDIR", "/tmp")))

    try:
        fetch_retries = int(os.environ.get("BREWHOUSE_FETCH_RETRIES", "3"))
    except ValueError:
        fetch_retries = 3

    return BrewhouseENV(
        prefix=prefix,
        cellar=cellar,
        cache=cache,
        taps=taps,
        logs=logs,
        temp=temp,
        developer=_env_flag("BREWHOUSE_DEVELOPER"),
        no_bottle_source_fallback=_env_flag("BREWHOUSE_NO_BOTTLE_SOURCE_FALLBACK"),
        forbidden_licenses=_env_list("BREWHOUSE_FORBIDDEN_LICENSES"),
        build_tools=_env_list("BREWHOUSE_BUILD_TOOLS", ("cc", "make")),
        bottle_dependencies=_env_list("BREWHOUSE_BOTTLE_DEPENDENCIES"),
        relocation_formulae=_env_list("BREWHOUSE_RELOCATION_FORMULAE"),
        sandbox_command=tuple(os.environ.get("BREWHOUSE_SANDBOX_COMMAND", "").split()),
        fetch_retries=max(fetch_retries, 1),
    )


Brewhouse = discover_env()
