"""Installation records ("tabs") persisted inside each keg."""

from __future__ import annotations

import json
import os
import tempfile
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Iterable

from brewhouse.core.errors import SystemError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Formula
from brewhouse.formula.options import Options

log = get_logger(__name__)

FILENAME = "INSTALL_RECEIPT.json"


@dataclass
class Tab:
    """How, why and with which options a keg was installed."""

    source: dict[str, Any] = field(default_factory=lambda: {"path": None, "tap": None, "spec": "stable"})
    used_options: list[str] = field(default_factory=list)
    unused_options: list[str] = field(default_factory=list)
    runtime_dependencies: list[dict[str, str]] | None = None
    installed_as_dependency: bool = False
    installed_on_request: bool = False
    time: int | None = None
    poured_from_bottle: bool = False
    built_as_bottle: bool = False
    changed_files: list[str] = field(default_factory=list)
    arch: str | None = None
    aliases: list[str] = field(default_factory=list)
    tabfile: Path | None = field(default=None, compare=False, repr=False)

    @property
    def tap(self) -> str | None:
        return self.source.get("tap")

    @tap.setter
    def tap(self, value: str | None) -> None:
        self.source["tap"] = value

    @property
    def options(self) -> Options:
        return Options.from_names(self.used_options)

    @classmethod
    def from_file(cls, path: Path) -> Tab:
        data = json.loads(path.read_text())
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "tabfile"}
        tab = cls(**known)
        tab.tabfile = path
        return tab

    @classmethod
    def for_keg(cls, keg: Path) -> Tab:
        """Read the record of a keg, or an empty record bound to it."""
        path = keg / FILENAME
        if path.is_file():
            try:
                return cls.from_file(path)
            except (OSError, json.JSONDecodeError, TypeError):
                log.warning("tab_corrupted", path=str(path), exc_info=True)
        tab = cls()
        tab.tabfile = path
        return tab

    @classmethod
    def for_formula(cls, formula: Formula) -> Tab:
        """Read the record of the most relevant installed keg of a formula.

        Preference order: the linked keg, the keg of the current version,
        then the newest installed keg. An empty record is returned when
        nothing is installed.
        """
        candidates: list[Path] = []
        if formula.linked_keg.is_symlink():
            candidates.append(formula.linked_keg.resolve())
        candidates.append(formula.prefix)
        candidates.extend(reversed(formula.installed_prefixes()))

        for keg in candidates:
            if (keg / FILENAME).is_file():
                return cls.for_keg(keg)

        tab = cls()
        tab.unused_options = formula.options.names()
        tab.source["tap"] = formula.tap
        tab.source["path"] = str(formula.path) if formula.path else None
        return tab

    @staticmethod
    def runtime_deps_hash(formulae: Iterable[Formula]) -> list[dict[str, str]]:
        return [{"full_name": f.full_name, "version": f.pkg_version} for f in formulae]

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("tabfile")
        return data

    def write(self) -> None:
        """Atomically persist the record next to the keg contents."""
        if self.tabfile is None:
            raise SystemError("Cannot write an installation record without a location")
        if self.time is None:
            self.time = int(time.time())

        self.tabfile.parent.mkdir(parents=True, exist_ok=True)
        # Leftovers of an interrupted write.
        for stale in self.tabfile.parent.glob(".tab-*"):
            stale.unlink(missing_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.tabfile.parent, prefix=".tab-")
        try:
            with os.fdopen(fd, "w") as fh:
                json.dump(self.to_dict(), fh, indent=2, sort_keys=True)
            os.replace(tmp, self.tabfile)
        except OSError as e:
            Path(tmp).unlink(missing_ok=True)
            raise SystemError(
                "Failed to write installation record",
                context={"path": str(self.tabfile), "error": str(e)},
            ) from e
        log.debug("tab_written", path=str(self.tabfile))
