"""Data models for formulae and their dependency edges."""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from brewhouse.core.config import BrewhouseENV
from brewhouse.formula.options import BuildOptions, Options

if TYPE_CHECKING:
    from brewhouse.formula.requirements import Requirement


class DependencyTag(Enum):
    """Enumeration of dependency and requirement tags."""

    RUNTIME = "runtime"
    BUILD = "build"
    TEST = "test"
    OPTIONAL = "optional"
    RECOMMENDED = "recommended"


# Tags that survive a merge only when every merged edge carries them.
NARROWING_TAGS = (
    DependencyTag.BUILD,
    DependencyTag.TEST,
    DependencyTag.OPTIONAL,
    DependencyTag.RECOMMENDED,
)


@dataclass(frozen=True)
class Dependency:
    """Represents an edge from a dependent formula to a dependency.

    Equality is by (name, tags); the attached options do not take part.
    """

    name: str
    tags: frozenset[DependencyTag] = frozenset()
    options: Options = field(default_factory=Options)

    @property
    def build(self) -> bool:
        return DependencyTag.BUILD in self.tags

    @property
    def test(self) -> bool:
        return DependencyTag.TEST in self.tags

    @property
    def optional(self) -> bool:
        return DependencyTag.OPTIONAL in self.tags

    @property
    def recommended(self) -> bool:
        return DependencyTag.RECOMMENDED in self.tags

    @property
    def runtime(self) -> bool:
        return not (self.build or self.test)

    def prune_from_option(self, build: BuildOptions) -> bool:
        """Whether the dependent's build options switch this edge off."""
        if not (self.optional or self.recommended):
            return False
        return build.without(self.name)

    @staticmethod
    def merge_repeats(deps: Iterable[Dependency]) -> list[Dependency]:
        """Merge edges to the same name, unioning tags and options.

        The merged edge keeps the position of the first occurrence.
        Narrowing tags survive the union only when every merged edge
        carries them: a name needed at runtime by one edge is a runtime
        dependency.
        """
        grouped: dict[str, list[Dependency]] = {}
        for dep in deps:
            grouped.setdefault(dep.name, []).append(dep)

        result = []
        for name, group in grouped.items():
            tags: frozenset[DependencyTag] = frozenset().union(*(d.tags for d in group))
            for narrowing in NARROWING_TAGS:
                if not all(narrowing in d.tags for d in group):
                    tags -= {narrowing}
            options = Options()
            for d in group:
                options = options | d.options
            result.append(Dependency(name, tags, options))
        return result

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Dependency):
            return (self.name, self.tags) == (other.name, other.tags)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self.name, self.tags))

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class BottleSpec:
    """Precompiled artifact metadata for a formula."""

    cellar: str = ":any"
    rebuild: int = 0
    arch: str | None = None

    @property
    def skip_relocation(self) -> bool:
        return self.cellar == ":any_skip_relocation"

    def compatible_cellar(self, cellar: Path) -> bool:
        if self.cellar in (":any", ":any_skip_relocation"):
            return True
        return Path(self.cellar) == cellar


@dataclass(frozen=True, eq=False)
class Formula:
    """Immutable descriptor of an installable package.

    Path queries are answered against the bound environment, so the
    on-disk state is always read fresh while the descriptor is not.
    """

    name: str
    version: str
    env: BrewhouseENV = field(repr=False)
    revision: int = 0
    tap: str | None = None
    path: Path | None = None
    desc: str | None = None
    license: str | None = None
    deps: tuple[Dependency, ...] = ()
    requirements: tuple[Requirement, ...] = ()
    options: Options = field(default_factory=Options)
    bottle: BottleSpec | None = None
    bottle_disabled: bool = False
    bottle_unneeded: bool = False
    pour_bottle_reason: str | None = None
    conflicts: tuple[str, ...] = ()
    keg_only: bool = False
    deprecated: bool = False
    disabled: bool = False
    caveats: str | None = None
    link_overwrite_patterns: tuple[str, ...] = ()
    build_script: Path | None = None
    post_install_script: Path | None = None
    aliases: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        if self.tap and self.tap != "homebrew/core":
            return f"{self.tap}/{self.name}"
        return self.name

    @property
    def pkg_version(self) -> str:
        return f"{self.version}_{self.revision}" if self.revision else self.version

    @property
    def rack(self) -> Path:
        return self.env.cellar / self.name

    @property
    def prefix(self) -> Path:
        return self.rack / self.pkg_version

    @property
    def opt_prefix(self) -> Path:
        return self.env.opt / self.name

    @property
    def linked_keg(self) -> Path:
        return self.env.linked / self.name

    @property
    def logs(self) -> Path:
        return self.env.logs / self.name

    @property
    def bottled(self) -> bool:
        return self.bottle is not None

    @property
    def pour_bottle(self) -> bool:
        """False when the formula asks not to be poured on this system."""
        return self.pour_bottle_reason is None

    def installed_prefixes(self) -> list[Path]:
        if not self.rack.is_dir():
            return []
        return sorted(
            p for p in self.rack.iterdir()
            if p.is_dir() and not p.name.endswith(".tmp")
        )

    @property
    def latest_version_installed(self) -> bool:
        return self.prefix.is_dir() and any(self.prefix.iterdir())

    @property
    def any_version_installed(self) -> bool:
        return any(any(p.iterdir()) for p in self.installed_prefixes())

    @property
    def linked_version(self) -> str | None:
        if not self.linked_keg.is_symlink():
            return None
        return self.linked_keg.resolve().name

    @property
    def pinned(self) -> bool:
        return (self.env.pinned / self.name).is_symlink()

    @property
    def outdated(self) -> bool:
        return self.any_version_installed and not self.latest_version_installed

    def option_defined(self, name: str) -> bool:
        return name in self.options

    def link_overwrite(self, path: Path) -> bool:
        """Whether an existing non-keg file at `path` may be moved aside."""
        if not self.link_overwrite_patterns:
            return True
        try:
            rel = str(path.relative_to(self.env.prefix))
        except ValueError:
            return False
        return any(fnmatch.fnmatch(rel, pattern) for pattern in self.link_overwrite_patterns)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Formula):
            return self.full_name == other.full_name
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.full_name)

    def __str__(self) -> str:
        return self.full_name
