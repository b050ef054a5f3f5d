"""Non-dependency prerequisites: platform versions, tools and runtimes."""

from __future__ import annotations

import platform
import re
import shutil
import subprocess
import sys
from typing import Any

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from brewhouse.core.logging import get_logger
from brewhouse.core.models import DependencyTag
from brewhouse.formula.options import BuildOptions

log = get_logger(__name__)


def _version_specifier(spec: str) -> SpecifierSet:
    """Translate `1.8+` / `1.8` style constraints into a SpecifierSet."""
    spec = spec.strip()
    if not spec:
        return SpecifierSet()
    if spec.endswith("+"):
        return SpecifierSet(f">={spec[:-1]}")
    if spec[0].isdigit():
        return SpecifierSet(f"=={spec}.*")
    return SpecifierSet(spec)


class Requirement:
    """A prerequisite that is checked but never installed.

    Subclasses implement `satisfied`. Tags follow dependency tags so a
    requirement can be build-only, test-only or optional.
    """

    default_message = "is required to install this formula."

    def __init__(
        self,
        name: str,
        tags: frozenset[DependencyTag] = frozenset(),
        fatal: bool = True,
        cask: str | None = None,
        download: str | None = None,
    ) -> None:
        self.name = name
        self.tags = tags
        self.fatal = fatal
        self.cask = cask
        self.download = download

    def satisfied(self) -> bool:
        raise NotImplementedError

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

    def prune_from_option(self, build: BuildOptions) -> bool:
        if not (self.optional or self.recommended):
            return False
        return build.without(self.name)

    @property
    def display_s(self) -> str:
        return self.name

    @property
    def suggestion(self) -> str:
        if self.cask:
            return f"You can install the {self.cask} cask first."
        if self.download:
            return f"You can download from:\n  {self.download}"
        return ""

    @property
    def message(self) -> str:
        text = f"{self.display_s} {self.default_message}"
        if self.suggestion:
            text = f"{text}\n{self.suggestion}"
        return text

    def _key(self) -> tuple:
        return (type(self).__name__, self.name, self.tags)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Requirement):
            return self._key() == other._key()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return self.display_s

    def __repr__(self) -> str:
        tags = sorted(t.value for t in self.tags)
        return f"#<{type(self).__name__}: {tags} {self.display_s!r}>"


class PlatformVersionRequirement(Requirement):
    """Requires a host platform, optionally bounded by version.

    Args:
        name: `macos` or `linux`.
        version: Version bound, or None for any version of the platform.
        comparator: `>=` for a minimum version, `<=` for a maximum.
    """

    PLATFORMS = {"macos": "darwin", "linux": "linux"}

    def __init__(
        self,
        name: str,
        version: str | None = None,
        comparator: str = ">=",
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.version = version
        self.comparator = comparator

    @staticmethod
    def current_version() -> str:
        if sys.platform == "darwin":
            return platform.mac_ver()[0] or "0"
        match = re.match(r"\d+(\.\d+)*", platform.release())
        return match.group(0) if match else "0"

    def _key(self) -> tuple:
        return (*super()._key(), self.version, self.comparator)

    def satisfied(self) -> bool:
        wanted = self.PLATFORMS.get(self.name)
        if wanted is not None and not sys.platform.startswith(wanted):
            return False
        if self.version is None:
            return True
        try:
            current = Version(self.current_version())
            bound = Version(self.version)
        except InvalidVersion:
            log.warning("platform_version_unparseable", requirement=self.name, version=self.version)
            return False
        return current <= bound if self.comparator == "<=" else current >= bound

    @property
    def display_s(self) -> str:
        if self.version is None:
            return self.name
        return f"{self.name} {self.comparator} {self.version}"

    @property
    def message(self) -> str:
        if self.version is None:
            return f"{self.name} is required for this software."
        if self.comparator == "<=":
            return f"This formula either does not compile or function as expected on {self.name} versions newer than {self.version}."
        return f"{self.name} {self.version} or newer is required for this software."


class ExecutableRequirement(Requirement):
    """Requires an executable on PATH."""

    def __init__(self, name: str, executable: str | None = None, **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.executable = executable or name

    def satisfied(self) -> bool:
        return shutil.which(self.executable) is not None


class LanguageRuntimeRequirement(ExecutableRequirement):
    """Requires a language runtime executable, optionally of a version.

    The version is probed by running the executable with `version_arg` and
    matching the first dotted number in its combined output.
    """

    def __init__(
        self,
        name: str,
        version: str | None = None,
        executable: str | None = None,
        version_arg: str = "-version",
        **kwargs: Any,
    ) -> None:
        super().__init__(name, executable=executable, **kwargs)
        self.version = version
        self.version_arg = version_arg

    def installed_version(self) -> str | None:
        path = shutil.which(self.executable)
        if path is None:
            return None
        try:
            proc = subprocess.run(
                [path, self.version_arg], capture_output=True, text=True, timeout=30
            )
        except (OSError, subprocess.TimeoutExpired):
            log.warning("runtime_probe_failed", requirement=self.name, executable=path)
            return None
        match = re.search(r"(\d+(?:\.\d+)+)", proc.stdout + proc.stderr)
        return match.group(1) if match else None

    def satisfied(self) -> bool:
        if not self.version:
            return super().satisfied()
        found = self.installed_version()
        if found is None:
            return False
        try:
            return Version(found) in _version_specifier(self.version)
        except (InvalidVersion, InvalidSpecifier):
            return False

    @property
    def display_s(self) -> str:
        if not self.version:
            return self.name
        if self.version.endswith("+"):
            return f"{self.name} >= {self.version[:-1]}"
        return f"{self.name} = {self.version}"

    @property
    def message(self) -> str:
        version = f" {self.version}" if self.version else ""
        text = f"{self.name.capitalize()}{version} is required to install this formula."
        if self.suggestion:
            text = f"{text}\n{self.suggestion}"
        return text


_RUNTIMES = {"java", "python", "ruby", "node", "perl"}


def requirement_from_dict(data: dict[str, Any]) -> Requirement:
    """Build a Requirement from a formula descriptor entry."""
    name = data["name"]
    tags = frozenset(DependencyTag(c) for c in data.get("contexts", []) if c in DependencyTag._value2member_map_)
    common = {
        "tags": tags,
        "fatal": data.get("fatal", True),
        "cask": data.get("cask"),
        "download": data.get("download"),
    }

    if name in PlatformVersionRequirement.PLATFORMS or name.startswith("maximum"):
        platform_name = name.removeprefix("maximum")
        comparator = "<=" if name.startswith("maximum") else data.get("comparator", ">=")
        return PlatformVersionRequirement(platform_name, version=data.get("version"), comparator=comparator, **common)
    if name in _RUNTIMES or data.get("kind") == "runtime":
        return LanguageRuntimeRequirement(
            name,
            version=data.get("version"),
            executable=data.get("executable"),
            version_arg=data.get("version_arg", "-version"),
            **common,
        )
    return ExecutableRequirement(name, executable=data.get("executable"), **common)
