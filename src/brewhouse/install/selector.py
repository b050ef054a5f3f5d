"""Bottle-pour versus build-from-source decisions."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import BuildToolsError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Formula
from brewhouse.formula.options import BuildOptions, Options
from brewhouse.install.context import InstallOptions

log = get_logger(__name__)


@dataclass(frozen=True)
class BottlePolicy:
    """Flags that steer the artifact choice for one formula."""

    force_bottle: bool = False
    build_from_source: bool = False
    build_bottle: bool = False
    interactive: bool = False
    cc: str | None = None
    pour_failed: bool = False


def bottle_decision(
    formula: Formula,
    options: Options,
    policy: BottlePolicy,
    cellar: Path | None = None,
) -> tuple[bool, str | None]:
    """Decide whether to pour a bottle, and why not when refusing.

    Forced flags are consulted before artifact availability. A pour that
    already failed this install always refuses, so the fallback to a
    source build cannot loop.

    Returns:
        (pour, reason) where reason explains a refusal, or is None.
    """
    if policy.pour_failed:
        return False, "bottle installation already failed"
    if policy.force_bottle:
        return True, None
    if policy.build_from_source:
        return False, "building from source was requested"
    if policy.build_bottle:
        return False, "a bottle is being built"
    if policy.interactive:
        return False, "interactive build requested"
    if formula.bottle is None:
        return False, "no bottle available"
    if policy.cc:
        return False, f"custom compiler {policy.cc} requested"
    if options:
        return False, f"options requested: {' '.join(options.as_flags())}"
    if formula.bottle_disabled:
        return False, "bottle disabled by the formula"
    if not formula.pour_bottle:
        return False, formula.pour_bottle_reason
    cellar = cellar if cellar is not None else formula.env.cellar
    if not formula.bottle.compatible_cellar(cellar):
        return False, f"the bottle needs a {formula.bottle.cellar} Cellar (yours is {cellar})"
    return True, None


def wants_bottle(
    formula: Formula,
    options: Options,
    policy: BottlePolicy,
    cellar: Path | None = None,
) -> bool:
    """Whether to pour a precompiled artifact for `formula`."""
    return bottle_decision(formula, options, policy, cellar)[0]


def install_bottle_for(formula: Formula, build: BuildOptions, install_options: InstallOptions) -> bool:
    """Artifact choice for a dependency, which never inherits forced flags."""
    if install_options.builds_from_source(formula.name):
        return False
    return wants_bottle(formula, build.used_options, BottlePolicy())


def build_tools_installed(env: BrewhouseENV) -> bool:
    """Whether every configured build tool is on PATH."""
    missing = [tool for tool in env.build_tools if shutil.which(tool) is None]
    if missing:
        log.debug("build_tools_missing", tools=missing)
    return not missing


def check_dependencies_bottled(
    root: Formula | None,
    root_pours: bool,
    deps: Iterable[tuple[Formula, bool]],
) -> None:
    """Fail once, naming every formula that would need a source build.

    Args:
        root: The requested formula.
        root_pours: Whether the root will be poured.
        deps: (formula, pours) for each planned dependency.

    Raises:
        BuildToolsError: If any formula needs a source build.
    """
    unbottled = []
    if root is not None and not root_pours and not root.bottle_unneeded:
        unbottled.append(root.full_name)
    for formula, pours in deps:
        if not pours and not formula.bottle_unneeded:
            unbottled.append(formula.full_name)
    if unbottled:
        log.error("build_tools_required", formulae=unbottled)
        raise BuildToolsError(unbottled)
