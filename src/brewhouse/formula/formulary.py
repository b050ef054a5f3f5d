"""Formula descriptor loading."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Iterable

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import FormulaUnavailableError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import BottleSpec, Dependency, DependencyTag, Formula
from brewhouse.formula.options import Option, Options
from brewhouse.formula.requirements import requirement_from_dict

log = get_logger(__name__)

DEPENDENCY_KEYS = {
    "dependencies": frozenset(),
    "build_dependencies": frozenset({DependencyTag.BUILD}),
    "test_dependencies": frozenset({DependencyTag.TEST}),
    "optional_dependencies": frozenset({DependencyTag.OPTIONAL}),
    "recommended_dependencies": frozenset({DependencyTag.RECOMMENDED}),
}


def _script(base: Path | None, value: str | None) -> Path | None:
    if not value:
        return None
    path = Path(value)
    if not path.is_absolute() and base is not None:
        path = base / path
    return path


def formula_from_dict(data: dict[str, Any], env: BrewhouseENV, path: Path | None = None) -> Formula:
    """Build a Formula from a `brew info --json=v2` shaped descriptor.

    Args:
        data: The descriptor.
        env: Environment the formula's paths resolve against.
        path: File the descriptor was read from; relative script paths
            resolve against its directory.

    Returns:
        The Formula.
    """
    base = path.parent if path else None
    dep_options = data.get("dependency_options", {})

    deps: list[Dependency] = []
    for key, tags in DEPENDENCY_KEYS.items():
        for name in data.get(key, []):
            deps.append(Dependency(name, tags, Options.from_names(dep_options.get(name, []))))

    options = Options(
        Option.parse(o["option"], o.get("description", "")) for o in data.get("options", [])
    )
    # Optional and recommended dependencies declare their switch implicitly.
    for dep in deps:
        if dep.optional:
            options.add(Option(f"with-{dep.name}", f"Build with {dep.name} support"))
        elif dep.recommended:
            options.add(Option(f"without-{dep.name}", f"Build without {dep.name} support"))

    requirements = tuple(requirement_from_dict(r) for r in data.get("requirements", []))
    for req in requirements:
        if req.optional:
            options.add(Option(f"with-{req.name}"))
        elif req.recommended:
            options.add(Option(f"without-{req.name}"))

    bottle = None
    stable_bottle = (data.get("bottle") or {}).get("stable")
    if stable_bottle:
        bottle = BottleSpec(
            cellar=str(stable_bottle.get("cellar", ":any")),
            rebuild=int(stable_bottle.get("rebuild", 0)),
            arch=stable_bottle.get("arch"),
        )

    versions = data.get("versions", {})
    version = versions.get("stable") or data.get("version")
    if not version:
        raise FormulaUnavailableError(
            f"Formula descriptor for '{data.get('name')}' has no version",
            formula=data.get("name"),
        )

    return Formula(
        name=data["name"],
        version=str(version),
        env=env,
        revision=int(data.get("revision", 0)),
        tap=data.get("tap"),
        path=path,
        desc=data.get("desc"),
        license=data.get("license"),
        deps=tuple(deps),
        requirements=requirements,
        options=options,
        bottle=bottle,
        bottle_disabled=bool(data.get("bottle_disabled", False)),
        bottle_unneeded=bool(data.get("bottle_unneeded", False)),
        pour_bottle_reason=data.get("pour_bottle_only_if"),
        conflicts=tuple(c if isinstance(c, str) else c["name"] for c in data.get("conflicts_with", [])),
        keg_only=bool(data.get("keg_only", False)),
        deprecated=bool(data.get("deprecated", False)),
        disabled=bool(data.get("disabled", False)),
        caveats=data.get("caveats"),
        link_overwrite_patterns=tuple(data.get("link_overwrite", [])),
        build_script=_script(base, data.get("build_script")),
        post_install_script=_script(base, data.get("post_install_script")),
        aliases=tuple(data.get("aliases", [])),
    )


class Formulary:
    """Resolves formula names to descriptors.

    Descriptors are `<name>.json` files found under the search paths
    (each tap directory, or its `Formula/` subdirectory). A formula is
    loaded once per Formulary, so the same name always yields the same
    object within one invocation.
    """

    def __init__(self, env: BrewhouseENV, search_paths: Iterable[Path] | None = None) -> None:
        self.env = env
        self.search_paths = list(search_paths) if search_paths is not None else self._tap_paths()
        self._loaded: dict[str, Formula] = {}

    def _tap_paths(self) -> list[Path]:
        if not self.env.taps.is_dir():
            return []
        paths = []
        for user in sorted(self.env.taps.iterdir()):
            if user.is_dir():
                paths.extend(sorted(p for p in user.iterdir() if p.is_dir()))
        return paths

    def _find(self, name: str) -> Path | None:
        short = name.rsplit("/", 1)[-1]
        tap = name.rsplit("/", 1)[0] if "/" in name else None
        for base in self.search_paths:
            if tap and not str(base).endswith(tap):
                continue
            for candidate in (base / f"{short}.json", base / "Formula" / f"{short}.json"):
                if candidate.is_file():
                    return candidate
        return None

    def resolve(self, name: str) -> Formula:
        """Load a formula descriptor by name.

        Raises:
            FormulaUnavailableError: If no tap provides the name or the
                descriptor cannot be parsed.
        """
        short = name.rsplit("/", 1)[-1]
        if short in self._loaded:
            return self._loaded[short]

        start = time.perf_counter()
        path = self._find(name)
        if path is None:
            log.error("formula_not_found", formula=name)
            raise FormulaUnavailableError(formula=name)

        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            log.error("formula_unreadable", formula=name, path=str(path), error=str(e))
            raise FormulaUnavailableError(
                f"Formula '{name}' could not be read",
                formula=name,
                context={"path": str(path), "error": str(e)},
            ) from e

        formula = formula_from_dict(data, self.env, path)
        self._loaded[short] = formula

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.debug("formula_loaded", formula=name, path=str(path), duration_ms=duration_ms)
        return formula

    def register(self, formula: Formula) -> Formula:
        """Make an in-memory formula resolvable."""
        self._loaded[formula.name] = formula
        return formula

    def to_formula(self, dep: Dependency, dependent: Formula | None = None) -> Formula:
        try:
            return self.resolve(dep.name)
        except FormulaUnavailableError as e:
            if dependent is not None:
                raise e.with_context(dependent=dependent.full_name)
            raise
