"""Dependency graph expansion into an ordered installation plan."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Hashable, Iterable, Union

from brewhouse.core.errors import CircularDependencyError, UnsatisfiedPinnedDependency
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Dependency, Formula
from brewhouse.formula.formulary import Formulary
from brewhouse.formula.options import BuildOptions, Options
from brewhouse.formula.tab import Tab
from brewhouse.install.context import InstallOptions
from brewhouse.install.selector import install_bottle_for

log = get_logger(__name__)


@dataclass(frozen=True)
class Include:
    """Install the dependency with these options and expand it."""
    options: Options = field(default_factory=Options)


@dataclass(frozen=True)
class Skip:
    """Already satisfied: leave it out of the plan but expand it."""


@dataclass(frozen=True)
class Prune:
    """Drop the edge and everything below it."""


Action = Union[Include, Skip, Prune]
Visitor = Callable[[Formula, Dependency], Action]


@dataclass
class PlanEntry:
    dependency: Dependency
    options: Options

    @property
    def name(self) -> str:
        return self.dependency.name


def expand(
    formula: Formula,
    formulary: Formulary,
    visitor: Visitor,
    deps: Iterable[Dependency] | None = None,
    walk_key: Callable[[Formula], Hashable] | None = None,
) -> list[Dependency]:
    """Expand the dependency closure of `formula`.

    Every edge is offered to `visitor`. Included and skipped nodes are
    expanded further; a node is walked again only when `walk_key` reports
    a different value than at its previous walk. The result contains each
    included name once, merged across edges, in an order where every
    dependency precedes its dependents.

    Raises:
        CircularDependencyError: If an edge leads back onto the current
            path, naming the full cycle.
    """
    key = walk_key or (lambda f: None)
    path: list[str] = [formula.name]
    walked: dict[str, Hashable] = {}
    edges: dict[str, list[str]] = defaultdict(list)
    included: dict[str, list[Dependency]] = defaultdict(list)

    def walk(dependent: Formula, children: Iterable[Dependency]) -> None:
        for dep in children:
            if dep.name in path:
                cycle = path[path.index(dep.name):] + [dep.name]
                log.error("circular_dependency", formula=formula.name, cycle=cycle)
                raise CircularDependencyError(cycle)

            action = visitor(dependent, dep)
            if isinstance(action, Prune):
                continue

            if dep.name not in edges[dependent.name]:
                edges[dependent.name].append(dep.name)
            if isinstance(action, Include):
                included[dep.name].append(dep)

            dep_formula = formulary.to_formula(dep, dependent)
            marker = key(dep_formula)
            if dep.name in walked and walked[dep.name] == marker:
                continue
            walked[dep.name] = marker
            path.append(dep.name)
            try:
                walk(dep_formula, dep_formula.deps)
            finally:
                path.pop()

    walk(formula, formula.deps if deps is None else deps)

    order: list[str] = []
    seen: set[str] = set()

    def post_order(name: str) -> None:
        if name in seen:
            return
        seen.add(name)
        for child in edges.get(name, []):
            post_order(child)
        if name in included:
            order.append(name)

    post_order(formula.name)
    return [Dependency.merge_repeats(included[name])[0] for name in order]


def find_cycle(formula: Formula, formulary: Formulary) -> list[Dependency]:
    """Walk the full, unpruned closure; raise on any cycle.

    Returns:
        Every recursive dependency of `formula`.
    """
    return expand(formula, formulary, lambda dependent, dep: Include(dep.options))


class DependencyExpander:
    """Builds the installation plan for one requested formula.

    Args:
        formula: The root formula.
        formulary: Resolves dependency names.
        install_options: Flags of the request.
        options: Options requested for the root.
        pour_bottle: Whether the root itself will be poured.
    """

    def __init__(
        self,
        formula: Formula,
        formulary: Formulary,
        install_options: InstallOptions,
        options: Options,
        pour_bottle: bool,
    ) -> None:
        self.formula = formula
        self.formulary = formulary
        self.install_options = install_options
        self.options = options
        self.pour_bottle = pour_bottle
        self.env = formula.env
        self.inherited: dict[str, Options] = defaultdict(Options)
        self._pours_somewhere = pour_bottle

    def effective_build_options_for(self, dependent: Formula, inherited: Options | None = None) -> BuildOptions:
        """Options in effect for `dependent`: requested or inherited, plus recorded."""
        args = self.options if dependent == self.formula else (inherited or Options())
        args = args | Tab.for_formula(dependent).options
        return BuildOptions(args, dependent.options)

    def inherited_options_for(self, dep: Dependency) -> Options:
        """Options a dependency receives from its edge and from the root request."""
        inherited = Options(dep.options)
        if dep.build:
            return inherited
        dep_formula = self.formulary.to_formula(dep)
        for name in sorted(self.env.inheritable_options):
            if name in self.options and dep_formula.option_defined(name):
                inherited.add(name)
        return inherited

    def install_bottle_for(self, dependent: Formula, build: BuildOptions) -> bool:
        if dependent == self.formula:
            return self.pour_bottle
        return install_bottle_for(dependent, build, self.install_options)

    def keeps_build_test(self, item: Dependency, dependent: Formula, build: BuildOptions) -> bool:
        """Whether a build/test tagged edge is needed for this run."""
        if item.test and self.install_options.includes_test(dependent.name):
            return True
        if item.build and not self.install_bottle_for(dependent, build):
            return not dependent.latest_version_installed
        return False

    def satisfied(self, dep: Dependency, inherited: Options) -> bool:
        """Installed at the current version with every required option."""
        dep_formula = self.formulary.to_formula(dep)
        if not dep_formula.latest_version_installed:
            return False
        required = (dep.options | inherited) & dep_formula.options
        missing = required - Tab.for_formula(dep_formula).options
        return not missing

    def visit(self, dependent: Formula, dep: Dependency) -> Action:
        self.inherited[dep.name] = self.inherited[dep.name] | self.inherited_options_for(dep)
        build = self.effective_build_options_for(dependent, self.inherited.get(dependent.name))

        if dep.prune_from_option(build):
            return Prune()
        if (dep.build or dep.test) and not self.keeps_build_test(dep, dependent, build):
            return Prune()
        if self.satisfied(dep, self.inherited[dep.name]):
            return Skip()

        dep_formula = self.formulary.to_formula(dep, dependent)
        dep_build = self.effective_build_options_for(dep_formula, self.inherited[dep.name])
        if install_bottle_for(dep_formula, dep_build, self.install_options):
            self._pours_somewhere = True
        return Include(self.inherited[dep.name])

    def _walk_key(self, formula: Formula) -> Hashable:
        return frozenset(self.inherited[formula.name].names())

    def recursive_dependencies(self) -> list[Dependency]:
        return find_cycle(self.formula, self.formulary)

    def supplement_names(self) -> tuple[str, ...]:
        """Formulae added to the plan when anything in it is poured."""
        bottle_deps = self.env.bottle_dependencies
        relocation = self.env.relocation_formulae
        if self.formula.name not in bottle_deps:
            return bottle_deps
        if self.formula.name not in relocation:
            return relocation
        return ()

    def lock_names(self, closure: Iterable[Dependency]) -> set[str]:
        """Every name this run may install.

        The closure, plus every configured supplement and its closure:
        sub-installs add supplements of their own to their plans.
        """
        names = {dep.name for dep in closure}
        for name in sorted({*self.env.bottle_dependencies, *self.env.relocation_formulae}):
            names.add(name)
            supplement = self.formulary.to_formula(Dependency(name), self.formula)
            names.update(dep.name for dep in find_cycle(supplement, self.formulary))
        return names

    def _bottle_dependencies(self) -> list[Dependency]:
        supplements = []
        for name in self.supplement_names():
            dep = Dependency(name)
            self.inherited[name] = self.inherited[name] | self.inherited_options_for(dep)
            if not self.satisfied(dep, self.inherited[name]):
                supplements.append(dep)
        return supplements

    def plan(self, deps: Iterable[Dependency] | None = None) -> list[PlanEntry]:
        """Expand, prune and merge the closure into an ordered plan."""
        start = time.perf_counter()
        self.inherited = defaultdict(Options)
        self._pours_somewhere = self.pour_bottle

        expanded = expand(self.formula, self.formulary, self.visit, deps, walk_key=self._walk_key)

        if self._pours_somewhere and self.env.bottle_dependencies:
            supplements = self._bottle_dependencies()
            if supplements:
                log.debug(
                    "bottle_dependencies_added",
                    formula=self.formula.name,
                    supplements=[d.name for d in supplements],
                )
                expanded = Dependency.merge_repeats(supplements + expanded)

        plan = [PlanEntry(dep, self.inherited[dep.name]) for dep in expanded]
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "dependencies_expanded",
            formula=self.formula.name,
            plan=[entry.name for entry in plan],
            duration_ms=duration_ms,
        )
        return plan

    def check_pinned(self) -> None:
        """Fail if pinned formulae would need a different version.

        Raises:
            UnsatisfiedPinnedDependency: naming every blocking formula.
        """
        pinned = []
        for dep in self.recursive_dependencies():
            dep_formula = self.formulary.to_formula(dep)
            if dep_formula.pinned and not self.satisfied(dep, self.inherited_options_for(dep)):
                pinned.append(dep.name)
        if pinned:
            log.error("pinned_dependencies_unsatisfied", formula=self.formula.name, pinned=pinned)
            raise UnsatisfiedPinnedDependency(self.formula.full_name, pinned)
