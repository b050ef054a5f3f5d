"""Requirement evaluation across a formula's dependency closure."""

from __future__ import annotations

from typing import Callable, Iterable

from brewhouse.core.errors import UnsatisfiedRequirements
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Dependency, Formula
from brewhouse.formula.requirements import Requirement
from brewhouse.install.expander import DependencyExpander, Include, Prune, expand

log = get_logger(__name__)


def check_requirement(requirement: Requirement) -> bool:
    """Probe the platform or tool behind a requirement."""
    return requirement.satisfied()


class RequirementEvaluator:
    """Finds the unsatisfied requirements of a formula's closure.

    Args:
        expander: Expander of the same request; supplies the option and
            bottle decisions that make build/test requirements needed.
        check: Probe used to test each requirement.
        planned: Names in the installation plan; computed from the
            expander when omitted.
    """

    def __init__(
        self,
        expander: DependencyExpander,
        check: Callable[[Requirement], bool] = check_requirement,
        planned: Iterable[str] | None = None,
    ) -> None:
        self.expander = expander
        self.formula = expander.formula
        self.formulary = expander.formulary
        self.check = check
        self._planned = None if planned is None else set(planned)

    @property
    def planned(self) -> set[str]:
        if self._planned is None:
            self._planned = {entry.name for entry in self.expander.plan()}
        return self._planned

    def runtime_requirements(self, formula: Formula) -> set[Requirement]:
        """Non-build requirements of `formula` and its runtime closure."""
        def runtime_only(dependent: Formula, dep: Dependency):
            return Prune() if not dep.runtime else Include(dep.options)

        runtime_deps = expand(formula, self.formulary, runtime_only)
        reqs: set[Requirement] = {r for r in formula.requirements if not (r.build or r.test)}
        for dep in runtime_deps:
            reqs.update(r for r in self.formulary.to_formula(dep).requirements if not (r.build or r.test))
        return reqs

    def unsatisfied(self) -> dict[str, list[Requirement]]:
        """Unsatisfied requirements keyed by the dependent introducing them."""
        expander = self.expander
        runtime_reqs = self.runtime_requirements(self.formula)
        closure = expander.recursive_dependencies()
        deps_map = {dep.name: dep for dep in closure}
        dependents = [self.formula, *(self.formulary.to_formula(dep) for dep in closure)]

        found: dict[str, list[Requirement]] = {}
        for dependent in dependents:
            build = expander.effective_build_options_for(dependent)
            for req in dependent.requirements:
                keep = req in runtime_reqs
                if not keep and req.test:
                    keep = dependent == self.formula and expander.install_options.includes_test(dependent.name)
                if not keep and req.build:
                    keep = (
                        not expander.install_bottle_for(dependent, build)
                        and not dependent.latest_version_installed
                    )

                if req.prune_from_option(build):
                    continue
                if self.check(req):
                    continue
                if (req.build or req.test) and not keep:
                    continue
                dep = deps_map.get(dependent.name)
                if dep is not None and (dep.build or dep.test) and (
                    dependent.latest_version_installed or dependent.name not in self.planned
                ):
                    # Build or test dependency that is not installed this run.
                    continue

                found.setdefault(dependent.full_name, []).append(req)
        return found

    def evaluate(self) -> list[str]:
        """Check the closure's requirements.

        Returns:
            Advisory `"<dependent>: <message>"` lines for every
            unsatisfied requirement, fatal or not.

        Raises:
            UnsatisfiedRequirements: If any unsatisfied requirement is
                fatal, carrying all of the fatal ones.
        """
        messages: list[str] = []
        fatals: list[Requirement] = []
        for dependent, reqs in self.unsatisfied().items():
            for req in reqs:
                messages.append(f"{dependent}: {req.message}")
                if req.fatal:
                    fatals.append(req)

        if messages:
            log.warning(
                "requirements_unsatisfied",
                formula=self.formula.name,
                count=len(messages),
                fatal=len(fatals),
            )
        if fatals:
            raise UnsatisfiedRequirements(
                fatals, messages=messages, context={"formula": self.formula.full_name}
            )
        return messages
