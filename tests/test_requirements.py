"""
Tests for requirement descriptors and their evaluation across the
dependency closure.
"""

import sys

import pytest

from brewhouse.core.errors import UnsatisfiedRequirements
from brewhouse.core.models import DependencyTag
from brewhouse.formula.options import BuildOptions, Options
from brewhouse.formula.requirements import (
    ExecutableRequirement,
    LanguageRuntimeRequirement,
    PlatformVersionRequirement,
    requirement_from_dict,
)
from brewhouse.install.context import InstallOptions
from brewhouse.install.expander import DependencyExpander
from brewhouse.install.requirements import RequirementEvaluator

MISSING = "definitely-not-a-real-tool"


def evaluator(formulary, name, pour_bottle=True, **install_options):
    expander = DependencyExpander(
        formulary.resolve(name),
        formulary,
        InstallOptions(**install_options),
        Options(),
        pour_bottle,
    )
    return RequirementEvaluator(expander)


# ── Descriptors ──────────────────────────────────────────────────────


class TestRequirementFromDict:
    def test_executable(self):
        req = requirement_from_dict({"name": "git"})

        assert isinstance(req, ExecutableRequirement)
        assert req.executable == "git"
        assert req.fatal
        assert req.tags == frozenset()

    def test_contexts_become_tags(self):
        req = requirement_from_dict({"name": "cmake", "contexts": ["build", "bogus"]})
        assert req.tags == frozenset({DependencyTag.BUILD})
        assert req.build

    def test_runtime(self):
        req = requirement_from_dict({"name": "java", "version": "1.8+"})

        assert isinstance(req, LanguageRuntimeRequirement)
        assert req.display_s == "java >= 1.8"
        assert req.message.startswith("Java 1.8+ is required")

    def test_platform_minimum_and_maximum(self):
        minimum = requirement_from_dict({"name": "macos", "version": "12"})
        maximum = requirement_from_dict({"name": "maximummacos", "version": "14"})

        assert isinstance(minimum, PlatformVersionRequirement)
        assert minimum.comparator == ">="
        assert maximum.name == "macos"
        assert maximum.comparator == "<="

    def test_suggestions(self):
        cask = requirement_from_dict({"name": MISSING, "cask": "some-cask"})
        download = requirement_from_dict({"name": MISSING, "download": "https://example.org"})

        assert cask.message.endswith("You can install the some-cask cask first.")
        assert "https://example.org" in download.message


class TestSatisfaction:
    def test_executable_on_path(self):
        assert ExecutableRequirement("sh").satisfied()
        assert not ExecutableRequirement(MISSING).satisfied()

    def test_current_platform(self):
        name = "macos" if sys.platform == "darwin" else "linux"
        assert PlatformVersionRequirement(name).satisfied()

    def test_other_platform(self):
        name = "linux" if sys.platform == "darwin" else "macos"
        assert not PlatformVersionRequirement(name).satisfied()

    def test_optional_requirement_pruned_by_option(self):
        req = ExecutableRequirement(MISSING, tags=frozenset({DependencyTag.OPTIONAL}))
        declared = Options.from_names([f"with-{MISSING}"])

        assert req.prune_from_option(BuildOptions(Options(), declared))
        assert not req.prune_from_option(BuildOptions(declared, declared))

    def test_equality(self):
        assert ExecutableRequirement("git") == ExecutableRequirement("git")
        assert ExecutableRequirement("git") != ExecutableRequirement(
            "git", tags=frozenset({DependencyTag.BUILD})
        )


# ── Evaluation ───────────────────────────────────────────────────────


class TestEvaluator:
    def test_satisfied_requirement_is_ignored(self, tap, formulary):
        tap.add("foo", requirements=[{"name": "sh"}])
        assert evaluator(formulary, "foo").unsatisfied() == {}

    def test_fatal_requirement_raises(self, tap, formulary):
        tap.add("foo", requirements=[{"name": MISSING}])

        with pytest.raises(UnsatisfiedRequirements) as exc:
            evaluator(formulary, "foo").evaluate()

        assert [str(r) for r in exc.value.requirements] == [MISSING]
        assert exc.value.messages == [f"foo: {MISSING} is required to install this formula."]

    def test_non_fatal_requirement_returns_message(self, tap, formulary):
        tap.add("foo", requirements=[{"name": MISSING, "fatal": False}])

        messages = evaluator(formulary, "foo").evaluate()

        assert messages == [f"foo: {MISSING} is required to install this formula."]

    def test_requirement_of_runtime_dependency_is_attributed(self, tap, formulary):
        tap.add("dep", requirements=[{"name": MISSING, "fatal": False}])
        tap.add("root", dependencies=["dep"])

        assert list(evaluator(formulary, "root").unsatisfied()) == ["dep"]

    def test_build_requirement_of_bottled_dependency_is_pruned(self, tap, formulary):
        tap.add("dep", requirements=[{"name": MISSING, "contexts": ["build"]}])
        tap.add("root", dependencies=["dep"])

        assert evaluator(formulary, "root").unsatisfied() == {}

    def test_build_requirement_kept_when_dependency_builds_from_source(self, tap, formulary):
        tap.add("dep", requirements=[{"name": MISSING, "contexts": ["build"]}])
        tap.add("root", dependencies=["dep"])

        found = evaluator(
            formulary, "root", build_from_source_formulae=frozenset({"dep"})
        ).unsatisfied()

        assert list(found) == ["dep"]
        assert found["dep"][0].build

    def test_build_requirement_of_root_depends_on_pour(self, tap, formulary):
        tap.add("root", requirements=[{"name": MISSING, "contexts": ["build"]}])

        assert evaluator(formulary, "root", pour_bottle=True).unsatisfied() == {}
        assert list(evaluator(formulary, "root", pour_bottle=False).unsatisfied()) == ["root"]

    def test_test_requirement_needs_include_test(self, tap, formulary):
        tap.add("root", requirements=[{"name": MISSING, "contexts": ["test"]}])

        assert evaluator(formulary, "root").unsatisfied() == {}
        assert evaluator(formulary, "root", include_test=True).unsatisfied() == {}
        found = evaluator(
            formulary, "root", include_test=True, include_test_formulae=frozenset({"root"})
        ).unsatisfied()
        assert list(found) == ["root"]

    def test_installed_build_only_dependency_is_ignored(self, tap, formulary, install_keg):
        install_keg("tool")
        tap.add("tool", requirements=[{"name": MISSING, "contexts": ["build"]}])
        tap.add("root", build_dependencies=["tool"])

        found = evaluator(
            formulary, "root", pour_bottle=False, build_from_source_formulae=frozenset({"tool"})
        ).unsatisfied()

        assert found == {}

    def test_requirement_of_unplanned_build_dependency_is_ignored(self, tap, formulary):
        tap.add("cmake", requirements=[{"name": MISSING}])
        tap.add("root", build_dependencies=["cmake"])

        assert evaluator(formulary, "root", pour_bottle=True).unsatisfied() == {}
        assert list(evaluator(formulary, "root", pour_bottle=False).unsatisfied()) == ["cmake"]

    def test_planned_names_can_be_supplied(self, tap, formulary):
        tap.add("cmake", requirements=[{"name": MISSING}])
        tap.add("root", build_dependencies=["cmake"])
        expander = DependencyExpander(formulary.resolve("root"), formulary, InstallOptions(), Options(), False)

        assert RequirementEvaluator(expander, planned=()).unsatisfied() == {}
