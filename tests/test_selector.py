"""
Tests for the bottle-pour versus build-from-source decision.
"""

import pytest

from brewhouse.core.errors import BuildToolsError
from brewhouse.formula.options import BuildOptions, Options
from brewhouse.install.context import InstallOptions
from brewhouse.install.selector import (
    BottlePolicy,
    bottle_decision,
    build_tools_installed,
    check_dependencies_bottled,
    install_bottle_for,
    wants_bottle,
)


# ── Decision ─────────────────────────────────────────────────────────


class TestBottleDecision:
    def test_bottled_formula_pours(self, tap, formulary):
        tap.add("foo")
        assert bottle_decision(formulary.resolve("foo"), Options(), BottlePolicy()) == (True, None)

    def test_requested_options_force_source(self, tap, formulary):
        tap.add("foo", options=[{"option": "with-x"}])
        pour, reason = bottle_decision(formulary.resolve("foo"), Options.from_names(["with-x"]), BottlePolicy())

        assert not pour
        assert "--with-x" in reason

    def test_force_bottle_beats_build_from_source(self, tap, formulary):
        tap.add("foo")
        policy = BottlePolicy(force_bottle=True, build_from_source=True)
        assert wants_bottle(formulary.resolve("foo"), Options(), policy)

    def test_force_bottle_beats_missing_bottle_metadata(self, tap, formulary):
        tap.add("foo", bottle=False)
        assert wants_bottle(formulary.resolve("foo"), Options(), BottlePolicy(force_bottle=True))

    def test_failed_pour_always_refuses(self, tap, formulary):
        tap.add("foo")
        policy = BottlePolicy(force_bottle=True, pour_failed=True)
        assert not wants_bottle(formulary.resolve("foo"), Options(), policy)

    @pytest.mark.parametrize(
        "policy",
        [
            BottlePolicy(build_from_source=True),
            BottlePolicy(build_bottle=True),
            BottlePolicy(interactive=True),
            BottlePolicy(cc="clang"),
        ],
    )
    def test_policy_flags_refuse(self, tap, formulary, policy):
        tap.add("foo")
        assert not wants_bottle(formulary.resolve("foo"), Options(), policy)

    def test_no_bottle(self, tap, formulary):
        tap.add("foo", bottle=False)
        assert bottle_decision(formulary.resolve("foo"), Options(), BottlePolicy()) == (False, "no bottle available")

    def test_disabled_bottle(self, tap, formulary):
        tap.add("foo", bottle_disabled=True)
        assert not wants_bottle(formulary.resolve("foo"), Options(), BottlePolicy())

    def test_formula_refuses_pour(self, tap, formulary):
        tap.add("foo", pour_bottle_only_if="default_prefix")
        pour, reason = bottle_decision(formulary.resolve("foo"), Options(), BottlePolicy())

        assert not pour
        assert reason == "default_prefix"

    def test_cellar_mismatch(self, tap, formulary):
        tap.add("foo", bottle={"stable": {"cellar": "/opt/elsewhere/Cellar"}})
        pour, reason = bottle_decision(formulary.resolve("foo"), Options(), BottlePolicy())

        assert not pour
        assert "/opt/elsewhere/Cellar" in reason

    def test_matching_cellar(self, env, tap, formulary):
        tap.add("foo", bottle={"stable": {"cellar": str(env.cellar)}})
        assert wants_bottle(formulary.resolve("foo"), Options(), BottlePolicy())


class TestDependencyDecision:
    def test_dependency_ignores_forced_flags(self, tap, formulary):
        tap.add("dep")
        dep = formulary.resolve("dep")
        options = InstallOptions(build_from_source=True, interactive=True)

        assert install_bottle_for(dep, BuildOptions(Options(), dep.options), options)

    def test_named_dependency_builds_from_source(self, tap, formulary):
        tap.add("dep")
        dep = formulary.resolve("dep")
        options = InstallOptions(build_from_source_formulae=frozenset({"dep"}))

        assert not install_bottle_for(dep, BuildOptions(Options(), dep.options), options)


# ── Build tools ──────────────────────────────────────────────────────


class TestBuildTools:
    def test_present_tools(self, env):
        env.build_tools = ("sh",)
        assert build_tools_installed(env)

    def test_missing_tools(self, env):
        env.build_tools = ("sh", "definitely-not-a-real-tool")
        assert not build_tools_installed(env)

    def test_unbottled_formulae_are_aggregated(self, tap, formulary):
        tap.add("a", bottle=False)
        tap.add("b", bottle=False)
        tap.add("c")
        tap.add("root", bottle=False)
        resolve = formulary.resolve

        with pytest.raises(BuildToolsError) as exc:
            check_dependencies_bottled(
                resolve("root"),
                False,
                [(resolve("b"), False), (resolve("c"), True), (resolve("a"), False)],
            )

        assert exc.value.formulae == ["a", "b", "root"]
        assert "a, b, root" in str(exc.value)

    def test_bottle_unneeded_is_not_reported(self, tap, formulary):
        tap.add("data", bottle=False, bottle_unneeded=True)
        tap.add("root")
        resolve = formulary.resolve

        check_dependencies_bottled(resolve("root"), True, [(resolve("data"), False)])
