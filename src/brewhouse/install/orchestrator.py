"""Installation state machine and recursive dependency installs."""

from __future__ import annotations

import dataclasses
import platform
import re
import shutil
import tarfile
import tempfile
import time
from enum import Enum
from pathlib import Path
from typing import Iterable

from rich.filesize import decimal

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import (
    BuildError,
    BuildToolsError,
    CannotInstallFormulaError,
    ConflictError,
    ForbiddenLicenseError,
    FormulaConflictError,
    FormulaInstallationAlreadyAttemptedError,
    FormulaUnavailableError,
    IncompatibleBottleError,
    LinkError,
    retry_on_transient,
)
from brewhouse.core.interrupts import ignore_interrupts
from brewhouse.core.logging import bind_install_state, bound_install_context, get_logger
from brewhouse.core.models import Dependency, Formula
from brewhouse.formula.formulary import Formulary
from brewhouse.formula.keg import Keg
from brewhouse.formula.options import BuildOptions, Options
from brewhouse.formula.tab import Tab
from brewhouse.install.context import InstallOptions, RunContext
from brewhouse.install.expander import (
    DependencyExpander,
    Include,
    PlanEntry,
    Prune,
    expand,
    find_cycle,
)
from brewhouse.install.fetcher import ArtifactFetcher, CacheFetcher
from brewhouse.install.isolation import IsolatedRunner, SubprocessRunner
from brewhouse.install.locks import LockCoordinator
from brewhouse.install.requirements import RequirementEvaluator
from brewhouse.install.selector import (
    BottlePolicy,
    bottle_decision,
    build_tools_installed,
    check_dependencies_bottled,
)

log = get_logger(__name__)

ARCH_ALIASES = {"aarch64": "arm64", "amd64": "x86_64"}


class InstallState(Enum):
    """States of one formula's installation."""

    PENDING = "pending"
    VERIFYING = "verifying"
    FETCHING = "fetching"
    POURING = "pouring"
    BUILDING = "building"
    LINKING = "linking"
    POST_INSTALLING = "post_installing"
    FINISHED = "finished"
    ROLLING_BACK = "rolling_back"


def licenses_forbid_installation(license: str | None, forbidden: Iterable[str]) -> bool:
    """Whether every alternative of an `A or B` license expression is forbidden."""
    if not license:
        return False
    forbidden = set(forbidden)
    alternatives = [part.strip(" ()") for part in re.split(r"\s+or\s+", license, flags=re.IGNORECASE)]
    return all(alt in forbidden for alt in alternatives)


def pretty_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f} seconds" if seconds >= 2 else "1 second"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes} minute{'s' if minutes > 1 else ''} {secs} seconds"


def _arch(name: str | None) -> str | None:
    if name is None:
        return None
    return ARCH_ALIASES.get(name, name)


class FormulaInstaller:
    """Drives one formula through the installation states.

    A top-level install and every dependency it installs each get their
    own FormulaInstaller; they share the RunContext, and with it the
    attempted set, the lock holder and the collected messages.

    Args:
        formula: The formula to install.
        context: State of the current run.
        install_options: Flags of the request.
        link_keg: Symlink the keg into the prefix. Defaults to True
            unless the formula is keg-only.
    """

    def __init__(
        self,
        formula: Formula,
        context: RunContext,
        install_options: InstallOptions | None = None,
        link_keg: bool | None = None,
    ) -> None:
        self.formula = formula
        self.context = context
        self.env = context.env
        self.formulary = context.formulary
        self.install_options = install_options or InstallOptions()
        self.options = Options.from_names(self.install_options.options)
        self.link_keg = (not formula.keg_only) if link_keg is None else link_keg
        self.state = InstallState.PENDING
        self.history = [InstallState.PENDING]
        self.plan: list[PlanEntry] = []
        self.pour_failed = False
        self.poured_bottle = False
        self._keg_touched = False
        self._locked = False
        self._build_time: float | None = None

    def transition(self, state: InstallState) -> None:
        log.info(
            "install_state",
            formula=self.formula.full_name,
            from_state=self.state.value,
            to_state=state.value,
        )
        self.state = state
        self.history.append(state)
        bind_install_state(state.value)

    # Decisions

    def policy(self) -> BottlePolicy:
        opts = self.install_options
        return BottlePolicy(
            force_bottle=opts.force_bottle,
            build_from_source=opts.build_from_source or opts.builds_from_source(self.formula.name),
            build_bottle=opts.build_bottle,
            interactive=opts.interactive,
            cc=opts.cc,
            pour_failed=self.pour_failed,
        )

    def build_options(self) -> BuildOptions:
        return BuildOptions(self.options, self.formula.options)

    def pour_bottle(self) -> bool:
        pour, reason = bottle_decision(self.formula, self.build_options().used_options, self.policy())
        if not pour:
            log.debug("bottle_refused", formula=self.formula.full_name, reason=reason)
        return pour

    def expander(self) -> DependencyExpander:
        return DependencyExpander(
            self.formula,
            self.formulary,
            self.install_options,
            self.options,
            self.pour_bottle(),
        )

    def child_options(self, options: Options, installed_on_request: bool) -> InstallOptions:
        """Flags for a dependency install; forced artifact flags are not inherited."""
        return dataclasses.replace(
            self.install_options,
            force_bottle=False,
            build_from_source=False,
            interactive=False,
            build_bottle=False,
            cc=None,
            installed_as_dependency=True,
            installed_on_request=installed_on_request,
            options=tuple(options.names()),
        )

    # Verifying

    def check_install_sanity(self) -> list[Dependency]:
        """Refuse formulae that cannot be installed in this run.

        Returns:
            The full recursive closure of the formula.

        Raises:
            FormulaInstallationAlreadyAttemptedError: The formula was
                already attempted in this run.
            CannotInstallFormulaError: The formula is disabled or an
                installed dependency is not linked.
            CircularDependencyError: The closure contains a cycle.
            UnsatisfiedPinnedDependency: A pinned formula blocks the
                request.
        """
        formula = self.formula
        if self.context.was_attempted(formula.name):
            raise FormulaInstallationAlreadyAttemptedError(formula.full_name)

        if formula.disabled:
            raise CannotInstallFormulaError(
                f"{formula.full_name} has been disabled",
                context={"formula": formula.full_name},
            )
        if formula.deprecated:
            self.context.warn(f"{formula.full_name} has been deprecated", formula=formula.full_name)

        closure = find_cycle(formula, self.formulary)
        if self.install_options.ignore_deps:
            return []

        unlinked = []
        for dep in closure:
            dep_formula = self.formulary.to_formula(dep, formula)
            if (
                dep_formula.any_version_installed
                and not dep_formula.keg_only
                and not dep_formula.linked_keg.is_symlink()
                and dep_formula.name not in self.context.installed
            ):
                unlinked.append(dep_formula.name)
        if unlinked:
            raise CannotInstallFormulaError(
                f"You must `brewhouse link {' '.join(unlinked)}` before "
                f"{formula.full_name} can be installed",
                context={"formula": formula.full_name},
            )

        self.expander().check_pinned()
        return closure

    def check_linked_version(self) -> None:
        """Refuse when another version of the formula is linked."""
        formula = self.formula
        linked = formula.linked_version
        if linked is None or linked == formula.pkg_version:
            return
        if formula.outdated:
            hint = f"To upgrade to {formula.pkg_version}, run: brewhouse upgrade {formula.full_name}"
        else:
            hint = f"To install {formula.pkg_version}, first run: brewhouse unlink {formula.name}"
        raise CannotInstallFormulaError(
            f"{formula.name} {linked} is already installed. {hint}",
            context={"formula": formula.full_name, "linked_version": linked},
        )

    def check_conflicts(self) -> None:
        if self.install_options.force:
            return
        conflicts = []
        for name in self.formula.conflicts:
            try:
                other = self.formulary.resolve(name)
            except FormulaUnavailableError:
                log.debug("conflict_unavailable", formula=self.formula.full_name, conflict=name)
                continue
            if other.linked_keg.is_symlink() and other.opt_prefix.exists():
                conflicts.append(other.full_name)
        if conflicts:
            raise FormulaConflictError(self.formula.full_name, conflicts)

    def forbidden_license_check(self, plan: list[PlanEntry]) -> None:
        """Fail once, naming every planned formula with a forbidden license.

        Raises:
            ForbiddenLicenseError: If the root or any planned dependency
                is only available under forbidden licenses.
        """
        forbidden = self.env.forbidden_licenses
        if not forbidden:
            return
        offenders = []
        for entry in plan:
            dep_formula = self.formulary.to_formula(entry.dependency, self.formula)
            if licenses_forbid_installation(dep_formula.license, forbidden):
                offenders.append((dep_formula.full_name, dep_formula.license))
        if licenses_forbid_installation(self.formula.license, forbidden):
            offenders.append((self.formula.full_name, self.formula.license))
        if offenders:
            log.error("forbidden_licenses", formula=self.formula.full_name, offenders=offenders)
            raise ForbiddenLicenseError(self.formula.full_name, offenders)

    def compute_dependencies(self) -> list[PlanEntry]:
        """Evaluate requirements and build the dependency plan.

        Raises:
            UnsatisfiedRequirements: Fatal requirements are not met.
            BuildToolsError: Something must be built from source and the
                build tools are missing.
        """
        expander = self.expander()
        plan: list[PlanEntry] = []
        if not self.install_options.ignore_deps:
            plan = expander.plan()
            evaluator = RequirementEvaluator(expander, planned={entry.name for entry in plan})
            for message in evaluator.evaluate():
                if message not in self.context.requirement_messages:
                    self.context.requirement_messages.append(message)

        if not build_tools_installed(self.env):
            planned = []
            for entry in plan:
                dep_formula = self.formulary.to_formula(entry.dependency, self.formula)
                build = expander.effective_build_options_for(dep_formula, entry.options)
                planned.append((dep_formula, expander.install_bottle_for(dep_formula, build)))
            check_dependencies_bottled(self.formula, expander.pour_bottle, planned)
        return plan

    def prelude(self) -> None:
        """Pending to Verifying: every check that must pass before any work."""
        self.transition(InstallState.VERIFYING)
        closure = self.check_install_sanity()
        self.check_linked_version()
        self.check_conflicts()
        self.context.mark_attempted(self.formula.name)
        names = () if self.install_options.ignore_deps else self.expander().lock_names(closure)
        self._locked = self.context.locks.acquire(self.formula.name, names)
        self.plan = self.compute_dependencies()
        self.forbidden_license_check(self.plan)

    # Fetching

    def fetch_artifact(self, wants_bottle: bool) -> Path:
        fetch_artifact = retry_on_transient(
            max_retries=self.env.fetch_retries,
            base_delay=self.env.fetch_retry_delay,
        )(self.context.fetcher.fetch_artifact)

        start = time.perf_counter()
        path = fetch_artifact(self.formula, wants_bottle)
        self.context.fetched[self.formula.name] = path
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "artifact_fetched",
            formula=self.formula.full_name,
            bottle=wants_bottle,
            path=str(path),
            duration_ms=duration_ms,
        )
        return path

    def fallback_allowed(self, error: BaseException) -> bool:
        """Whether a failed pour may be retried as a source build."""
        return (
            isinstance(error, Exception)
            and not self.pour_failed
            and not self.env.developer
            and not self.env.no_bottle_source_fallback
        )

    def switch_to_source(self, error: BaseException) -> None:
        """Record a failed pour; later decisions build from source."""
        self.pour_failed = True
        log.error("bottle_pour_failed", formula=self.formula.full_name, error=str(error))
        self.context.warn(
            f"Bottle installation failed: building {self.formula.full_name} from source.",
            formula=self.formula.full_name,
        )
        if not build_tools_installed(self.env):
            raise BuildToolsError([self.formula.full_name]) from error

    def install_dependencies(self, plan: list[PlanEntry]) -> None:
        if not plan:
            return
        log.info(
            "installing_dependencies",
            formula=self.formula.full_name,
            dependencies=[entry.name for entry in plan],
        )
        for entry in plan:
            self.install_dependency(entry.dependency, entry.options)

    def install_dependency(self, dep: Dependency, inherited: Options) -> Tab | None:
        """Install one planned dependency through its own state machine.

        A linked keg of the dependency is unlinked and a keg of the same
        version is moved aside first; both are restored if the child fails.

        Returns:
            The dependency's installation record, or the in-flight record
            when the dependency was already attempted in this run.
        """
        df = self.formulary.to_formula(dep, self.formula)
        if self.context.was_attempted(df.name):
            log.debug("dependency_joined", formula=self.formula.full_name, dependency=df.full_name)
            return self.context.records.get(df.name)

        installed_keg = Keg(df.prefix, self.env)
        linked_keg: Keg | None = None
        keg_was_linked: bool | None = None
        tmp_keg: Keg | None = None
        tab: Tab | None = None
        was_installed = df.any_version_installed

        try:
            if df.linked_keg.is_symlink():
                linked_keg = Keg(df.linked_keg.resolve(), self.env)
                tab = Tab.for_keg(linked_keg.path)
                keg_was_linked = linked_keg.linked()
                linked_keg.unlink()

            if df.latest_version_installed:
                tab = tab or Tab.for_keg(installed_keg.path)
                tmp_keg = installed_keg.rename(installed_keg.path.with_name(f"{installed_keg.version}.tmp"))

            if df.tap and tab is not None and tab.tap and tab.tap != df.tap:
                raise CannotInstallFormulaError(
                    f"{df.full_name} is already installed from {tab.tap}. "
                    f"Please `brewhouse uninstall {df.full_name}` first.",
                    context={"formula": df.full_name, "tap": tab.tap},
                )

            options = Options()
            if tab is not None:
                options = options | tab.options
            options = (options | dep.options | inherited) & df.options
            installed_on_request = bool(was_installed and tab is not None and tab.installed_on_request)

            log.info(
                "installing_dependency",
                formula=self.formula.full_name,
                dependency=df.full_name,
                options=options.names(),
            )
            child = FormulaInstaller(
                df,
                self.context,
                self.child_options(options, installed_on_request),
                link_keg=keg_was_linked,
            )
            result = child.run()
        except BaseException as e:
            with ignore_interrupts():
                if tmp_keg is not None and not installed_keg.path.is_dir():
                    tmp_keg.rename(installed_keg.path)
                if keg_was_linked and linked_keg is not None:
                    try:
                        linked_keg.link()
                    except LinkError as link_error:
                        self.context.warn(
                            f"Could not relink {df.full_name}: {link_error.message}",
                            formula=df.full_name,
                        )
            if isinstance(e, FormulaInstallationAlreadyAttemptedError):
                return self.context.records.get(df.name)
            raise

        with ignore_interrupts():
            if tmp_keg is not None and tmp_keg.exists():
                tmp_keg.rmtree()
        return result

    def install(self) -> None:
        """Verifying to Fetching, then Pouring or Building."""
        self.transition(InstallState.FETCHING)
        self.install_dependencies(self.plan)

        start = time.perf_counter()
        if self.pour_bottle():
            try:
                self.pour(self.fetch_artifact(wants_bottle=True))
            except BaseException as e:
                self.discard_keg()
                if not self.fallback_allowed(e):
                    raise
                self.switch_to_source(e)
                self.plan = self.compute_dependencies()
                self.install_dependencies(self.plan)

        if not self.poured_bottle:
            self.build(self.fetch_artifact(wants_bottle=False))
            self._build_time = time.perf_counter() - start

    # Pouring and Building

    def pour(self, artifact: Path) -> None:
        """Extract a bottle into the cellar and relocate it.

        Raises:
            IncompatibleBottleError: The bottle cannot be extracted, does
                not contain this version, or targets another architecture.
        """
        self.transition(InstallState.POURING)
        formula = self.formula
        self._keg_touched = True
        self.env.cellar.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(artifact) as tar:
                tar.extractall(self.env.cellar, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise IncompatibleBottleError(
                f"Could not extract the bottle for {formula.full_name}: {e}",
                context={"formula": formula.full_name, "artifact": str(artifact)},
            ) from e

        if not formula.prefix.is_dir():
            raise IncompatibleBottleError(
                f"The bottle for {formula.full_name} does not contain {formula.name}/{formula.pkg_version}",
                context={"formula": formula.full_name, "artifact": str(artifact)},
            )

        keg = Keg(formula.prefix, self.env)
        tab = Tab.for_keg(keg.path)
        self.check_bottle_arch(tab)
        skip_relocation = formula.bottle.skip_relocation if formula.bottle else False
        relocated = keg.replace_placeholders_with_locations(tab.changed_files, skip_linkage=skip_relocation)

        self.write_tab(poured=True)
        self.poured_bottle = True
        log.info("bottle_poured", formula=formula.full_name, relocated=len(relocated))

    def check_bottle_arch(self, tab: Tab) -> None:
        expected = _arch(platform.machine())
        bottle_arch = _arch(tab.arch or (self.formula.bottle.arch if self.formula.bottle else None))
        if bottle_arch and bottle_arch != expected:
            raise IncompatibleBottleError(
                f"The bottle for {self.formula.full_name} was built for {bottle_arch}, this system is {expected}",
                context={"formula": self.formula.full_name, "arch": bottle_arch},
            )

    def _stage(self, artifact: Path, workdir: Path) -> None:
        if tarfile.is_tarfile(artifact):
            with tarfile.open(artifact) as tar:
                tar.extractall(workdir, filter="data")
        else:
            shutil.copy2(artifact, workdir)

    def build(self, artifact: Path) -> None:
        """Run the build script in the isolation boundary.

        Raises:
            BuildError: The script is missing, exits non-zero, or installs
                nothing.
        """
        self.transition(InstallState.BUILDING)
        formula = self.formula
        if formula.build_script is None:
            raise BuildError(formula.full_name, message=f"{formula.full_name} has no build script")

        self._keg_touched = True
        build = self.build_options()
        self.env.temp.mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix=f"{formula.name}-", dir=self.env.temp))
        try:
            self._stage(artifact, workdir)
            status = self.context.runner.run(
                formula.build_script,
                ["--prefix", str(formula.prefix), *build.used_options.as_flags()],
                cwd=workdir,
                sandbox=True,
                log_path=formula.logs / "01.build.log",
            )
        finally:
            if self.install_options.keep_tmp:
                self.context.summaries.append(f"Temporary files retained at {workdir}")
            else:
                shutil.rmtree(workdir, ignore_errors=True)

        log_path = str(status.log_path) if status.log_path else None
        if not status.success:
            log.error("build_failed", formula=formula.full_name, returncode=status.returncode, log=log_path)
            raise BuildError(formula.full_name, status.returncode, log_path, build.used_options.as_flags())

        if Keg(formula.prefix, self.env).empty_installation():
            raise BuildError(
                formula.full_name,
                status.returncode,
                log_path,
                build.used_options.as_flags(),
                message=f"Empty installation: nothing was installed to {formula.prefix}",
            )
        self.write_tab(poured=False)

    def write_tab(self, poured: bool) -> Tab:
        formula = self.formula
        build = self.build_options()
        tab = Tab.for_keg(formula.prefix)
        tab.used_options = build.used_options.names()
        tab.unused_options = build.unused_options.names()
        tab.tap = formula.tap
        tab.source["path"] = str(formula.path) if formula.path else None
        tab.installed_as_dependency = self.install_options.installed_as_dependency
        tab.installed_on_request = self.install_options.installed_on_request
        tab.poured_from_bottle = poured
        tab.built_as_bottle = self.install_options.build_bottle
        tab.time = int(time.time())
        tab.aliases = list(formula.aliases)
        tab.arch = tab.arch or platform.machine()
        tab.write()
        return tab

    # Linking and Finishing

    def link(self, keg: Keg) -> bool:
        """Symlink the keg into the prefix.

        A conflicting file that belongs to no keg is moved into the backup
        directory and linking is retried, once per path. Conflicts that
        remain leave the keg installed but unlinked.

        Returns:
            Whether the keg was linked.
        """
        formula = self.formula
        if not self.link_keg:
            try:
                keg.optlink()
            except OSError as e:
                self.context.warn(f"Failed to create {formula.opt_prefix}: {e}", formula=formula.full_name)
            return False

        if keg.linked():
            self.context.warn(
                f"{formula.full_name} was marked linked already, continuing anyway",
                formula=formula.full_name,
            )
            keg.remove_linked_keg_record()

        backups: dict[Path, Path] = {}
        try:
            while True:
                try:
                    keg.link()
                    break
                except ConflictError as e:
                    dst = Path(e.dst)
                    if dst in backups or keg.is_keg_file(dst) or not formula.link_overwrite(dst):
                        raise
                    backup = self.env.backup / dst.relative_to(self.env.prefix)
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(dst, backup)
                    backups[dst] = backup
                    log.warning("link_conflict_backed_up", formula=formula.full_name, path=str(dst), backup=str(backup))
        except LinkError as e:
            with ignore_interrupts():
                keg.unlink()
                self._restore_backups(backups)
                keg.optlink()
            self.context.warn(
                f"{formula.full_name} is installed but not linked into {self.env.prefix}: {e.message}",
                formula=formula.full_name,
            )
            return False
        except Exception:
            log.error("link_unexpected_error", formula=formula.full_name, exc_info=True)
            with ignore_interrupts():
                keg.unlink()
                self._restore_backups(backups)
            raise

        if backups:
            self.context.warn(
                "These files were overwritten while linking "
                f"{formula.full_name} (backups in {self.env.backup}): "
                + ", ".join(str(p) for p in backups),
                formula=formula.full_name,
            )
        return True

    def _restore_backups(self, backups: dict[Path, Path]) -> None:
        for origin, backup in backups.items():
            origin.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(backup, origin)

    def post_install(self) -> None:
        """Run the post-install script; failures only produce a warning."""
        formula = self.formula
        script = formula.post_install_script
        if script is None:
            return
        log_path = formula.logs / "post_install.log"
        try:
            status = self.context.runner.run(
                script,
                ["--prefix", str(formula.prefix)],
                cwd=formula.prefix,
                sandbox=True,
                log_path=log_path,
            )
            detail = None if status.success else f"exit code {status.returncode}"
        except Exception as e:
            detail = str(e)

        if detail is not None:
            log.warning("post_install_failed", formula=formula.full_name, detail=detail)
            self.context.warn(
                f"The post-install step did not complete successfully for {formula.full_name} "
                f"({detail}). Logs: {log_path}",
                formula=formula.full_name,
            )

    def runtime_dependencies(self) -> list[Formula]:
        """Formulae the installed keg needs at runtime."""
        def runtime_only(dependent: Formula, dep: Dependency):
            if not dep.runtime:
                return Prune()
            if dependent == self.formula:
                build = self.build_options()
            else:
                build = BuildOptions(Tab.for_formula(dependent).options, dependent.options)
            if dep.prune_from_option(build):
                return Prune()
            return Include(dep.options)

        deps = expand(self.formula, self.formulary, runtime_only)
        return [self.formulary.to_formula(dep) for dep in deps]

    def record_caveats(self) -> None:
        formula = self.formula
        parts = []
        if formula.caveats:
            parts.append(formula.caveats.strip())
        if formula.keg_only:
            parts.append(
                f"{formula.name} is keg-only, which means it was not symlinked into {self.env.prefix}."
            )
        if parts:
            self.context.caveats[formula.full_name] = "\n\n".join(parts)

    def summary(self, keg: Keg) -> str:
        files, size = keg.disk_usage()
        line = f"{keg.path}: {files} files, {decimal(size)}"
        if self._build_time is not None:
            line += f", built in {pretty_duration(self._build_time)}"
        return line

    def finish(self) -> Tab:
        """Linking, PostInstalling, then Finished with the final record."""
        formula = self.formula
        keg = Keg(formula.prefix, self.env)

        self.transition(InstallState.LINKING)
        self.link(keg)

        self.transition(InstallState.POST_INSTALLING)
        if not self.install_options.build_bottle:
            self.post_install()

        tab = Tab.for_keg(keg.path)
        tab.runtime_dependencies = Tab.runtime_deps_hash(self.runtime_dependencies())
        tab.write()
        self.record_caveats()
        self.context.summaries.append(self.summary(keg))
        self.context.records[formula.name] = tab
        self.context.installed.add(formula.name)
        self.transition(InstallState.FINISHED)
        return tab

    # Failure handling

    def discard_keg(self) -> None:
        """Remove whatever this installer put in the cellar. Never raises."""
        if not self._keg_touched:
            return
        formula = self.formula
        with ignore_interrupts():
            try:
                keg = Keg(formula.prefix, self.env)
                if keg.linked():
                    keg.unlink()
                keg.remove_opt_record()
                if keg.exists():
                    keg.rmtree()
                if formula.rack.is_dir() and not any(formula.rack.iterdir()):
                    formula.rack.rmdir()
            except OSError as e:
                log.error("keg_removal_failed", formula=formula.full_name, path=str(formula.prefix), error=str(e))
                self.context.warn(
                    f"Could not remove {formula.prefix}: {e}. "
                    f"Remove it manually with: rm -rf {formula.prefix}",
                    formula=formula.full_name,
                )
        self._keg_touched = False

    def rollback(self, error: BaseException) -> None:
        failed_in = self.state
        self.transition(InstallState.ROLLING_BACK)
        log.error(
            "install_failed",
            formula=self.formula.full_name,
            state=failed_in.value,
            error=str(error) or type(error).__name__,
        )
        self.discard_keg()

    def unlock(self) -> None:
        if self._locked:
            self.context.locks.release()
            self._locked = False

    def run(self) -> Tab:
        """Drive the formula from Pending to Finished.

        Returns:
            The final installation record.

        Raises:
            BrewError: The failure that stopped the install, after the
                partial keg has been rolled back.
        """
        start = time.perf_counter()
        with bound_install_context(self.formula.full_name, self.state.value):
            try:
                self.prelude()
                self.install()
                tab = self.finish()
            except FormulaInstallationAlreadyAttemptedError:
                raise
            except BaseException as e:
                self.rollback(e)
                raise
            finally:
                with ignore_interrupts():
                    self.unlock()

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "formula_installed",
            formula=self.formula.full_name,
            poured=self.poured_bottle,
            duration_ms=duration_ms,
        )
        return tab

    def fetch(self) -> Path:
        """Materialise the artifacts of the formula and its planned dependencies."""
        formula = self.formula
        if formula.name in self.context.fetched:
            return self.context.fetched[formula.name]

        self.fetch_dependencies(self.compute_dependencies())
        pours = self.pour_bottle()
        try:
            return self.fetch_artifact(pours)
        except BaseException as e:
            if not pours or not self.fallback_allowed(e):
                raise
            self.switch_to_source(e)
        self.fetch_dependencies(self.compute_dependencies())
        return self.fetch_artifact(wants_bottle=False)

    def fetch_dependencies(self, plan: list[PlanEntry]) -> None:
        for entry in plan:
            df = self.formulary.to_formula(entry.dependency, self.formula)
            FormulaInstaller(df, self.context, self.child_options(entry.options, False)).fetch()


def new_context(
    env: BrewhouseENV,
    formulary: Formulary | None = None,
    runner: IsolatedRunner | None = None,
    fetcher: ArtifactFetcher | None = None,
) -> RunContext:
    """Create the state of one top-level install or fetch."""
    return RunContext(
        env=env,
        formulary=formulary or Formulary(env),
        runner=runner or SubprocessRunner(env),
        fetcher=fetcher or CacheFetcher(env),
        locks=LockCoordinator(env.locks),
    )


def request_options(formula: Formula, options: InstallOptions | None) -> InstallOptions:
    """Flags of a top-level request; `include_test` alone names the requested formula."""
    options = options or InstallOptions()
    if options.include_test and not options.include_test_formulae:
        options = dataclasses.replace(options, include_test_formulae=frozenset({formula.name}))
    return options


def install(
    formula: Formula,
    options: InstallOptions | None = None,
    *,
    context: RunContext | None = None,
    runner: IsolatedRunner | None = None,
    fetcher: ArtifactFetcher | None = None,
) -> Tab:
    """Install a formula and every dependency it needs.

    Args:
        formula: The requested formula.
        options: Flags of the request.
        context: State of the current run; a new one is created when
            omitted. Pass the same context to join a running install.
        runner: Isolation boundary for build and post-install scripts.
        fetcher: Source of bottles and source archives.

    Returns:
        The installation record of the formula. A formula that was already
        attempted in `context` returns its existing record.

    Raises:
        BrewError: A failure from the error taxonomy.
    """
    options = request_options(formula, options)
    if context is None:
        context = new_context(formula.env, runner=runner, fetcher=fetcher)
        context.formulary.register(formula)

    if context.was_attempted(formula.name):
        log.info("install_joined", formula=formula.full_name)
        return context.records.get(formula.name) or Tab.for_formula(formula)

    if formula.latest_version_installed and not options.force:
        if formula.linked_keg.is_symlink() or formula.keg_only:
            context.warn(f"{formula.full_name} {formula.pkg_version} is already installed and up-to-date.")
        else:
            context.warn(f"{formula.full_name} {formula.pkg_version} is already installed, it's just not linked.")
        return Tab.for_formula(formula)

    return FormulaInstaller(formula, context, options).run()


def fetch(
    formula: Formula,
    options: InstallOptions | None = None,
    *,
    context: RunContext | None = None,
    fetcher: ArtifactFetcher | None = None,
) -> Path:
    """Pre-fetch the artifacts an install of `formula` would use.

    Returns:
        The formula's own artifact.
    """
    options = request_options(formula, options)
    if context is None:
        context = new_context(formula.env, fetcher=fetcher)
        context.formulary.register(formula)
    return FormulaInstaller(formula, context, options).fetch()
