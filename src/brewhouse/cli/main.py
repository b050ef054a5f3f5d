"""CLI entry point for the Brewhouse installer."""

from __future__ import annotations

import sys
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, TypeVar

import typer
from rich.traceback import Traceback

from brewhouse.cli.renderers import console, fetched_table, install_summary
from brewhouse.core.config import Brewhouse, BrewhouseENV
from brewhouse.core.errors import (
    EXIT_SUCCESS,
    EXIT_SYSTEM_ERROR,
    EXIT_TRANSIENT_ERROR,
    EXIT_USER_ERROR,
    BrewError,
    FormulaUnavailableError,
    SystemError,
    TransientError,
    UserError,
    format_error_message,
)
from brewhouse.core.logging import get_logger
from brewhouse.install.context import InstallOptions, RunContext
from brewhouse.install.orchestrator import fetch as fetch_formula
from brewhouse.install.orchestrator import install as install_formula
from brewhouse.install.orchestrator import new_context

log = get_logger(__name__)

app = typer.Typer(help="Brewhouse: install formulae from bottles or from source.")

T = TypeVar("T")


def handle_error(error: Exception, debug: bool = False) -> int:
    """Handle errors and return appropriate exit codes.

    Args:
        error: The exception to handle.
        debug: Also print the traceback.

    Returns:
        An integer exit code.
    """
    if isinstance(error, BrewError):
        log.error(
            "cli_error",
            error_type=error.kind,
            message=error.message,
            context=error.context,
            exc_info=error
        )
        console.print(f"\n{format_error_message(error)}\n", style="bold red")

        if isinstance(error, FormulaUnavailableError) and error.context.get("dependent"):
            console.print(f"Required by {error.context['dependent']}", style="dim")

        if debug:
            console.print(Traceback.from_exception(type(error), error, error.__traceback__))

        if isinstance(error, TransientError):
            return EXIT_TRANSIENT_ERROR
        elif isinstance(error, UserError):
            return EXIT_USER_ERROR
        elif isinstance(error, SystemError):
            return EXIT_SYSTEM_ERROR
        else:
            return EXIT_USER_ERROR
    else:
        log.error(
            "unexpected_error",
            error=str(error),
            exc_info=error
        )
        console.print(
            f"\n⚠️ Unexpected error occurred: {error}\n",
            style="bold red"
        )
        return EXIT_SYSTEM_ERROR


def short_name(name: str) -> str:
    return name.rsplit("/", 1)[-1]


def run_requests(
    names: List[str],
    jobs: int,
    request: Callable[[str, RunContext], T],
    env: BrewhouseENV,
) -> list[tuple[str, RunContext, T | None, Exception | None]]:
    """Run one request per name, each with its own run context.

    With more than one job, requests run in parallel threads; the formula
    locks keep overlapping dependency sets apart.
    """
    def one(name: str) -> tuple[str, RunContext, T | None, Exception | None]:
        context = new_context(env)
        try:
            return name, context, request(name, context), None
        except Exception as e:
            return name, context, None, e

    if jobs <= 1 or len(names) <= 1:
        return [one(name) for name in names]
    with ThreadPoolExecutor(max_workers=jobs) as pool:
        return list(pool.map(one, names))


@app.command()
def install(
    names: List[str] = typer.Argument(..., help="Formulae to install"),
    force_bottle: bool = typer.Option(False, "--force-bottle", help="Pour a bottle even if it would not normally be used"),
    build_from_source: bool = typer.Option(False, "--build-from-source", "-s", help="Build the named formulae from source"),
    include_test: bool = typer.Option(False, "--include-test", help="Install test dependencies of the named formulae"),
    keep_tmp: bool = typer.Option(False, "--keep-tmp", help="Retain the temporary build directory"),
    interactive: bool = typer.Option(False, "--interactive", "-i", help="Build interactively instead of pouring"),
    force: bool = typer.Option(False, "--force", "-f", help="Install even if already installed or conflicting"),
    ignore_dependencies: bool = typer.Option(False, "--ignore-dependencies", help="Skip installing dependencies"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show the per-keg summary"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Show tracebacks on failure"),
    jobs: int = typer.Option(1, "--jobs", "-j", min=1, help="Install independent requests in parallel"),
) -> None:
    """Install formulae and their dependencies.

    Args:
        names: Names of the formulae to install.
        force_bottle: Pour even when the formula would otherwise be built.
        build_from_source: Build the requested formulae from source.
        include_test: Include test dependencies of the requested formulae.
        keep_tmp: Keep the build directory.
        interactive: Request an interactive build.
        force: Reinstall and ignore declared conflicts.
        ignore_dependencies: Install only the named formulae.
        verbose: Print the per-keg summary lines.
        debug: Print tracebacks on failure.
        jobs: Number of requests installed in parallel.
    """
    requested = frozenset(short_name(n) for n in names)
    options = InstallOptions(
        force_bottle=force_bottle,
        build_from_source=build_from_source,
        include_test=include_test,
        keep_tmp=keep_tmp,
        interactive=interactive,
        force=force,
        verbose=verbose,
        debug=debug,
        ignore_deps=ignore_dependencies,
        build_from_source_formulae=requested if build_from_source else frozenset(),
        include_test_formulae=requested if include_test else frozenset(),
    )

    def request(name: str, context: RunContext):
        formula = context.formulary.resolve(name)
        return install_formula(formula, options, context=context)

    exit_code = EXIT_SUCCESS
    for name, context, _, error in run_requests(names, jobs, request, Brewhouse):
        console.print(install_summary(context, verbose=verbose))
        if error is not None:
            code = handle_error(error, debug=debug)
            exit_code = exit_code or code
        else:
            log.info("cli_install_complete", formula=name, installed=sorted(context.installed))
    if exit_code:
        sys.exit(exit_code)


@app.command()
def fetch(
    names: List[str] = typer.Argument(..., help="Formulae to fetch"),
    force_bottle: bool = typer.Option(False, "--force-bottle", help="Fetch the bottle even if it would not be poured"),
    build_from_source: bool = typer.Option(False, "--build-from-source", "-s", help="Fetch source archives"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Show tracebacks on failure"),
) -> None:
    """Download the artifacts an install would use, without installing.

    Args:
        names: Names of the formulae to fetch.
        force_bottle: Fetch the bottle even if it would not be poured.
        build_from_source: Fetch source archives for the named formulae.
        debug: Print tracebacks on failure.
    """
    requested = frozenset(short_name(n) for n in names)
    options = InstallOptions(
        force_bottle=force_bottle,
        build_from_source=build_from_source,
        debug=debug,
        build_from_source_formulae=requested if build_from_source else frozenset(),
    )

    def request(name: str, context: RunContext):
        formula = context.formulary.resolve(name)
        return fetch_formula(formula, options, context=context)

    exit_code = EXIT_SUCCESS
    for _, context, _, error in run_requests(names, 1, request, Brewhouse):
        if context.fetched:
            console.print(fetched_table(context.fetched))
        if error is not None:
            exit_code = exit_code or handle_error(error, debug=debug)
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    app()
