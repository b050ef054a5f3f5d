"""Module defining custom exceptions for the Brewhouse installer."""

from __future__ import annotations

import functools
import time
from typing import Any, Callable, Iterable, Self, TypeVar

from brewhouse.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Exit Codes
EXIT_SUCCESS = 0
EXIT_USER_ERROR = 1
EXIT_SYSTEM_ERROR = 2
EXIT_TRANSIENT_ERROR = 3


class BrewError(Exception):
    """Base exception class with context propagation.

    All exceptions in Brewhouse should inherit from this class.
    Context is a dictionary that accumulates relevant information
    as the exception propagates up the call stack.

    Example:
        raise BrewError("An error occurred", context={"formula": "foo"})

        # Or with context propagation
        try:
            ...
        except BrewError as e:
            raise e.with_context(operation="install", dependent="bar")
    """
    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Stable identifying name of the failure kind."""
        return type(self).__name__

    def with_context(self, **new_context: Any) -> Self:
        """Returns the exception with updated context.

        Args:
            **new_context: Additional context to add to the exception.

        Returns:
            The same instance of the exception with merged context.
        """
        self.context.update(new_context)
        return self

    def __str__(self) -> str:
        """String representation of the exception including context."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class TransientError(BrewError):
    """Errors that should be retried immediately.

    These errors are typically due to temporary conditions such as
    network issues or resource unavailability.

    Operations raising this exception should be idempotent.
    """
    pass


class UserError(BrewError):
    """Errors caused by user actions or inputs.

    These errors indicate that the request cannot be satisfied as given,
    and should not be retried without correction.

    CLI should display helpful messages to guide the user.
    """
    pass


class SystemError(BrewError):
    """Errors due to system-level issues.

    These errors indicate problems with the system environment, such as
    file system errors, permission issues, missing toolchains or failing
    build scripts.

    CLI should display diagnostic information for troubleshooting.
    """
    pass


## Specific Exceptions ##

class CommandTimeoutError(TransientError):
    """An isolated command ran past its timeout."""
    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        timeout: float | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if timeout is not None:
            ctx["timeout"] = timeout

        if message is None:
            message = f"Command timed out after {timeout or 'unknown'}s"

        super().__init__(message, context=ctx)


class DownloadError(TransientError):
    """An artifact (bottle or source archive) could not be materialised.

    This will be retried automatically by the caller.
    """
    def __init__(
        self,
        message: str | None = None,
        formula: str | None = None,
        artifact: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if formula:
            ctx["formula"] = formula
        if artifact:
            ctx["artifact"] = artifact

        if message is None:
            message = f"Failed to fetch {artifact or 'artifact'} for {formula or 'unknown'}"

        super().__init__(message, context=ctx)


class FormulaUnavailableError(UserError):
    """Requested formula does not exist in any tap.

    This is UserError - do not retry without changing the formula name.
    """
    def __init__(
        self,
        message: str | None = None,
        formula: str | None = None,
        dependent: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if formula:
            ctx["formula"] = formula
        if dependent:
            ctx["dependent"] = dependent

        if message is None:
            message = f"No available formula with the name '{formula or 'unknown'}'"

        super().__init__(message, context=ctx)


class CannotInstallFormulaError(UserError):
    """The formula cannot be installed in the current state of the system."""
    pass


class CircularDependencyError(CannotInstallFormulaError):
    """A formula depends on itself, directly or through other formulae."""
    def __init__(self, cycle: Iterable[str], context: dict[str, Any] | None = None) -> None:
        self.cycle = list(cycle)
        ctx = context or {}
        ctx["cycle"] = " -> ".join(self.cycle)
        ctx["formula"] = self.cycle[0] if self.cycle else "unknown"
        super().__init__(
            f"{ctx['formula']} contains a recursive dependency on itself: {ctx['cycle']}",
            context=ctx,
        )


class UnsatisfiedPinnedDependency(CannotInstallFormulaError):
    """Pinned formulae block the versions this install requires."""
    def __init__(
        self, formula: str, pinned: Iterable[str], context: dict[str, Any] | None = None
    ) -> None:
        self.pinned = sorted(pinned)
        ctx = context or {}
        ctx["formula"] = formula
        ctx["pinned"] = " ".join(self.pinned)
        super().__init__(
            f"Installing {formula} requires the latest version of pinned dependencies",
            context=ctx,
        )


class ForbiddenLicenseError(CannotInstallFormulaError):
    """One or more formulae in the closure carry a forbidden license."""
    def __init__(
        self,
        formula: str,
        offenders: Iterable[tuple[str, str]],
        context: dict[str, Any] | None = None,
    ) -> None:
        self.offenders = list(offenders)
        ctx = context or {}
        ctx["formula"] = formula
        ctx["offenders"] = ", ".join(f"{name} ({lic})" for name, lic in self.offenders)
        super().__init__(
            f"The installation of {formula} involves forbidden licenses",
            context=ctx,
        )


class FormulaConflictError(CannotInstallFormulaError):
    """A formula declared as conflicting is currently linked."""
    def __init__(
        self, formula: str, conflicts: Iterable[str], context: dict[str, Any] | None = None
    ) -> None:
        self.conflicts = list(conflicts)
        ctx = context or {}
        ctx["formula"] = formula
        ctx["conflicts"] = " ".join(self.conflicts)
        super().__init__(
            f"Cannot install {formula} because conflicting formulae are installed",
            context=ctx,
        )


class UnsatisfiedRequirements(UserError):
    """Fatal requirements of the closure are not met by this system."""
    def __init__(
        self,
        requirements: Iterable[Any],
        messages: Iterable[str] = (),
        context: dict[str, Any] | None = None,
    ) -> None:
        self.requirements = list(requirements)
        self.messages = list(messages)
        ctx = context or {}
        ctx["requirements"] = ", ".join(str(r) for r in self.requirements)
        noun = "requirement" if len(self.requirements) == 1 else "requirements"
        super().__init__(
            f"Unsatisfied {noun} failed this build.",
            context=ctx,
        )


class FormulaInstallationAlreadyAttemptedError(BrewError):
    """The formula is already being installed in the current run.

    Never surfaced to the end user; the recursive installer joins the
    in-flight install instead.
    """
    def __init__(self, formula: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["formula"] = formula
        super().__init__(f"Formula installation already attempted: {formula}", context=ctx)


class BuildToolsError(SystemError):
    """Formulae need a source build but no build toolchain is present."""
    def __init__(self, formulae: Iterable[str], context: dict[str, Any] | None = None) -> None:
        self.formulae = sorted(set(formulae))
        ctx = context or {}
        ctx["formulae"] = ", ".join(self.formulae)
        noun = "formula" if len(self.formulae) == 1 else "formulae"
        super().__init__(
            f"The following {noun} cannot be installed from bottles and must be built from source",
            context=ctx,
        )


class BuildError(SystemError):
    """The isolated build script exited unsuccessfully."""
    def __init__(
        self,
        formula: str,
        returncode: int | None = None,
        log_path: str | None = None,
        options: Iterable[str] = (),
        message: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        ctx["formula"] = formula
        ctx["returncode"] = returncode if returncode is not None else "unknown"
        ctx["log"] = log_path or ""
        ctx["options"] = " ".join(options)
        if message is None:
            message = f"Failed to build {formula}"
        super().__init__(message, context=ctx)


class IncompatibleBottleError(SystemError):
    """A poured bottle was built for a different toolchain or architecture."""
    pass


class LinkError(SystemError):
    """Symlinking a keg into the prefix failed."""
    def __init__(
        self,
        message: str | None = None,
        path: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        ctx = context or {}
        if path:
            ctx["path"] = path
        if message is None:
            message = f"Could not symlink {path or 'file'}"
        super().__init__(message, context=ctx)


class ConflictError(LinkError):
    """A link target already exists and does not belong to this keg."""
    def __init__(self, dst: Any, keg: str | None = None, context: dict[str, Any] | None = None) -> None:
        self.dst = dst
        ctx = context or {}
        if keg:
            ctx["keg"] = keg
        super().__init__(f"Target {dst} already exists", path=str(dst), context=ctx)


def retry_on_transient(
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Retry functions on transient errors with exponential backoff.

    Args:
        max_retries: Maximum number of attempts before giving up.
        base_delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay to implement exponential backoff.

    Returns:
        A decorator that applies the retry logic to the decorated function.

    Example:
        @retry_on_transient(max_retries=5, base_delay=2.0)
        def fetch_artifact(formula, wants_bottle):
            ...

    Note:
        - Only retries on TransientError exceptions.
        - Logs each retry attempt with context information.
        - Delays: 1s, 2s, 4s with default settings.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        """Decorator to apply retry logic to the function."""
        name = getattr(func, "__name__", repr(func))

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            last_error: TransientError | None = None

            for attempt in range(1, max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except TransientError as e:
                    last_error = e

                    if attempt == max_retries:
                        log.error(
                            "retry_exhausted",
                            function=name,
                            attempts=max_retries,
                            error=str(e),
                            context=e.context
                        )
                        raise

                    delay = base_delay * (backoff ** (attempt - 1))
                    log.warning(
                        "retry_attempt",
                        function=name,
                        attempt=attempt,
                        max_attempts=max_retries,
                        delay_seconds=delay,
                        error=str(e),
                        context=e.context
                    )
                    time.sleep(delay)

            raise last_error  # type: ignore

        return wrapper

    return decorator


# CLI Error Message Templates

ERROR_TEMPLATES = {
    FormulaUnavailableError: (
        "❌ No available formula: {formula}\n"
        "   Suggestion: check the spelling or add the tap that provides it"
    ),
    CircularDependencyError: (
        "❌ {formula} contains a recursive dependency on itself:\n"
        "   {cycle}\n"
        "   Fix: remove one of the dependency edges in the cycle"
    ),
    UnsatisfiedPinnedDependency: (
        "❌ {message}\n"
        "   Fix: run 'brewhouse unpin {pinned}'"
    ),
    ForbiddenLicenseError: (
        "❌ {message}: {offenders}\n"
        "   Fix: remove the licenses from BREWHOUSE_FORBIDDEN_LICENSES or pick another formula"
    ),
    FormulaConflictError: (
        "❌ {message}: {conflicts}\n"
        "   Fix: run 'brewhouse unlink {conflicts}' first, or pass --force"
    ),
    UnsatisfiedRequirements: (
        "❌ {message}\n"
        "   Missing: {requirements}"
    ),
    BuildToolsError: (
        "⚠️ {message}: {formulae}\n"
        "   Fix: install a compiler toolchain (cc, make) and try again"
    ),
    BuildError: (
        "⚠️ {message} (exit code {returncode})\n"
        "   Logs: {log}"
    ),
    DownloadError: (
        "⚠️ {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    CommandTimeoutError: (
        "⚠️ Command timed out after {timeout}s: {command}"
    ),
    ConflictError: (
        "⚠️ {message}\n"
        "   Fix: remove or move {path} and run 'brewhouse link' again"
    ),
    TransientError: (
        "⚠️ Temporary failure: {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    UserError: (
        "❌ {message}"
    ),
    SystemError: (
        "⚠️ System error: {message}\n"
        "   Please check your system configuration and try again"
    ),
    BrewError: (
        "❌ {message}"
    ),
}


def format_error_message(error: BrewError) -> str:
    """Formats an error message for CLI display based on the error type.

    The most specific template registered for the error's class hierarchy
    is used.

    Args:
        error: The BrewError instance to format.

    Returns:
        A formatted string message for CLI display.
    """
    template = ERROR_TEMPLATES[BrewError]
    for cls in type(error).__mro__:
        if cls in ERROR_TEMPLATES:
            template = ERROR_TEMPLATES[cls]
            break
    try:
        return template.format(message=error.message, **error.context)
    except KeyError:
        return f"❌ {error.message}"
