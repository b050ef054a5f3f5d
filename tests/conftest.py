"""
Shared test fixtures: a temporary prefix, a formula tap and fake
isolation/fetch boundaries.
"""

import io
import json
import os
import tarfile
import tempfile
from pathlib import Path

os.environ.setdefault("BREWHOUSE_LOGS", tempfile.mkdtemp(prefix="brewhouse-test-logs-"))

import pytest

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import DownloadError
from brewhouse.formula.formulary import Formulary
from brewhouse.formula.keg import Keg
from brewhouse.formula.tab import Tab
from brewhouse.install.isolation import ExitStatus
from brewhouse.install.orchestrator import new_context


def _tarball(path: Path, files: dict[str, str | bytes]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return path


class TapWriter:
    """Writes formula descriptors (and their scripts) into a test tap."""

    def __init__(self, env: BrewhouseENV) -> None:
        self.env = env
        self.path = env.taps / "homebrew" / "core"
        self.path.mkdir(parents=True, exist_ok=True)

    def add(
        self,
        name: str,
        version: str = "1.0",
        bottle: bool | dict = True,
        post_install: bool = False,
        **fields,
    ) -> Path:
        scripts = self.path / "scripts"
        scripts.mkdir(exist_ok=True)
        build_script = scripts / f"{name}-build.sh"
        build_script.write_text("#!/bin/sh\nmkdir -p \"$2/bin\"\n")

        data = {
            "name": name,
            "tap": "homebrew/core",
            "versions": {"stable": version},
            "build_script": f"scripts/{build_script.name}",
            **fields,
        }
        if isinstance(bottle, dict):
            data["bottle"] = bottle
        elif bottle:
            data["bottle"] = {"stable": {"cellar": ":any", "rebuild": 0}}
        if post_install:
            post_script = scripts / f"{name}-post_install.sh"
            post_script.write_text("#!/bin/sh\nexit 0\n")
            data["post_install_script"] = f"scripts/{post_script.name}"

        path = self.path / f"{name}.json"
        path.write_text(json.dumps(data))
        return path


class FakeRunner:
    """Isolation boundary that installs a single executable per build."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str]]] = []
        self.fail: dict[str, int] = {}

    def run(self, script, args, *, cwd, sandbox, log_path=None):
        self.calls.append((script.name, list(args)))
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(f"{script.name} {' '.join(args)}\n")
        if script.name in self.fail:
            return ExitStatus(self.fail[script.name], log_path)
        if script.name.endswith("-build.sh"):
            prefix = Path(args[args.index("--prefix") + 1])
            (prefix / "bin").mkdir(parents=True, exist_ok=True)
            (prefix / "bin" / prefix.parent.name).write_text("#!/bin/sh\n")
        return ExitStatus(0, log_path)

    def scripts(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeFetcher:
    """Artifact fetcher that fabricates bottles and source archives on demand."""

    def __init__(self, env: BrewhouseENV) -> None:
        self.env = env
        self.calls: list[tuple[str, bool]] = []
        self.missing: set[tuple[str, bool]] = set()
        self.corrupt: set[str] = set()
        self.bottle_files: dict[str, dict[str, str]] = {}
        self.bottle_tabs: dict[str, dict] = {}

    def fetch_artifact(self, formula, wants_bottle):
        self.calls.append((formula.name, wants_bottle))
        if (formula.name, wants_bottle) in self.missing:
            raise DownloadError(formula=formula.full_name, artifact="bottle" if wants_bottle else "source")

        if not wants_bottle:
            return _tarball(
                self.env.cache / f"{formula.name}--{formula.pkg_version}.tar.gz",
                {f"{formula.name}-{formula.version}/README": "source\n"},
            )

        path = self.env.cache / f"{formula.name}--{formula.pkg_version}.bottle.tar.gz"
        if formula.name in self.corrupt:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"this is not a tarball")
            return path

        root = f"{formula.name}/{formula.pkg_version}"
        files = {f"{root}/bin/{formula.name}": "#!/bin/sh\n"}
        for rel, content in self.bottle_files.get(formula.name, {}).items():
            files[f"{root}/{rel}"] = content
        if formula.name in self.bottle_tabs:
            files[f"{root}/INSTALL_RECEIPT.json"] = json.dumps(self.bottle_tabs[formula.name])
        return _tarball(path, files)


@pytest.fixture
def env(tmp_path: Path) -> BrewhouseENV:
    """Return an environment rooted in a temporary directory."""
    prefix = tmp_path / "prefix"
    return BrewhouseENV(
        prefix=prefix,
        cellar=prefix / "Cellar",
        cache=tmp_path / "cache",
        taps=tmp_path / "taps",
        logs=tmp_path / "logs",
        temp=tmp_path / "tmp",
        build_tools=(),
        fetch_retries=2,
        fetch_retry_delay=0.0,
    )


@pytest.fixture
def tap(env: BrewhouseENV) -> TapWriter:
    return TapWriter(env)


@pytest.fixture
def formulary(env: BrewhouseENV, tap: TapWriter) -> Formulary:
    return Formulary(env)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fetcher(env: BrewhouseENV) -> FakeFetcher:
    return FakeFetcher(env)


@pytest.fixture
def context(env, formulary, runner, fetcher):
    return new_context(env, formulary, runner, fetcher)


@pytest.fixture
def install_keg(env: BrewhouseENV):
    """Create an installed keg on disk, optionally linked."""

    def _install(
        name: str,
        version: str = "1.0",
        linked: bool = True,
        tap: str | None = "homebrew/core",
        used_options: list[str] | None = None,
    ) -> Keg:
        path = env.cellar / name / version
        (path / "bin").mkdir(parents=True)
        (path / "bin" / name).write_text("#!/bin/sh\n")
        tab = Tab.for_keg(path)
        tab.tap = tap
        tab.used_options = used_options or []
        tab.installed_on_request = True
        tab.write()
        keg = Keg(path, env)
        if linked:
            keg.link()
        return keg

    return _install
