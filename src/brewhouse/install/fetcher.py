"""Artifact materialisation for bottles and source archives."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import DownloadError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Formula

log = get_logger(__name__)


class ArtifactFetcher(Protocol):
    """Materialises a local artifact for a formula."""

    def fetch_artifact(self, formula: Formula, wants_bottle: bool) -> Path:
        ...


def artifact_name(formula: Formula, wants_bottle: bool) -> str:
    suffix = ".bottle.tar.gz" if wants_bottle else ".tar.gz"
    return f"{formula.name}--{formula.pkg_version}{suffix}"


class CacheFetcher:
    """Looks artifacts up in the download cache.

    Downloading is done elsewhere; this only hands out what the cache
    already holds.
    """

    def __init__(self, env: BrewhouseENV) -> None:
        self.env = env

    def fetch_artifact(self, formula: Formula, wants_bottle: bool) -> Path:
        path = self.env.cache / artifact_name(formula, wants_bottle)
        if not path.is_file():
            log.warning("artifact_missing", formula=formula.name, path=str(path), bottle=wants_bottle)
            raise DownloadError(
                formula=formula.full_name,
                artifact="bottle" if wants_bottle else "source",
                context={"path": str(path)},
            )
        log.debug("artifact_cached", formula=formula.name, path=str(path))
        return path
