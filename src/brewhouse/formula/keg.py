"""On-disk installed trees and their symlink farm in the prefix."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

from brewhouse.core.config import BrewhouseENV
from brewhouse.core.errors import ConflictError, LinkError
from brewhouse.core.logging import get_logger
from brewhouse.formula.tab import FILENAME as TAB_FILENAME

log = get_logger(__name__)

KEG_LINK_DIRECTORIES = ("bin", "etc", "include", "lib", "sbin", "share", "Frameworks")

# Entries that do not count as installed content.
METAFILES = frozenset({TAB_FILENAME, ".brew", "INSTALL_RECEIPT.json.tmp"})

PLACEHOLDERS = {
    "@@HOMEBREW_PREFIX@@": lambda env: str(env.prefix),
    "@@HOMEBREW_CELLAR@@": lambda env: str(env.cellar),
}


class Keg:
    """The installed tree of one formula version, `<cellar>/<name>/<version>`."""

    def __init__(self, path: Path, env: BrewhouseENV) -> None:
        self.path = path
        self.env = env

    @property
    def name(self) -> str:
        return self.path.parent.name

    @property
    def version(self) -> str:
        return self.path.name

    @property
    def linked_keg_record(self) -> Path:
        return self.env.linked / self.name

    @property
    def opt_record(self) -> Path:
        return self.env.opt / self.name

    def exists(self) -> bool:
        return self.path.is_dir()

    def linked(self) -> bool:
        record = self.linked_keg_record
        return record.is_symlink() and record.resolve() == self.path.resolve()

    def empty_installation(self) -> bool:
        if not self.path.is_dir():
            return True
        return not any(p.name not in METAFILES for p in self.path.iterdir())

    def is_keg_file(self, path: Path) -> bool:
        """Whether `path` is a symlink into some keg of the cellar."""
        if not path.is_symlink():
            return False
        target = Path(os.path.realpath(path))
        try:
            target.relative_to(self.env.cellar.resolve())
        except ValueError:
            return False
        return True

    def _link_sources(self):
        for top in KEG_LINK_DIRECTORIES:
            root = self.path / top
            if not root.is_dir():
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                current = Path(dirpath)
                for d in dirnames:
                    yield current / d, True
                for f in sorted(filenames):
                    yield current / f, False

    def _link_one(self, src: Path, dst: Path, dry_run: bool) -> bool:
        """Create one symlink. Returns True when a link was made."""
        if dst.is_symlink():
            if Path(os.path.realpath(dst)) == Path(os.path.realpath(src)):
                return False
            if not dst.exists():
                # Broken links are always safe to replace.
                if not dry_run:
                    dst.unlink()
            else:
                raise ConflictError(dst, keg=str(self.path))
        elif dst.exists():
            raise ConflictError(dst, keg=str(self.path))

        if dry_run:
            return False
        dst.parent.mkdir(parents=True, exist_ok=True)
        dst.symlink_to(os.path.relpath(src, dst.parent))
        return True

    def link(self, dry_run: bool = False) -> int:
        """Symlink the keg's files into the prefix.

        Directories are created for real so several kegs can share them.
        Already-correct links are left alone, so the call can be repeated
        after a conflict has been moved aside.

        Returns:
            Number of links created.

        Raises:
            ConflictError: A target exists and is not this keg's link.
            LinkError: The filesystem refused an operation.
        """
        created = 0
        try:
            for src, is_dir in self._link_sources():
                dst = self.env.prefix / src.relative_to(self.path)
                if is_dir:
                    if dst.is_dir():
                        continue
                    if dst.exists() or dst.is_symlink():
                        raise ConflictError(dst, keg=str(self.path))
                    if not dry_run:
                        dst.mkdir(parents=True, exist_ok=True)
                    continue
                if self._link_one(src, dst, dry_run):
                    created += 1

            if not dry_run:
                self._record(self.linked_keg_record)
                self.optlink()
        except ConflictError:
            raise
        except OSError as e:
            raise LinkError(f"Could not link {self.name}: {e}", path=str(self.path)) from e

        log.info("keg_linked", keg=str(self.path), links=created, dry_run=dry_run)
        return created

    def conflicts(self) -> list[Path]:
        """Paths in the prefix that would block linking."""
        found = []
        for src, is_dir in self._link_sources():
            dst = self.env.prefix / src.relative_to(self.path)
            if is_dir:
                if (dst.exists() or dst.is_symlink()) and not dst.is_dir():
                    found.append(dst)
                continue
            try:
                self._link_one(src, dst, dry_run=True)
            except ConflictError:
                found.append(dst)
        return found

    def unlink(self) -> int:
        """Remove the keg's links from the prefix and its linked record.

        Returns:
            Number of links removed.
        """
        removed = 0
        dirs: list[Path] = []
        for src, is_dir in self._link_sources():
            dst = self.env.prefix / src.relative_to(self.path)
            if is_dir:
                dirs.append(dst)
                continue
            if dst.is_symlink() and Path(os.path.realpath(dst)) == Path(os.path.realpath(src)):
                dst.unlink()
                removed += 1

        for d in sorted(dirs, key=lambda p: len(p.parts), reverse=True):
            try:
                d.rmdir()
            except OSError:
                pass

        self.remove_linked_keg_record()
        log.info("keg_unlinked", keg=str(self.path), links=removed)
        return removed

    def _record(self, record: Path) -> None:
        record.parent.mkdir(parents=True, exist_ok=True)
        if record.is_symlink() or record.exists():
            record.unlink()
        record.symlink_to(self.path)

    def optlink(self) -> None:
        self._record(self.opt_record)

    def remove_linked_keg_record(self) -> None:
        if self.linked_keg_record.is_symlink():
            self.linked_keg_record.unlink()

    def remove_opt_record(self) -> None:
        if self.opt_record.is_symlink() and Path(os.path.realpath(self.opt_record)) == self.path.resolve():
            self.opt_record.unlink()

    def rename(self, target: Path) -> Keg:
        self.path.rename(target)
        return Keg(target, self.env)

    def rmtree(self) -> None:
        shutil.rmtree(self.path)

    def disk_usage(self) -> tuple[int, int]:
        """Number of regular files in the keg and their total size in bytes."""
        files = size = 0
        for dirpath, _, filenames in os.walk(self.path):
            for f in filenames:
                path = Path(dirpath) / f
                if path.is_symlink() or f in METAFILES:
                    continue
                files += 1
                size += path.stat().st_size
        return files, size

    def replace_placeholders_with_locations(self, files: list[str], skip_linkage: bool = False) -> list[str]:
        """Rewrite bottle placeholders in the listed text files.

        Args:
            files: Paths relative to the keg.
            skip_linkage: Bottle is relocatable; only the prefix
                placeholder is rewritten.

        Returns:
            The files that were changed.
        """
        changed = []
        for rel in files:
            path = self.path / rel
            if not path.is_file() or path.is_symlink():
                continue
            try:
                text = path.read_text()
            except UnicodeDecodeError:
                log.debug("placeholder_binary_skipped", path=str(path))
                continue
            new = text
            for placeholder, location in PLACEHOLDERS.items():
                if skip_linkage and placeholder == "@@HOMEBREW_CELLAR@@":
                    continue
                new = new.replace(placeholder, location(self.env))
            if new != text:
                mode = path.stat().st_mode
                path.write_text(new)
                path.chmod(mode)
                changed.append(rel)
        return changed

    def __repr__(self) -> str:
        return f"Keg({str(self.path)!r})"
