"""Build options declared by formulae and requested for installs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator


@dataclass(frozen=True)
class Option:
    """A single named build option, e.g. `with-openssl`."""

    name: str
    description: str = ""

    @classmethod
    def parse(cls, flag: str, description: str = "") -> Option:
        return cls(flag.lstrip("-"), description)

    @property
    def flag(self) -> str:
        return f"--{self.name}"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Option):
            return self.name == other.name
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.name)

    def __str__(self) -> str:
        return self.flag


class Options:
    """Insertion-ordered set of options."""

    def __init__(self, options: Iterable[Option | str] = ()) -> None:
        self._options: dict[str, Option] = {}
        for opt in options:
            self.add(opt)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> Options:
        return cls(Option.parse(n) for n in names)

    def add(self, option: Option | str) -> None:
        if isinstance(option, str):
            option = Option.parse(option)
        self._options.setdefault(option.name, option)

    def names(self) -> list[str]:
        return list(self._options)

    def as_flags(self) -> list[str]:
        return [o.flag for o in self]

    def __contains__(self, item: object) -> bool:
        if isinstance(item, Option):
            return item.name in self._options
        if isinstance(item, str):
            return item.lstrip("-") in self._options
        return False

    def __iter__(self) -> Iterator[Option]:
        return iter(self._options.values())

    def __len__(self) -> int:
        return len(self._options)

    def __bool__(self) -> bool:
        return bool(self._options)

    def __or__(self, other: Iterable[Option | str]) -> Options:
        return Options([*self, *other])

    def __and__(self, other: Options) -> Options:
        return Options(o for o in self if o in other)

    def __sub__(self, other: Options) -> Options:
        return Options(o for o in self if o not in other)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Options):
            return set(self._options) == set(other._options)
        return NotImplemented

    def __repr__(self) -> str:
        return f"Options({self.names()!r})"


class BuildOptions:
    """Options in effect for one formula's build.

    Args:
        args: Options requested for this build.
        declared: Options the formula declares; requested options it does
            not declare are ignored.
    """

    def __init__(self, args: Options, declared: Options) -> None:
        self.args = args & declared
        self.declared = declared

    def include(self, name: str) -> bool:
        return name in self.args

    def with_(self, name: str) -> bool:
        if f"with-{name}" in self.declared:
            return self.include(f"with-{name}")
        if f"without-{name}" in self.declared:
            return not self.include(f"without-{name}")
        return False

    def without(self, name: str) -> bool:
        return not self.with_(name)

    @property
    def used_options(self) -> Options:
        return self.args

    @property
    def unused_options(self) -> Options:
        return self.declared - self.args
