"""Lenient semantic version parsing and range constraints.

Registry tags rarely follow strict semver: a leading `v` is common and minor or
patch components are often missing (`v2`, `1.4`). Those parse here as full
versions with the missing parts set to zero.

Constraint syntax:
  - `||` separates alternatives, commas or whitespace join terms that must all hold
  - operators `=`, `!=`, `>`, `<`, `>=`, `<=`, `~`, `~>`, `^`
  - `x`, `X` and `*` wildcards, hyphen ranges such as `1.2 - 1.4.5`

A pre-release version only satisfies a term that itself names a pre-release.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

import semver

from .errors import InvalidPolicy


_VERSION_RE = re.compile(
    r"^v?(?P<major>\d+)"
    r"(?:\.(?P<minor>\d+))?"
    r"(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<prerelease>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?$"
)

_TERM_RE = re.compile(
    r"^(?P<op>!=|>=|<=|=>|=<|~>|[=<>~^])?"
    r"v?(?P<major>\d+|[xX*])"
    r"(?:\.(?P<minor>\d+|[xX*]))?"
    r"(?:\.(?P<patch>\d+|[xX*]))?"
    r"(?:-(?P<prerelease>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?"
    r"(?:\+(?P<build>[0-9A-Za-z\-]+(?:\.[0-9A-Za-z\-]+)*))?$"
)
_HYPHEN_RE = re.compile(r"(\S+)\s+-\s+(\S+)")
_OP_SPACE_RE = re.compile(r"(!=|>=|<=|=>|=<|~>|[=<>~^])\s+")
_WILDCARDS = {"x", "X", "*"}


def parse_version(value: str) -> semver.Version | None:
    """Parse a tag-like string into a Version, or None when it is not one."""
    m = _VERSION_RE.match(value or "")
    if not m:
        return None
    return semver.Version(
        int(m.group("major")),
        int(m.group("minor") or 0),
        int(m.group("patch") or 0),
        m.group("prerelease"),
        m.group("build"),
    )


def without_build(v: semver.Version) -> semver.Version:
    """Drop build metadata, which carries no precedence."""
    return v.replace(build=None)


Check = Callable[[semver.Version], bool]


@dataclass(frozen=True)
class _Term:
    text: str
    check: Check
    has_prerelease: bool

    def allows(self, v: semver.Version) -> bool:
        if v.prerelease and not self.has_prerelease:
            return False
        return self.check(without_build(v))


def _between(lo: semver.Version | None, hi: semver.Version | None) -> Check:
    def check(v: semver.Version) -> bool:
        if lo is not None and v < lo:
            return False
        if hi is not None and v >= hi:
            return False
        return True

    return check


def _compile_term(text: str) -> _Term:
    m = _TERM_RE.match(text)
    if not m:
        raise InvalidPolicy(f"invalid semver constraint term: {text!r}")

    op = m.group("op") or "="
    op = {"=>": ">=", "=<": "<=", "~>": "~"}.get(op, op)
    parts = [m.group("major"), m.group("minor"), m.group("patch")]
    prerelease = m.group("prerelease")

    # Index of the first unspecified component; 3 when fully specified.
    fixed = 0
    for p in parts:
        if p is None or p in _WILDCARDS:
            break
        fixed += 1
    nums = [int(p) if i < fixed else 0 for i, p in enumerate(parts)]
    base = semver.Version(nums[0], nums[1], nums[2], prerelease if fixed == 3 else None)

    def bump(level: int) -> semver.Version:
        # Smallest version above everything matching the first `level` components.
        if level == 1:
            return semver.Version(nums[0] + 1, 0, 0)
        if level == 2:
            return semver.Version(nums[0], nums[1] + 1, 0)
        return semver.Version(nums[0], nums[1], nums[2] + 1)

    dirty = fixed < 3
    has_pre = prerelease is not None

    if fixed == 0:
        # Bare wildcard.
        check: Check
        if op in {"!=", "<"}:
            check = lambda v: False
        else:
            check = lambda v: True
        return _Term(text, check, has_pre)

    if op == "=":
        check = _between(base, bump(fixed)) if dirty else (lambda v: v == base)
    elif op == "!=":
        if dirty:
            inner = _between(base, bump(fixed))
            check = lambda v: not inner(v)
        else:
            check = lambda v: v != base
    elif op == ">":
        if dirty:
            floor = bump(fixed)
            check = lambda v: v >= floor
        else:
            check = lambda v: v > base
    elif op == ">=":
        check = lambda v: v >= base
    elif op == "<":
        check = lambda v: v < base
    elif op == "<=":
        if dirty:
            ceiling = bump(fixed)
            check = lambda v: v < ceiling
        else:
            check = lambda v: v <= base
    elif op == "~":
        check = _between(base, bump(min(fixed, 2)))
    elif op == "^":
        if nums[0] > 0 or fixed == 1:
            upper = bump(1)
        elif nums[1] > 0 or fixed == 2:
            upper = bump(2)
        else:
            upper = bump(3)
        check = _between(base, upper)
    else:  # pragma: no cover
        raise InvalidPolicy(f"unsupported operator {op!r}")
    return _Term(text, check, has_pre)


@dataclass(frozen=True)
class Constraint:
    source: str
    groups: tuple[tuple[_Term, ...], ...]

    def allows(self, v: semver.Version) -> bool:
        return any(all(t.allows(v) for t in group) for group in self.groups)

    def __str__(self) -> str:
        return self.source


@lru_cache(maxsize=256)
def parse_constraint(source: str) -> Constraint:
    """Compile a range expression such as `>=1.2.0 <2.0.0 || ^3`.

    Raises InvalidPolicy when the expression does not parse.
    """
    if not source or not source.strip():
        raise InvalidPolicy("semver range must not be empty")

    groups: list[tuple[_Term, ...]] = []
    for alt in source.split("||"):
        alt = _HYPHEN_RE.sub(r">=\1,<=\2", alt.strip())
        alt = _OP_SPACE_RE.sub(r"\1", alt)
        tokens = [t for t in re.split(r"[,\s]+", alt) if t]
        if not tokens:
            raise InvalidPolicy(f"empty alternative in semver range {source!r}")
        groups.append(tuple(_compile_term(t) for t in tokens))
    return Constraint(source=source, groups=tuple(groups))
