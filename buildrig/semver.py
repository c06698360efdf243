"""Semantic versions and version constraints.

Parsing is lenient: a leading ``v`` is allowed, minor and patch default to 0
and leading zeros in the numeric parts are accepted. Constraints accept the
operators ``= != > < >= => <= =< ~ ~> ^``, ``x``/``X``/``*`` wildcards, comma
or space separated terms that must all hold, ``||`` alternatives and hyphen
ranges such as ``1.2 - 1.4.5``.
"""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass
from typing import Callable

_IDENT = r"[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*"
_VERSION_RE = re.compile(
    rf"v?([0-9]+)(?:\.([0-9]+))?(?:\.([0-9]+))?(?:-({_IDENT}))?(?:\+({_IDENT}))?"
)
_NUMERIC_RE = re.compile(r"[0-9]+")

_OPS = r"!=|>=|=>|<=|=<|~>|>|<|=|~|\^"
_CV = rf"v?[0-9xX*]+(?:\.[0-9xX*]+)?(?:\.[0-9xX*]+)?(?:-{_IDENT})?(?:\+{_IDENT})?"
_TERM_RE = re.compile(
    rf"\s*(?P<op>{_OPS})?\s*"
    rf"(?P<ver>v?(?P<major>[0-9xX*]+)(?P<minor>\.[0-9xX*]+)?(?P<patch>\.[0-9xX*]+)?"
    rf"(?P<pre>-{_IDENT})?(?:\+{_IDENT})?)\s*"
)
_FIND_RE = re.compile(rf"(?:{_OPS})?\s*{_CV}")
_VALID_RE = re.compile(rf"(?:\s*(?:{_OPS})?\s*{_CV}\s*,?)+")
_RANGE_RE = re.compile(rf"\s*({_CV})\s+-\s+({_CV})\s*")


def _compare_pre_part(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return -1
    if not b:
        return 1
    a_num = _NUMERIC_RE.fullmatch(a) is not None
    b_num = _NUMERIC_RE.fullmatch(b) is not None
    if a_num and b_num:
        return 1 if int(a) > int(b) else -1
    if a_num:
        return -1
    if b_num:
        return 1
    return 1 if a > b else -1


def _compare_prerelease(a: str, b: str) -> int:
    parts_a = a.split(".")
    parts_b = b.split(".")
    for i in range(max(len(parts_a), len(parts_b))):
        left = parts_a[i] if i < len(parts_a) else ""
        right = parts_b[i] if i < len(parts_b) else ""
        result = _compare_pre_part(left, right)
        if result:
            return result
    return 0


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """A semantic version; build metadata takes no part in comparisons."""

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: str = ""
    metadata: str = ""

    def compare(self, other: Version) -> int:
        """Return -1, 0 or 1 as this version is lower, equal or higher."""
        mine = (self.major, self.minor, self.patch)
        theirs = (other.major, other.minor, other.patch)
        if mine != theirs:
            return -1 if mine < theirs else 1
        if self.prerelease == other.prerelease:
            return 0
        if not self.prerelease:
            return 1
        if not other.prerelease:
            return -1
        return _compare_prerelease(self.prerelease, other.prerelease)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) == 0

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self.compare(other) < 0

    def __hash__(self) -> int:
        return hash((self.major, self.minor, self.patch, self.prerelease))

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            text += f"-{self.prerelease}"
        if self.metadata:
            text += f"+{self.metadata}"
        return text


def parse_version(text: str) -> Version:
    """Parse a version leniently; raise ValueError when it is not one."""
    match = _VERSION_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid semantic version: {text!r}")
    major, minor, patch, pre, meta = match.groups()
    prerelease = pre or ""
    for segment in prerelease.split(".") if prerelease else ():
        if _NUMERIC_RE.fullmatch(segment) and len(segment) > 1 and segment[0] == "0":
            raise ValueError(f"version segment starts with 0: {text!r}")
    return Version(
        major=int(major),
        minor=int(minor or 0),
        patch=int(patch or 0),
        prerelease=prerelease,
        metadata=meta or "",
    )


@dataclass(frozen=True)
class _Term:
    op: str
    version: Version
    dirty: bool = False
    minor_dirty: bool = False
    patch_dirty: bool = False


def _is_x(part: str) -> bool:
    return part in ("x", "X", "*")


def _parse_term(text: str) -> _Term:
    match = _TERM_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"improper constraint: {text}")
    op = match["op"] or ""
    major, minor, patch, pre = match["major"], match["minor"], match["patch"], match["pre"] or ""
    dirty = minor_dirty = patch_dirty = False
    ver = match["ver"]
    if _is_x(major):
        ver, dirty = f"0.0.0{pre}", True
    elif not minor or _is_x(minor[1:]):
        ver, dirty, minor_dirty = f"{major}.0.0{pre}", True, True
    elif not patch or _is_x(patch[1:]):
        ver, dirty, patch_dirty = f"{major}{minor}.0{pre}", True, True
    return _Term(op, parse_version(ver), dirty, minor_dirty, patch_dirty)


def _blocked(v: Version, t: _Term) -> bool:
    # A pre-release only satisfies terms that mention a pre-release themselves.
    return bool(v.prerelease) and not t.version.prerelease


def _tilde(v: Version, t: _Term) -> bool:
    c = t.version
    if _blocked(v, t) or v < c:
        return False
    if (c.major, c.minor, c.patch) == (0, 0, 0) and not t.minor_dirty and not t.patch_dirty:
        return True
    if v.major != c.major:
        return False
    return v.minor == c.minor or t.minor_dirty


def _tilde_or_equal(v: Version, t: _Term) -> bool:
    if _blocked(v, t):
        return False
    if t.dirty:
        return _tilde(v, t)
    return v == t.version


def _not_equal(v: Version, t: _Term) -> bool:
    c = t.version
    if t.dirty:
        if _blocked(v, t):
            return False
        if c.major != v.major:
            return True
        if c.minor != v.minor and not t.minor_dirty:
            return True
        if t.minor_dirty:
            return False
        if c.patch != v.patch and not t.patch_dirty:
            return True
        if t.patch_dirty:
            if v.prerelease or c.prerelease:
                return _compare_prerelease(v.prerelease, c.prerelease) != 0
            return False
    return v != c


def _greater_than(v: Version, t: _Term) -> bool:
    c = t.version
    if _blocked(v, t):
        return False
    if not t.dirty:
        return v > c
    if v.major != c.major:
        return v.major > c.major
    if t.minor_dirty:
        return False
    if t.patch_dirty:
        return v.minor > c.minor
    return v > c


def _less_than(v: Version, t: _Term) -> bool:
    return not _blocked(v, t) and v < t.version


def _greater_equal(v: Version, t: _Term) -> bool:
    return not _blocked(v, t) and v >= t.version


def _less_equal(v: Version, t: _Term) -> bool:
    c = t.version
    if _blocked(v, t):
        return False
    if not t.dirty:
        return v <= c
    if v.major > c.major:
        return False
    if v.major == c.major and v.minor > c.minor and not t.minor_dirty:
        return False
    return True


def _caret(v: Version, t: _Term) -> bool:
    c = t.version
    if _blocked(v, t) or v < c:
        return False
    if c.major > 0 or t.minor_dirty:
        return v.major == c.major
    if c.minor > 0 or t.patch_dirty:
        return (v.major, v.minor) == (c.major, c.minor)
    return (v.major, v.minor, v.patch) == (c.major, c.minor, c.patch)


_CHECKS: dict[str, Callable[[Version, _Term], bool]] = {
    "": _tilde_or_equal,
    "=": _tilde_or_equal,
    "!=": _not_equal,
    ">": _greater_than,
    "<": _less_than,
    ">=": _greater_equal,
    "=>": _greater_equal,
    "<=": _less_equal,
    "=<": _less_equal,
    "~": _tilde,
    "~>": _tilde,
    "^": _caret,
}


class Constraint:
    """A set of alternatives, each a list of terms that must all hold."""

    def __init__(self, text: str, alternatives: list[list[_Term]]) -> None:
        self.text = text
        self._alternatives = alternatives

    def check(self, version: Version | str) -> bool:
        """Whether the version satisfies the constraint."""
        if isinstance(version, str):
            version = parse_version(version)
        return any(
            all(_CHECKS[term.op](version, term) for term in group)
            for group in self._alternatives
        )

    def __str__(self) -> str:
        return self.text

    def __repr__(self) -> str:
        return f"Constraint({self.text!r})"


def _rewrite_ranges(text: str) -> str:
    return _RANGE_RE.sub(lambda m: f">= {m.group(1)}, <= {m.group(2)}", text)


def parse_constraint(text: str) -> Constraint:
    """Parse a constraint expression; raise ValueError when it is malformed."""
    rewritten = _rewrite_ranges(text)
    alternatives = []
    for segment in rewritten.split("||"):
        if not _VALID_RE.fullmatch(segment):
            raise ValueError(f"improper constraint: {segment}")
        terms = _FIND_RE.findall(segment) or [segment]
        alternatives.append([_parse_term(term) for term in terms])
    return Constraint(text, alternatives)