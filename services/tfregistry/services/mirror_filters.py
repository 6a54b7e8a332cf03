"""Namespace, provider, version and platform filters for mirror configurations.

Version filter forms::

    ""                  every version
    "latest:5"          the five newest versions
    "1.2." / "1.2.x"    string prefix
    "1.2.3,1.3.0"       explicit set (a single bare version works too)
    ">= 4.0, < 5.0"     Terraform constraint (=, !=, >, >=, <, <=, ~>)
"""

import fnmatch
import re
from collections.abc import Iterable, Sequence
from typing import Protocol, TypeVar

from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.version import InvalidVersion, Version

from tfregistry.logging_config import get_logger

logger = get_logger(__name__)

_GLOB_CHARS = frozenset("*?[")
_BARE_VERSION_RE = re.compile(r"^v?\d+(\.\d+)*(-[0-9A-Za-z.-]+)?(\+[0-9A-Za-z.-]+)?$")
_CONSTRAINT_RE = re.compile(r"^\s*(~>|>=|<=|!=|=|>|<)?\s*(\S+)\s*$")


class InvalidMirrorFilter(ValueError):
    pass


class InvalidVersionFilter(InvalidMirrorFilter):
    pass


class InvalidPlatformFilter(InvalidMirrorFilter):
    pass


class _HasPlatform(Protocol):
    os: str
    arch: str


P = TypeVar("P", bound=_HasPlatform)


# --- Name globs ---


def is_glob(pattern: str) -> bool:
    return any(c in _GLOB_CHARS for c in pattern)


def explicit_names(patterns: Sequence[str] | None) -> list[str] | None:
    """Names to use directly when no pattern is a glob, else None."""
    if not patterns or any(is_glob(p) for p in patterns):
        return None
    return list(patterns)


def matches_any(value: str, patterns: Sequence[str] | None) -> bool:
    """Case-insensitive glob match. No patterns means everything matches."""
    if not patterns:
        return True
    lowered = value.lower()
    return any(fnmatch.fnmatchcase(lowered, p.lower()) for p in patterns)


# --- Versions ---


def parse_version(value: str) -> Version | None:
    try:
        return Version(value)
    except InvalidVersion:
        return None


def _terraform_specifier(expr: str) -> SpecifierSet:
    parts = []
    for clause in expr.split(","):
        if not clause.strip():
            continue
        m = _CONSTRAINT_RE.match(clause)
        if m is None:
            raise InvalidVersionFilter(f"invalid version constraint: {clause.strip()}")
        op, ver = m.group(1) or "==", m.group(2)
        if op == "=":
            op = "=="
        elif op == "~>":
            # ~> 1 allows every 1.x and later, which ~= cannot express
            op = "~=" if "." in ver else ">="
        parts.append(f"{op}{ver}")
    if not parts:
        raise InvalidVersionFilter(f"invalid version constraint: {expr}")
    try:
        return SpecifierSet(",".join(parts))
    except InvalidSpecifier:
        raise InvalidVersionFilter(f"invalid version constraint: {expr}") from None


def _latest(versions: Sequence[str], spec: str) -> set[str]:
    try:
        count = int(spec.split(":", 1)[1])
    except ValueError:
        raise InvalidVersionFilter(f"invalid latest filter: {spec}") from None
    if count < 1:
        raise InvalidVersionFilter(f"invalid latest filter: {spec}")
    parsed = [(v, parse_version(v)) for v in versions]
    ranked = sorted((p, v) for v, p in parsed if p is not None)
    return {v for _, v in ranked[-count:]}


def select_versions(versions: Sequence[str], version_filter: str | None) -> list[str]:
    """Versions admitted by the filter, in their original order."""
    spec = (version_filter or "").strip()
    if not spec:
        return list(versions)

    if spec.lower().startswith("latest:"):
        keep = _latest(versions, spec)
        return [v for v in versions if v in keep]

    if spec.endswith((".x", ".*")):
        spec = spec[:-1]
    if spec.endswith("."):
        return [v for v in versions if v.startswith(spec)]

    items = [item.strip() for item in spec.split(",") if item.strip()]
    if items and all(_BARE_VERSION_RE.match(item) for item in items):
        wanted = {item.removeprefix("v") for item in items}
        return [v for v in versions if v in wanted]

    specifier = _terraform_specifier(spec)
    selected = []
    for v in versions:
        parsed = parse_version(v)
        if parsed is None:
            logger.debug("Skipping unparseable upstream version", version=v)
            continue
        if specifier.contains(parsed):
            selected.append(v)
    return selected


# --- Platforms ---


def parse_platform_filter(entries: Iterable[str] | None) -> list[tuple[str, str]]:
    pairs = []
    for entry in entries or []:
        os_, sep, arch = entry.strip().lower().partition("/")
        if not sep or not os_ or not arch:
            raise InvalidPlatformFilter(f"platform filter entries must be os/arch: {entry}")
        pairs.append((os_, arch))
    return pairs


def select_platforms(platforms: Sequence[P], platform_filter: Iterable[str] | None) -> list[P]:
    pairs = parse_platform_filter(platform_filter)
    if not pairs:
        return list(platforms)
    return [
        p
        for p in platforms
        if any(
            fnmatch.fnmatchcase(p.os.lower(), os_) and fnmatch.fnmatchcase(p.arch.lower(), arch)
            for os_, arch in pairs
        )
    ]
