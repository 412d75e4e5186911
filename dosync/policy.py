"""Image policy evaluation: choose one tag out of a registry tag list.

`select_tag` is pure and deterministic: the result does not depend on the
order of the input tags.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Annotated, Any, Iterable, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidPolicy
from .imageref import ImageRef, is_digest_tag
from .versions import parse_constraint, parse_version, without_build


_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_DIGITS_RE = re.compile(r"^\d+$")
# `(?<name>...)` is accepted as an alias of `(?P<name>...)`.
_ANGLE_GROUP_RE = re.compile(r"\(\?<(?=[A-Za-z_])")


@lru_cache(maxsize=256)
def compile_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(_ANGLE_GROUP_RE.sub("(?P<", pattern))
    except re.error as e:
        raise InvalidPolicy(f"invalid filter pattern {pattern!r}: {e}") from e


def _normalize_order(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


Order = Annotated[Literal["asc", "desc"], BeforeValidator(_normalize_order)]


class TagFilter(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    pattern: str | None = None
    extract: str | None = None

    @field_validator("pattern")
    @classmethod
    def _pattern_compiles(cls, v: str | None) -> str | None:
        if v:
            compile_pattern(v)
        return v

    @model_validator(mode="after")
    def _extract_names_a_group(self) -> "TagFilter":
        if self.extract:
            if not self.pattern:
                raise InvalidPolicy("filterTags.extract requires filterTags.pattern")
            if self.group_name not in compile_pattern(self.pattern).groupindex:
                raise InvalidPolicy(f"filterTags.extract {self.extract!r} does not name a capture group of the pattern")
        return self

    @property
    def group_name(self) -> str | None:
        if not self.extract:
            return None
        return self.extract[1:] if self.extract.startswith("$") else self.extract


class NumericalOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    order: Order = "desc"


class AlphabeticalOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    order: Order = "desc"


class SemverRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    range: str | None = None

    @field_validator("range")
    @classmethod
    def _range_parses(cls, v: str | None) -> str | None:
        if v is not None and v.strip():
            parse_constraint(v)
            return v
        return None


class OrderingPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    numerical: NumericalOrder | None = None
    semver: SemverRange | None = None
    alphabetical: AlphabeticalOrder | None = None

    @model_validator(mode="after")
    def _at_most_one(self) -> "OrderingPolicy":
        chosen = [n for n in ("numerical", "semver", "alphabetical") if getattr(self, n) is not None]
        if len(chosen) > 1:
            raise InvalidPolicy(f"only one ordering may be set, got {', '.join(chosen)}")
        return self

    @property
    def is_empty(self) -> bool:
        return self.numerical is None and self.semver is None and self.alphabetical is None


class ImagePolicy(BaseModel):
    """`imagePolicy` block: an optional tag filter plus at most one ordering."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    filter_tags: TagFilter | None = Field(None, alias="filterTags")
    policy: OrderingPolicy | None = None


class PolicySource(str, Enum):
    SEMVER = "semver"
    NUMERICAL = "numerical"
    ALPHABETICAL = "alphabetical"
    FALLBACK = "fallback"


def policy_source(policy: ImagePolicy | None) -> PolicySource:
    ordering = policy.policy if policy else None
    if ordering is None or ordering.is_empty:
        return PolicySource.FALLBACK
    if ordering.semver is not None:
        return PolicySource.SEMVER
    if ordering.numerical is not None:
        return PolicySource.NUMERICAL
    return PolicySource.ALPHABETICAL


@dataclass(frozen=True)
class TaggedValue:
    tag: str
    value: str


def _filter(tags: list[str], tag_filter: TagFilter | None) -> list[TaggedValue]:
    if tag_filter is None or not tag_filter.pattern:
        return [TaggedValue(t, t) for t in tags]

    rx = compile_pattern(tag_filter.pattern)
    group = tag_filter.group_name
    out: list[TaggedValue] = []
    for t in tags:
        m = rx.search(t)
        if not m:
            continue
        if group is None:
            out.append(TaggedValue(t, t))
            continue
        value = m.group(group)
        # Group did not take part in the match: drop the tag.
        if value is None:
            continue
        out.append(TaggedValue(t, value))
    return out


def _fallback(tags: list[str]) -> str:
    stable = []
    for t in tags:
        v = parse_version(t)
        if v is not None and not v.prerelease:
            stable.append(t)
    return max(stable) if stable else max(tags)


def _parse_number(value: str) -> int | float | None:
    if _INT_RE.match(value):
        return int(value)
    if _FLOAT_RE.match(value):
        n = float(value)
        if math.isnan(n):
            return None
        return n
    return None


def _pick(keyed: list[tuple[Any, str]], order: str) -> str:
    chosen = min(keyed) if order == "asc" else max(keyed)
    return chosen[1]


def _semver(values: list[TaggedValue], spec: SemverRange) -> str | None:
    if all(_DIGITS_RE.match(tv.value) for tv in values):
        return None
    constraint = parse_constraint(spec.range) if spec.range else None
    keyed = []
    for tv in values:
        v = parse_version(tv.value)
        if v is None:
            continue
        if constraint is not None and not constraint.allows(v):
            continue
        keyed.append((without_build(v), tv.tag))
    if not keyed:
        return None
    return _pick(keyed, "desc")


def _numerical(values: list[TaggedValue], order: str) -> str | None:
    keyed = []
    for tv in values:
        n = _parse_number(tv.value)
        if n is not None:
            keyed.append((n, tv.tag))
    if not keyed:
        return None
    return _pick(keyed, order)


def _alphabetical(values: list[TaggedValue], order: str) -> str | None:
    return _pick([(tv.value, tv.tag) for tv in values], order)


def select_tag(tags: Iterable[str], policy: ImagePolicy | None = None) -> str | None:
    """Return the tag chosen by `policy`, or None when nothing qualifies.

    Without an ordering clause the highest stable semver tag wins, falling back
    to the lexicographically highest tag. A semver ordering never falls back:
    if no value parses as a version, nothing is selected.
    """
    candidates = sorted({t for t in tags if t and not is_digest_tag(t)})
    if not candidates:
        return None

    values = _filter(candidates, policy.filter_tags if policy else None)
    if not values:
        return None

    source = policy_source(policy)
    if source == PolicySource.FALLBACK:
        return _fallback([tv.tag for tv in values])

    ordering = policy.policy  # type: ignore[union-attr]
    if source == PolicySource.SEMVER:
        return _semver(values, ordering.semver)
    if source == PolicySource.NUMERICAL:
        return _numerical(values, ordering.numerical.order)
    return _alphabetical(values, ordering.alphabetical.order)


@dataclass(frozen=True)
class UpdateDecision:
    service: str
    image: ImageRef
    current_tag: str
    selected_tag: str
    source: PolicySource

    @property
    def target_image(self) -> str:
        return self.image.with_tag(self.selected_tag).render()


def decide(service: str, image: ImageRef, tags: Iterable[str], policy: ImagePolicy | None) -> UpdateDecision | None:
    """Return an UpdateDecision when the policy picks a tag other than the current one."""
    selected = select_tag(tags, policy)
    if not selected or selected == image.current_tag:
        return None
    return UpdateDecision(
        service=service,
        image=image,
        current_tag=image.current_tag,
        selected_tag=selected,
        source=policy_source(policy),
    )
