"""Policy decision types."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..registry.models import AccessProfile

UNKNOWN_PROFILE = "unknown_profile"
PROFILE_NOT_ALLOWED = "profile_not_allowed"
OUTSIDE_TIME_WINDOW = "outside_time_window"
SOURCE_CONSTRAINT_FAILED = "source_constraint_failed"
SCOPE_NOT_PERMITTED = "scope_not_permitted"


@dataclass(frozen=True)
class ScopeRequest:
    """Narrower scope a caller asks for at checkout."""

    actions: tuple[str, ...] = ()
    resources: tuple[str, ...] = ()

    @classmethod
    def of(cls, actions: Iterable[str] = (), resources: Iterable[str] = ()) -> "ScopeRequest":
        return cls(actions=tuple(actions), resources=tuple(resources))

    def is_empty(self) -> bool:
        return not self.actions and not self.resources


@dataclass(frozen=True)
class Constraints:
    """What an issued credential may do. Empty tuples leave the role's own
    permissions as the only limit."""

    actions: tuple[str, ...] = ()
    resources: tuple[str, ...] = ()
    max_concurrent_leases: int = 1


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None
    max_ttl_seconds: int = 0
    constraints: Constraints = field(default_factory=Constraints)
    profile: AccessProfile | None = None
    policy_name: str | None = None

    @classmethod
    def deny(
        cls,
        reason: str,
        profile: AccessProfile | None = None,
        policy_name: str | None = None,
    ) -> "Decision":
        return cls(allowed=False, reason=reason, profile=profile, policy_name=policy_name)
