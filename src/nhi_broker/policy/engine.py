"""Policy evaluation engine."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo

from ..registry.models import WEEKDAYS, PolicyDocument, Registry, ServiceIdentity, TimeWindow
from ..utils.masking import sanitize_log_value
from ..utils.time import ensure_utc, utc_now
from .models import (
    OUTSIDE_TIME_WINDOW,
    PROFILE_NOT_ALLOWED,
    SCOPE_NOT_PERMITTED,
    SOURCE_CONSTRAINT_FAILED,
    UNKNOWN_PROFILE,
    Constraints,
    Decision,
    ScopeRequest,
)

logger = logging.getLogger(__name__)

_MAX_POLICY_REGEX_LENGTH = 256
_MAX_CLAIM_VALUE_LENGTH = 1024
_BACKREFERENCE_PATTERN = re.compile(r"\\[1-9]")
_NESTED_QUANTIFIER_PATTERN = re.compile(
    r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)\s*(?:[+*]|\{\d+(?:,\d*)?\})"
)
_LOOKBEHIND_TOKENS = ("(?<=", "(?<!")


@dataclass(frozen=True)
class _CompiledClaimRule:
    claim: str
    pattern: str
    regex: re.Pattern[str]


@lru_cache(maxsize=1024)
def _glob_regex(glob: str) -> re.Pattern[str]:
    """IAM-style glob: ``*`` any run, ``?`` one character, case-sensitive."""
    escaped = re.escape(glob).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(escaped, re.DOTALL)


def _covered(requested: str, allowed: tuple[str, ...]) -> bool:
    return any(_glob_regex(pattern).fullmatch(requested) for pattern in allowed)


def _day_ok(window: TimeWindow, weekday: int) -> bool:
    return not window.days or WEEKDAYS[weekday] in window.days


def _window_contains(window: TimeWindow, now: datetime) -> bool:
    local = now.astimezone(ZoneInfo(window.timezone))
    current = local.time()
    start, end = window.start_time(), window.end_time()

    if start < end:
        return start <= current < end and _day_ok(window, local.weekday())

    # Wraps midnight: the early-morning part belongs to the previous day's window.
    if current >= start:
        return _day_ok(window, local.weekday())
    if current < end:
        return _day_ok(window, (local.weekday() - 1) % 7)
    return False


class PolicyEngine:
    """Decides whether an identity may check out a profile, and with what limits.

    Denials are returned as ``Decision(allowed=False, reason=...)``; only
    unexpected faults raise.
    """

    def __init__(self, registry: Registry) -> None:
        self._registry = registry
        self._claim_rules: dict[str, list[_CompiledClaimRule]] = {
            policy.name: self._compile_claim_rules(policy) for policy in registry.policies
        }

    @classmethod
    def _compile_claim_rules(cls, policy: PolicyDocument) -> list[_CompiledClaimRule]:
        compiled: list[_CompiledClaimRule] = []
        for claim, pattern in policy.required_claims.items():
            label = f"{policy.name}:required_claims.{claim}"
            cls._validate_pattern_safety(pattern, label)
            try:
                regex = re.compile(pattern)
            except re.error as exc:
                raise ValueError(
                    f"Invalid regex in {label} policy pattern '{pattern}': {exc}"
                ) from exc
            compiled.append(_CompiledClaimRule(claim=claim, pattern=pattern, regex=regex))
        return compiled

    @staticmethod
    def _validate_pattern_safety(pattern: str, label: str) -> None:
        if len(pattern) > _MAX_POLICY_REGEX_LENGTH:
            raise ValueError(
                f"Unsafe regex in {label} policy pattern '{pattern}': exceeds "
                f"{_MAX_POLICY_REGEX_LENGTH} characters"
            )
        if any(token in pattern for token in _LOOKBEHIND_TOKENS):
            raise ValueError(
                f"Unsafe regex in {label} policy pattern '{pattern}': look-behind is not allowed"
            )
        if _BACKREFERENCE_PATTERN.search(pattern):
            raise ValueError(
                f"Unsafe regex in {label} policy pattern '{pattern}': "
                "backreferences are not allowed"
            )
        if _NESTED_QUANTIFIER_PATTERN.search(pattern):
            raise ValueError(
                f"Unsafe regex in {label} policy pattern '{pattern}': "
                "nested quantifiers are not allowed"
            )

    @property
    def registry(self) -> Registry:
        return self._registry

    def authorize(
        self,
        identity: ServiceIdentity,
        requested_profile: str,
        *,
        claims: Mapping[str, Any] | None = None,
        requested_scope: ScopeRequest | None = None,
        now: datetime | None = None,
    ) -> Decision:
        profile = self._registry.get_profile(requested_profile)
        if profile is None:
            return self._deny(identity, requested_profile, Decision.deny(UNKNOWN_PROFILE))

        if not identity.may_request(profile.name):
            return self._deny(identity, profile.name, Decision.deny(PROFILE_NOT_ALLOWED, profile))

        policy = self._registry.get_policy(profile.policy)
        max_ttl = profile.max_ttl_seconds
        if policy is None:
            scope = requested_scope or ScopeRequest()
            return Decision(
                allowed=True,
                max_ttl_seconds=max_ttl,
                constraints=Constraints(actions=scope.actions, resources=scope.resources),
                profile=profile,
            )

        if policy.time_windows:
            moment = ensure_utc(now) if now is not None else utc_now()
            if not any(_window_contains(window, moment) for window in policy.time_windows):
                return self._deny(
                    identity,
                    profile.name,
                    Decision.deny(OUTSIDE_TIME_WINDOW, profile, policy.name),
                )

        if not self._claims_satisfied(policy.name, claims or {}):
            return self._deny(
                identity,
                profile.name,
                Decision.deny(SOURCE_CONSTRAINT_FAILED, profile, policy.name),
            )

        constraints = self._constraints_for(policy, requested_scope)
        if constraints is None:
            return self._deny(
                identity,
                profile.name,
                Decision.deny(SCOPE_NOT_PERMITTED, profile, policy.name),
            )

        if policy.max_ttl_seconds is not None:
            max_ttl = min(max_ttl, policy.max_ttl_seconds)

        return Decision(
            allowed=True,
            max_ttl_seconds=max_ttl,
            constraints=constraints,
            profile=profile,
            policy_name=policy.name,
        )

    def _claims_satisfied(self, policy_name: str, claims: Mapping[str, Any]) -> bool:
        for rule in self._claim_rules.get(policy_name, []):
            value = claims.get(rule.claim)
            if value is None:
                return False
            values = value if isinstance(value, list) else [value]
            if not any(
                len(str(item)) <= _MAX_CLAIM_VALUE_LENGTH and rule.regex.fullmatch(str(item))
                for item in values
            ):
                return False
        return True

    @staticmethod
    def _constraints_for(
        policy: PolicyDocument, requested: ScopeRequest | None
    ) -> Constraints | None:
        allowed_actions = tuple(policy.allowed_actions)
        allowed_resources = tuple(policy.allowed_resources)

        if requested is None or requested.is_empty():
            return Constraints(
                actions=allowed_actions,
                resources=allowed_resources,
                max_concurrent_leases=policy.max_concurrent_leases,
            )

        if allowed_actions and not all(_covered(a, allowed_actions) for a in requested.actions):
            return None
        if allowed_resources and not all(
            _covered(r, allowed_resources) for r in requested.resources
        ):
            return None

        return Constraints(
            actions=requested.actions or allowed_actions,
            resources=requested.resources or allowed_resources,
            max_concurrent_leases=policy.max_concurrent_leases,
        )

    @staticmethod
    def _deny(identity: ServiceIdentity, profile_name: str, decision: Decision) -> Decision:
        logger.info(
            "Policy denied identity=%s profile=%s reason=%s",
            identity.id,
            sanitize_log_value(profile_name),
            decision.reason,
        )
        return decision
