"""Registry records: service identities, access profiles and policy documents.

The registry is owned by an external configuration collaborator. The broker
only reads it, so every model is frozen.
"""

from __future__ import annotations

import re
from datetime import time
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..auth.federation import SubjectPattern

_ROLE_ARN_RE = re.compile(r"^arn:aws(?:-cn|-us-gov)?:iam::\d{12}:role/[\w+=,.@/-]+$")
_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


def _check_identifier(value: str, label: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Invalid {label}: {value!r}")
    return value


class TimeWindow(BaseModel):
    """Daily time-of-day window. ``end`` before ``start`` wraps midnight."""

    model_config = ConfigDict(frozen=True)

    start: str
    end: str
    days: list[str] = Field(default_factory=list)
    timezone: str = Field(default="UTC")

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, v: str) -> str:
        if not _HHMM_RE.match(v):
            raise ValueError(f"Time must be HH:MM (24h), got {v!r}")
        return v

    @field_validator("days", mode="before")
    @classmethod
    def _validate_days(cls, v: Any) -> list:
        days = [str(day).strip().lower()[:3] for day in _ensure_list(v)]
        unknown = [day for day in days if day not in WEEKDAYS]
        if unknown:
            raise ValueError(f"Unknown weekday(s): {', '.join(unknown)}")
        return days

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v!r}") from exc
        return v

    @model_validator(mode="after")
    def _validate_not_empty(self) -> "TimeWindow":
        if self.start == self.end:
            raise ValueError("Time window start and end must differ")
        return self

    def start_time(self) -> time:
        hours, minutes = self.start.split(":")
        return time(int(hours), int(minutes))

    def end_time(self) -> time:
        hours, minutes = self.end.split(":")
        return time(int(hours), int(minutes))


class PolicyDocument(BaseModel):
    """Further restrictions attached to an access profile."""

    model_config = ConfigDict(frozen=True)

    name: str
    max_ttl_seconds: int | None = Field(default=None, ge=1)
    time_windows: list[TimeWindow] = Field(default_factory=list)
    # Claim name -> regex that must fullmatch the claim's string value.
    required_claims: dict[str, str] = Field(default_factory=dict)
    allowed_actions: list[str] = Field(default_factory=list)
    allowed_resources: list[str] = Field(default_factory=list)
    max_concurrent_leases: int = Field(default=1, ge=1, le=1000)

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        return _check_identifier(v, "policy name")

    @field_validator("time_windows", "allowed_actions", "allowed_resources", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("required_claims", mode="before")
    @classmethod
    def _validate_required_claims(cls, v: Any) -> dict:
        if v is None:
            return {}
        return v


class ResourceTarget(BaseModel):
    """Downstream resource an access profile grants access to."""

    model_config = ConfigDict(frozen=True)

    provider: Literal["aws"] = "aws"
    role_arn: str
    account_id: str | None = None
    region: str | None = None

    @field_validator("role_arn")
    @classmethod
    def _validate_role_arn(cls, v: str) -> str:
        if not _ROLE_ARN_RE.match(v):
            raise ValueError(f"Invalid role_arn format: {v}")
        return v

    @model_validator(mode="after")
    def _validate_account(self) -> "ResourceTarget":
        if self.account_id is None:
            return self
        if not _ACCOUNT_ID_RE.match(self.account_id):
            raise ValueError(f"Invalid account_id: {self.account_id}")
        if self.account_id != self.arn_account_id:
            raise ValueError(
                f"account_id {self.account_id} does not match role_arn account "
                f"{self.arn_account_id}"
            )
        return self

    @property
    def arn_account_id(self) -> str:
        return self.role_arn.split(":")[4]

    @property
    def resource_id(self) -> str:
        return self.role_arn


class AccessProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    target: ResourceTarget
    max_ttl_seconds: int = Field(ge=1, le=43200)
    policy: str | None = None
    description: str = ""

    @field_validator("name")
    @classmethod
    def _validate_name(cls, v: str) -> str:
        return _check_identifier(v, "profile name")


class ServiceIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    subject_patterns: list[str] = Field(min_length=1)
    profiles: list[str] = Field(default_factory=list)
    description: str = ""

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        return _check_identifier(v, "identity id")

    @field_validator("subject_patterns")
    @classmethod
    def _validate_patterns(cls, v: list[str]) -> list[str]:
        for pattern in v:
            SubjectPattern.parse(pattern)
        return v

    @field_validator("profiles", mode="before")
    @classmethod
    def _validate_profiles(cls, v: Any) -> list:
        return _ensure_list(v)

    def may_request(self, profile_name: str) -> bool:
        return profile_name in self.profiles


class Registry(BaseModel):
    """A consistent snapshot of identities, profiles and policies."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(default="1")
    identities: list[ServiceIdentity] = Field(default_factory=list)
    profiles: list[AccessProfile] = Field(default_factory=list)
    policies: list[PolicyDocument] = Field(default_factory=list)

    @field_validator("identities", "profiles", "policies", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("version", mode="before")
    @classmethod
    def _validate_version(cls, v: Any) -> str:
        return str(v)

    @model_validator(mode="after")
    def _validate_references(self) -> "Registry":
        _reject_duplicates([i.id for i in self.identities], "identity id")
        _reject_duplicates([p.name for p in self.profiles], "profile name")
        _reject_duplicates([p.name for p in self.policies], "policy name")

        profile_names = {p.name for p in self.profiles}
        policy_names = {p.name for p in self.policies}
        for identity in self.identities:
            missing = [name for name in identity.profiles if name not in profile_names]
            if missing:
                raise ValueError(
                    f"Identity '{identity.id}' references unknown profile(s): {', '.join(missing)}"
                )
        for profile in self.profiles:
            if profile.policy is not None and profile.policy not in policy_names:
                raise ValueError(
                    f"Profile '{profile.name}' references unknown policy '{profile.policy}'"
                )
        return self

    def get_identity(self, identity_id: str) -> ServiceIdentity | None:
        return next((i for i in self.identities if i.id == identity_id), None)

    def get_profile(self, name: str) -> AccessProfile | None:
        return next((p for p in self.profiles if p.name == name), None)

    def get_policy(self, name: str | None) -> PolicyDocument | None:
        if name is None:
            return None
        return next((p for p in self.policies if p.name == name), None)

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "Registry":
        return cls.model_validate(data)


def _reject_duplicates(values: list[str], label: str) -> None:
    seen: set[str] = set()
    for value in values:
        if value in seen:
            raise ValueError(f"Duplicate {label}: {value}")
        seen.add(value)
