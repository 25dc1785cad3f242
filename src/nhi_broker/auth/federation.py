"""Federation: maps a validated subject claim to a registered service identity."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import AmbiguousFederationError, UnknownIdentityError
from ..utils.masking import sanitize_log_value

if TYPE_CHECKING:
    from ..registry.models import ServiceIdentity

logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"\{([^{}]*)\}")
_SEGMENT_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Named segments never span a path or claim separator.
_SEGMENT_VALUE = r"[^/:]+"


@dataclass(frozen=True)
class SubjectPattern:
    """Declarative subject matcher.

    Grammar:
    - literal text matches itself exactly
    - ``{name}`` matches one or more characters other than ``/`` and ``:``
    - a trailing ``*`` turns the pattern into a prefix match

    Example: ``repo:{org}/{repo}:ref:refs/heads/*``
    """

    text: str
    segment_names: tuple[str, ...]
    prefix: bool
    _regex: re.Pattern[str] = field(repr=False, compare=False)

    @classmethod
    def parse(cls, text: str) -> "SubjectPattern":
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Subject pattern must be a non-empty string")
        if text != text.strip():
            raise ValueError(f"Subject pattern has surrounding whitespace: {text!r}")

        prefix = text.endswith("*")
        body = text[:-1] if prefix else text
        if "*" in body:
            raise ValueError(f"'*' is only allowed at the end of a subject pattern: {text!r}")

        parts: list[str] = []
        names: list[str] = []
        pos = 0
        for match in _SEGMENT_RE.finditer(body):
            parts.append(cls._literal(body[pos : match.start()], text))
            name = match.group(1)
            if not _SEGMENT_NAME_RE.match(name):
                raise ValueError(f"Invalid segment name {name!r} in subject pattern {text!r}")
            if name in names:
                raise ValueError(f"Duplicate segment {{{name}}} in subject pattern {text!r}")
            names.append(name)
            parts.append(f"(?P<{name}>{_SEGMENT_VALUE})")
            pos = match.end()
        parts.append(cls._literal(body[pos:], text))
        if prefix:
            parts.append(".*")

        return cls(
            text=text,
            segment_names=tuple(names),
            prefix=prefix,
            _regex=re.compile("".join(parts), re.DOTALL),
        )

    @staticmethod
    def _literal(chunk: str, text: str) -> str:
        if "{" in chunk or "}" in chunk:
            raise ValueError(f"Unbalanced braces in subject pattern {text!r}")
        return re.escape(chunk)

    @property
    def is_literal(self) -> bool:
        return not self.segment_names and not self.prefix

    @property
    def is_catch_all(self) -> bool:
        return self.text == "*"

    def match(self, subject: str) -> dict[str, str] | None:
        """Return captured segments if ``subject`` matches, else None."""
        found = self._regex.fullmatch(subject)
        if found is None:
            return None
        return {name: found.group(name) for name in self.segment_names}


@dataclass(frozen=True)
class FederationMatch:
    identity: ServiceIdentity
    pattern: SubjectPattern
    segments: dict[str, str]


class FederationMapper:
    """Resolves subjects against every registered identity pattern.

    Security principles:
    - Every pattern is evaluated; two identities matching one subject is a
      configuration conflict, never a first-match-wins choice
    - The no-match failure names no patterns
    """

    def __init__(self, identities: Iterable[ServiceIdentity]) -> None:
        self._entries: list[tuple[ServiceIdentity, SubjectPattern]] = []
        literal_owners: dict[str, str] = {}

        for identity in identities:
            for raw in identity.subject_patterns:
                pattern = SubjectPattern.parse(raw)
                if pattern.is_catch_all:
                    logger.warning(
                        "Identity %s registers the catch-all pattern '*'. It will match "
                        "every subject from the trusted issuer.",
                        identity.id,
                    )
                if pattern.is_literal:
                    owner = literal_owners.setdefault(pattern.text, identity.id)
                    if owner != identity.id:
                        logger.warning(
                            "Subject %s is registered by both %s and %s; "
                            "it will fail as ambiguous.",
                            pattern.text,
                            owner,
                            identity.id,
                        )
                self._entries.append((identity, pattern))

        logger.info(
            "FederationMapper initialized with %d patterns across %d identities",
            len(self._entries),
            len({identity.id for identity, _ in self._entries}),
        )

    def match(self, subject: str) -> FederationMatch:
        """Return the single identity match for ``subject``."""
        matches: list[FederationMatch] = []
        for identity, pattern in self._entries:
            segments = pattern.match(subject)
            if segments is not None:
                matches.append(FederationMatch(identity, pattern, segments))

        identity_ids = sorted({m.identity.id for m in matches})
        if not identity_ids:
            logger.info("No identity matches subject %s", sanitize_log_value(subject))
            raise UnknownIdentityError("No registered identity matches the presented subject")
        if len(identity_ids) > 1:
            logger.warning(
                "Subject %s matches several identities: %s",
                sanitize_log_value(subject),
                ", ".join(identity_ids),
            )
            raise AmbiguousFederationError(
                f"Subject matches {len(identity_ids)} registered identities"
            )

        return matches[0]

    def resolve(self, subject: str) -> ServiceIdentity:
        return self.match(subject).identity

    def get_pattern_count(self) -> int:
        return len(self._entries)
