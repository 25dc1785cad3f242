"""Hashing helpers."""

from __future__ import annotations

import hashlib


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def token_fingerprint(token: str) -> str:
    """Short, non-reversible handle for correlating an assertion in audit records."""
    return sha256_text(token)[:16]
