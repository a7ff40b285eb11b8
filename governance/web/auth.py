from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Protocol

from fastapi import Request

from governance.core.config.models import ApiKeyEntry

ELEVATED_ROLES = frozenset({"admin", "board"})


@dataclass(frozen=True)
class Principal:
    subject_id: str
    key_id: str = ""
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def has_any(self, roles: Iterable[str]) -> bool:
        return bool(self.roles & set(roles))

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


class Authenticator(Protocol):
    """Resolves the caller of a request, or None when no valid credential is present."""

    def authenticate(self, request: Request) -> Optional[Principal]: ...


def hash_key(raw: str) -> str:
    return hashlib.sha256(str(raw).encode("utf-8")).hexdigest()


def generate_key() -> str:
    return secrets.token_urlsafe(32)


class ApiKeyAuthenticator:
    """
    X-API-Key header checked against SHA-256 hashes from config/web.json.
    Every configured hash is compared so timing does not reveal which one matched.
    """

    header = "X-API-Key"

    def __init__(self, entries: Iterable[ApiKeyEntry]):
        self._entries: List[ApiKeyEntry] = list(entries)

    def authenticate(self, request: Request) -> Optional[Principal]:
        provided = request.headers.get(self.header, "")
        if not provided:
            return None
        digest = hash_key(provided)
        found: Optional[ApiKeyEntry] = None
        for e in self._entries:
            if secrets.compare_digest(digest, e.key_hash) and found is None:
                found = e
        if found is None:
            return None
        return Principal(subject_id=found.subject_id, key_id=found.id, roles=frozenset(found.roles))


def bearer_matches(header_value: Optional[str], secret: Optional[str]) -> bool:
    """Exact `Bearer <secret>` match in constant time. No configured secret never matches."""
    if not secret or not header_value:
        return False
    return secrets.compare_digest(str(header_value).encode("utf-8"), f"Bearer {secret}".encode("utf-8"))
