from __future__ import annotations

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac

from governance.core.audit.models import AuditAction
from governance.core.cache.tags import CacheInvalidator
from governance.core.clock import DAY_SECONDS, iso_from_epoch
from governance.core.errors import InvalidTokenError, NotFoundError
from governance.core.privacy.categories import COMMUNICATION_PREFERENCES, MEMBERS, cache_tags_for
from governance.core.privacy.models import CommunicationCategory


def _b64e(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64d(text: str) -> bytes:
    pad = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode((text + pad).encode("ascii"))


def email_hash(email: str) -> str:
    return hashlib.sha256(str(email).strip().lower().encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email_hash: str
    issued_at: float


class UnsubscribeTokens:
    """
    Signed unsubscribe links: <b64url(json claims)>.<b64url(HMAC-SHA256)>.
    Claims are userId, emailHash and timestamp (ms since epoch).
    """

    def __init__(self, *, signing_key: bytes, ttl_days: int = 7, time_fn=time.time):
        if not signing_key:
            raise ValueError("signing key required")
        self._key = bytes(signing_key)
        self.ttl_seconds = int(ttl_days) * DAY_SECONDS
        self._time = time_fn

    def _sign(self, body: bytes) -> bytes:
        h = hmac.HMAC(self._key, hashes.SHA256())
        h.update(body)
        return h.finalize()

    def issue(self, user_id: str, email: str) -> str:
        claims = {"userId": str(user_id), "emailHash": email_hash(email), "timestamp": int(float(self._time()) * 1000)}
        body = _b64e(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
        return body + "." + _b64e(self._sign(body.encode("ascii")))

    def verify(self, token: str) -> TokenClaims:
        """Raises InvalidTokenError on a malformed, forged or expired token."""
        body, sep, sig = str(token or "").strip().partition(".")
        if not body or not sep or not sig:
            raise InvalidTokenError(reason="malformed")
        try:
            raw_sig = _b64d(sig)
            h = hmac.HMAC(self._key, hashes.SHA256())
            h.update(body.encode("ascii"))
            h.verify(raw_sig)
        except (InvalidSignature, ValueError, UnicodeEncodeError):
            raise InvalidTokenError(reason="signature") from None
        try:
            claims = json.loads(_b64d(body).decode("utf-8"))
            user_id = str(claims["userId"])
            issued = float(claims["timestamp"]) / 1000.0
            ehash = str(claims["emailHash"])
        except (ValueError, KeyError, TypeError):
            raise InvalidTokenError(reason="claims") from None
        if not user_id or not ehash:
            raise InvalidTokenError(reason="claims")
        age = float(self._time()) - issued
        if age > self.ttl_seconds or age < -300:
            raise InvalidTokenError(reason="expired")
        return TokenClaims(user_id=user_id, email_hash=ehash, issued_at=issued)


@dataclass(frozen=True)
class Confirmation:
    subject_id: str
    category: Optional[CommunicationCategory]
    already_applied: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "subject_id": self.subject_id,
            "category": self.category.value if self.category is not None else "all",
            "already_applied": self.already_applied,
        }


class UnsubscribeHandler:
    def __init__(
        self,
        *,
        tokens: UnsubscribeTokens,
        store: Any,
        audit: Any,
        logger: Any = None,
        invalidator: Optional[CacheInvalidator] = None,
        time_fn=time.time,
    ):
        self.tokens = tokens
        self.store = store
        self.audit = audit
        self.invalidator = invalidator or CacheInvalidator()
        self.logger = logger or logging.getLogger("governance.unsubscribe")
        self._time = time_fn

    def apply_unsubscribe(self, token: str, category: Optional[str] = None) -> Confirmation:
        """
        Disable one communication category (or all of them) for the token's
        subject. The token is verified before anything is read or written.
        Applying the same token again is a successful no-op.
        """
        cat = CommunicationCategory(category) if category else None
        claims = self.tokens.verify(token)
        self._check_recipient(claims)
        changed = self.store.disable_communication(
            user_id=claims.user_id,
            category=cat,
            now_iso=iso_from_epoch(float(self._time())),
            reason="user_unsubscribe" if cat is None else "",
        )
        if changed is None:
            raise NotFoundError("Communication preferences not found.", subject_id=claims.user_id)
        if changed:
            self.invalidator.after_write(cache_tags_for([COMMUNICATION_PREFERENCES.name]))
        self.audit.record_action(
            action=AuditAction.UNSUBSCRIBE_ALL if cat is None else AuditAction.UNSUBSCRIBE_REQUEST,
            resource_type="communication_preferences",
            resource_id=claims.user_id,
            actor_id=claims.user_id,
            metadata={"category": cat.value if cat is not None else "all", "already_applied": not changed},
        )
        return Confirmation(subject_id=claims.user_id, category=cat, already_applied=not changed)

    def _check_recipient(self, claims: TokenClaims) -> None:
        """
        A link minted for an address the member no longer uses is refused.
        Subjects without a member profile are matched on the user id alone.
        """
        rows = self.store.rows_for_subject(MEMBERS.name, claims.user_id, limit=1)
        current = rows[0].get("email") if rows else None
        if current and email_hash(current) != claims.email_hash:
            raise InvalidTokenError(reason="email_mismatch")
