from __future__ import annotations

CRON_SECRET = "cron-s3cret-value"
SIGNING_KEY = "unsubscribe-signing-key-for-tests"

# raw key -> (subject, roles)
API_KEYS = {
    "admin-key": ("admin-1", ["admin"]),
    "board-key": ("board-1", ["board"]),
    "member-key": ("member-1", []),
    "other-key": ("member-2", []),
}


def auth(key: str) -> dict:
    return {"X-API-Key": key}


def cron_auth(secret: str = CRON_SECRET) -> dict:
    return {"Authorization": f"Bearer {secret}"}
