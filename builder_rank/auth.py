"""
API key management for builders.

One key per username. A username is registered once; the owner can rotate
their key by presenting the current one. Only the sha256 hash of a key is
stored; the raw key is returned once.
Identity proofing (GitHub OAuth, Clerk) happens upstream of this service.
"""

import hashlib
import secrets
from dataclasses import dataclass, field

from builder_rank.models import _now


@dataclass
class User:
    username: str
    api_key_hash: str
    created_at: str = field(default_factory=_now)
    last_seen_at: str = field(default_factory=_now)


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class AuthStore:
    """In-memory auth store. Serialized via persistence module."""

    def __init__(self):
        self.users: dict[str, User] = {}         # username -> User
        self.key_to_user: dict[str, User] = {}   # api_key_hash -> User

    def register(self, username: str) -> tuple[User, str]:
        """Register a new username. Returns (user, raw_api_key)."""
        if username in self.users:
            raise ValueError("username_taken")
        raw_key = secrets.token_urlsafe(32)
        user = User(username=username, api_key_hash=_hash_key(raw_key))
        self.add(user)
        return user, raw_key

    def rotate_key(self, user: User) -> str:
        """Issue a fresh key for an authenticated user. The old key stops
        working immediately."""
        raw_key = secrets.token_urlsafe(32)
        key_hash = _hash_key(raw_key)
        self.key_to_user.pop(user.api_key_hash, None)
        user.api_key_hash = key_hash
        user.last_seen_at = _now()
        self.key_to_user[key_hash] = user
        return raw_key

    def add(self, user: User) -> None:
        self.users[user.username] = user
        self.key_to_user[user.api_key_hash] = user

    def authenticate(self, raw_key: str) -> User | None:
        """Validate an API key. Returns User or None."""
        user = self.key_to_user.get(_hash_key(raw_key))
        if user:
            user.last_seen_at = _now()
        return user
