"""
identity.py - Current user identity collaborator.

Authentication itself is handled elsewhere; the data layer only needs to
know who is signed in right now (or that nobody is).
"""

import threading
from typing import Protocol


class IdentityProvider(Protocol):
    """Anything that can report the signed-in user id."""

    def current_user_id(self) -> str | None:
        ...


class StaticIdentity:
    """
    Identity holder set by the auth layer.

    `None` means offline/unauthenticated. Changing the user never rewrites
    user_id on records or queue entries that already exist.
    """

    def __init__(self, user_id: str | None = None):
        self._user_id = user_id
        self._lock = threading.Lock()

    def current_user_id(self) -> str | None:
        with self._lock:
            return self._user_id

    def set_user(self, user_id: str | None) -> None:
        with self._lock:
            self._user_id = user_id
