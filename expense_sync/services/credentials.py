"""
Locally persisted identity: bearer token and user profile.
"""

import asyncio
import json
from typing import Any, Callable

from loguru import logger

from expense_sync.datastore.storage import KeyValueStorage

TOKEN_KEY = "token"
USER_KEY = "user"


class CredentialStore:
    """
    Holds the bearer token in memory, backed by durable storage.

    Listeners registered with on_logout() run when the credentials are wiped,
    which is how the rest of the application learns it must re-authenticate.
    """

    def __init__(self, storage: KeyValueStorage):
        self._storage = storage
        self._token: str | None = None
        self._user: dict[str, Any] | None = None
        self._logout_listeners: list[Callable[[], Any]] = []

    async def load(self) -> None:
        """Read persisted identity once at startup."""
        self._token = await self._storage.get(TOKEN_KEY)
        raw_user = await self._storage.get(USER_KEY)
        if raw_user:
            try:
                self._user = json.loads(raw_user)
            except json.JSONDecodeError as e:
                logger.error(f"Discarding unreadable stored user: {e}")
                self._user = None

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def user(self) -> dict[str, Any] | None:
        return self._user

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    async def save(self, token: str, user: dict[str, Any] | None = None) -> None:
        self._token = token
        self._user = user
        await self._storage.set(TOKEN_KEY, token)
        if user is not None:
            await self._storage.set(USER_KEY, json.dumps(user))

    async def clear(self) -> None:
        """Wipe identity and notify logout listeners."""
        self._token = None
        self._user = None
        await self._storage.delete(TOKEN_KEY)
        await self._storage.delete(USER_KEY)
        logger.warning("Credentials cleared, session is unauthenticated")

        for listener in list(self._logout_listeners):
            try:
                result = listener()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.exception(f"Logout listener failed: {e}")

    def on_logout(self, listener: Callable[[], Any]) -> Callable[[], None]:
        """Register a logout listener. Returns a function that unregisters it."""
        self._logout_listeners.append(listener)
        return lambda: self._logout_listeners.remove(listener)
