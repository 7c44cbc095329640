"""
Base resource interface.
"""

from abc import ABC, abstractmethod
from typing import Any

from expense_sync.services.client import ApiClient
from expense_sync.services.results import Ok, Queued


class BaseResource(ABC):
    """
    Abstract base class for API resources.

    All resources should:
    - Use ApiClient for HTTP requests (with caching, dedup, offline queue)
    - Keep endpoint knowledge here, not in callers
    """

    def __init__(self, client: ApiClient):
        self.client = client

    @property
    @abstractmethod
    def path(self) -> str:
        """Collection path for this resource."""
        ...

    def item_path(self, item_id: str) -> str:
        return f"{self.path}/{item_id}"

    async def list_all(self, params: dict[str, Any] | None = None) -> Ok[Any]:
        return await self.client.get(self.path, params=_compact(params))

    async def add(self, payload: dict[str, Any]) -> Ok[Any] | Queued:
        return await self.client.post(self.path, payload)

    async def update(self, item_id: str, payload: dict[str, Any]) -> Ok[Any] | Queued:
        return await self.client.put(self.item_path(item_id), payload)

    async def delete(self, item_id: str) -> Ok[Any] | Queued:
        return await self.client.delete(self.item_path(item_id))


def _compact(params: dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop unset query parameters."""
    if not params:
        return None
    return {k: v for k, v in params.items() if v is not None}
