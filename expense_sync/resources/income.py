"""
Income API resource.
"""

from typing import Any

from expense_sync.resources.base import BaseResource
from expense_sync.services.client import ApiClient
from expense_sync.services.rate_controls import Throttle
from expense_sync.services.results import Ok


class IncomeResource(BaseResource):
    """
    Income endpoints.

    The summary is an aggregate that dashboards poll from several places at
    once, so it is throttled: within the window callers reuse the last result.
    """

    PATH = "/income"

    def __init__(self, client: ApiClient, summary_window: float = 5.0):
        super().__init__(client)
        self.summary: Throttle[Ok[Any]] = Throttle(self._fetch_summary, summary_window)

    @property
    def path(self) -> str:
        return self.PATH

    async def list_all(self, params: dict[str, Any] | None = None) -> Ok[Any]:
        params = {"page": 1, "limit": 50, **(params or {})}
        return await super().list_all(params)

    async def _fetch_summary(self) -> Ok[Any]:
        return await self.client.get(f"{self.PATH}/summary")
