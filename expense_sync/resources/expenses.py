"""
Expenses API resource.
"""

from typing import Any

from expense_sync.resources.base import BaseResource
from expense_sync.services.results import Ok


class ExpenseResource(BaseResource):
    """Expense endpoints: CRUD and filtering."""

    PATH = "/expenses"

    @property
    def path(self) -> str:
        return self.PATH

    async def filter(self, params: dict[str, Any]) -> Ok[Any]:
        return await self.client.get(f"{self.PATH}/filter", params=params)

