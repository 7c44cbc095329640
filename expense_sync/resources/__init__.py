from expense_sync.resources.base import BaseResource
from expense_sync.resources.expenses import ExpenseResource
from expense_sync.resources.income import IncomeResource

__all__ = ["BaseResource", "ExpenseResource", "IncomeResource"]
