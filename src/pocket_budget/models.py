"""
Model import hook.

Importing this module ensures all SQLAlchemy models are registered on Base.metadata.
"""

from __future__ import annotations

# Category first - expenses reference it
from pocket_budget.modules.categories.models import Category  # noqa: F401

from pocket_budget.modules.expenses.models import Expense  # noqa: F401
