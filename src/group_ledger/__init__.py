"""Group Ledger - Shared bills, member balances and settle-up plans."""

__version__ = "0.1.0"

from .allocation import allocate, allocate_contributions, round_money
from .config import Settings, load_settings
from .db import Database
from .ledger import compute_balances
from .models import (
    Bill,
    BillInput,
    CustomPayers,
    EqualSplit,
    EvenPayers,
    ExactSplit,
    Group,
    Member,
    Settlement,
    SharesSplit,
    SinglePayer,
    Transfer,
)
from .planner import plan_settlements
from .store import GroupLedgerStore

__all__ = [
    "Settings",
    "load_settings",
    "Database",
    "Bill",
    "BillInput",
    "CustomPayers",
    "EqualSplit",
    "EvenPayers",
    "ExactSplit",
    "Group",
    "Member",
    "Settlement",
    "SharesSplit",
    "SinglePayer",
    "Transfer",
    "allocate",
    "allocate_contributions",
    "round_money",
    "compute_balances",
    "plan_settlements",
    "GroupLedgerStore",
]
