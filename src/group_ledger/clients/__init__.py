"""Clients for services the group ledger talks to."""

from .spending import SpendingLedger, SpendingLedgerClient

__all__ = ["SpendingLedger", "SpendingLedgerClient"]
