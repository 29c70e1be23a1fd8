"""Ledger gateway -- authoritative billed usage totals."""

from costsync.ledger.client import Ledger
from costsync.ledger.sqlite_ledger import LEDGER_SCHEMA_SQL, SQLiteLedger

__all__ = ["LEDGER_SCHEMA_SQL", "Ledger", "SQLiteLedger"]
