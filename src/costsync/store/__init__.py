"""Persistence for the reconciliation policy and the audit history."""

from costsync.store.audit import AuditLog
from costsync.store.schema import STORE_SCHEMA_SQL
from costsync.store.task_config import TaskConfigStore, validate_update

__all__ = ["AuditLog", "STORE_SCHEMA_SQL", "TaskConfigStore", "validate_update"]
