"""Reconciliation core: detect drift, repair entries, rebuild the cache."""

from costsync.reconcile.fixer import Fixer
from costsync.reconcile.rebuilder import Rebuilder
from costsync.reconcile.reconciler import Reconciler

__all__ = ["Fixer", "Rebuilder", "Reconciler"]
