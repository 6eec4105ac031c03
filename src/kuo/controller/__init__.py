"""Reconcilers for ManagedUsers and their certificate signing requests."""

from __future__ import annotations

from kuo.controller.context import OperatorContext
from kuo.controller.csr import CSRReconciler, CSRState, classify
from kuo.controller.managed_user import ManagedUserReconciler
from kuo.controller.permissions import PermissionSynchronizer, SyncResult
from kuo.controller.runtime import Action, Controller, error_policy, register_controllers

__all__ = [
    "Action",
    "CSRReconciler",
    "CSRState",
    "Controller",
    "ManagedUserReconciler",
    "OperatorContext",
    "PermissionSynchronizer",
    "SyncResult",
    "classify",
    "error_policy",
    "register_controllers",
]
