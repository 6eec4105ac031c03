"""Data models for ManagedUser resources and their inline permissions."""

from __future__ import annotations

from kuo.models.managed_user import ManagedUser, ManagedUserSpec, OwnerReference, UserSecretData
from kuo.models.permissions import InlinePermissions, NamespacedPermissions, Permission

__all__ = [
    "InlinePermissions",
    "ManagedUser",
    "ManagedUserSpec",
    "NamespacedPermissions",
    "OwnerReference",
    "Permission",
    "UserSecretData",
]
