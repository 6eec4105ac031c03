"""Inline permission synchronization.

Turns a managed user's inline permission declaration into RBAC objects and
removes the ones it derived earlier that are no longer declared.

Each namespaced entry maps to a Role and a RoleBinding named
``<user>-<content hash>`` in the entry's namespace; all cluster permissions
map to one ClusterRole/ClusterRoleBinding pair named the same way. Since the
name is a function of the content, an unchanged declaration always maps to
the same names and the objects to delete are exactly the labelled ones whose
name is no longer derived.

Example:
    >>> sync = PermissionSynchronizer(client, operator_name="kuo-operator")
    >>> result = await sync.apply(user, user.spec.inline_permissions)
    >>> result.applied
    ['alice-3f9a0c1d2e4b5a69']
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from kuo.errors import KuoError
from kuo.kube.meta import (
    RBAC_API_GROUP,
    RBAC_API_VERSION,
    label_selector,
    managed_labels,
    object_meta,
    owner_reference,
)
from kuo.models.managed_user import API_VERSION, KIND
from kuo.models.permissions import InlinePermissions

if TYPE_CHECKING:
    from kuo.kube.client import ResourceClient
    from kuo.models.managed_user import ManagedUser
    from kuo.models.permissions import NamespacedPermissions

logger = structlog.get_logger(__name__)


@dataclass
class SyncResult:
    """Outcome of one synchronization pass.

    Attributes:
        applied: Names of the Roles (and ClusterRole) created or patched.
        failed: Names of namespaced entries that could not be applied.
        deleted: Names of stale objects removed.
    """

    applied: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


def user_subject(username: str) -> dict[str, str]:
    """Binding subject for a managed user."""
    return {"kind": "User", "apiGroup": RBAC_API_GROUP, "name": username}


def role_manifest(
    kind: str,
    name: str,
    rules: list[dict[str, Any]],
    *,
    namespace: str | None,
    labels: dict[str, str],
    owner: dict[str, Any],
) -> dict[str, Any]:
    """Role or ClusterRole manifest."""
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": kind,
        "metadata": object_meta(name, namespace=namespace, labels=labels, owners=[owner]),
        "rules": rules,
    }


def binding_manifest(
    kind: str,
    name: str,
    username: str,
    *,
    namespace: str | None,
    labels: dict[str, str],
    owner: dict[str, Any],
) -> dict[str, Any]:
    """RoleBinding or ClusterRoleBinding granting the same-named role to a user."""
    role_kind = "Role" if kind == "RoleBinding" else "ClusterRole"
    return {
        "apiVersion": RBAC_API_VERSION,
        "kind": kind,
        "metadata": object_meta(name, namespace=namespace, labels=labels, owners=[owner]),
        "roleRef": {"apiGroup": RBAC_API_GROUP, "kind": role_kind, "name": name},
        "subjects": [user_subject(username)],
    }


class PermissionSynchronizer:
    """Keeps a user's derived RBAC objects in line with its declaration.

    Attributes:
        client: Cluster resource client.
        operator_name: Value of the managed-by label.
    """

    def __init__(self, client: ResourceClient, *, operator_name: str) -> None:
        self.client = client
        self.operator_name = operator_name

    async def apply(self, user: ManagedUser, permissions: InlinePermissions | None) -> SyncResult:
        """Synchronize one user's RBAC objects with its declaration.

        A namespaced entry that fails to apply is logged and skipped, and its
        objects are never deleted in the same pass. Listing, deletion and
        cluster permission failures are propagated.

        Args:
            user: Owner of the derived objects. Must have a name and a UID.
            permissions: Declared permissions. None removes every derived object.

        Returns:
            What was applied, skipped and deleted.

        Raises:
            ResourceClientError: If listing, deleting or applying cluster
                permissions fails.
        """
        declaration = permissions or InlinePermissions()
        username = user.name or ""
        owner = owner_reference(API_VERSION, KIND, username, user.uid or "")
        labels = managed_labels(self.operator_name, username)
        log = logger.bind(user=username)
        result = SyncResult()

        known: set[tuple[str, str]] = set()
        for entry in declaration.namespaced_permissions or []:
            name = entry.object_name(username)
            known.add((entry.namespace, name))
            try:
                await self._apply_namespaced(entry, name, username, labels, owner)
            except KuoError as e:
                log.warning(
                    "namespaced_permission_apply_failed",
                    namespace=entry.namespace,
                    role=name,
                    error=str(e),
                )
                result.failed.append(name)
                continue
            result.applied.append(name)

        selector = label_selector(labels)
        for role in await self.client.list_roles(selector):
            metadata = role.get("metadata") or {}
            key = (metadata.get("namespace", ""), metadata.get("name", ""))
            if key in known:
                continue
            namespace, name = key
            await self.client.delete_role_binding(name, namespace)
            await self.client.delete_role(name, namespace)
            log.info("stale_role_deleted", namespace=namespace, role=name)
            result.deleted.append(name)

        cluster_name = declaration.cluster_object_name(username)
        if cluster_name is not None:
            await self.client.patch_or_create(
                role_manifest(
                    "ClusterRole",
                    cluster_name,
                    declaration.cluster_policy_rules(),
                    namespace=None,
                    labels=labels,
                    owner=owner,
                )
            )
            await self.client.patch_or_create(
                binding_manifest(
                    "ClusterRoleBinding",
                    cluster_name,
                    username,
                    namespace=None,
                    labels=labels,
                    owner=owner,
                )
            )
            result.applied.append(cluster_name)

        for cluster_role in await self.client.list_cluster_roles(selector):
            name = (cluster_role.get("metadata") or {}).get("name", "")
            if name == cluster_name:
                continue
            await self.client.delete_cluster_role_binding(name)
            await self.client.delete_cluster_role(name)
            log.info("stale_cluster_role_deleted", cluster_role=name)
            result.deleted.append(name)

        log.debug(
            "permissions_synchronized",
            applied=len(result.applied),
            failed=len(result.failed),
            deleted=len(result.deleted),
        )
        return result

    async def _apply_namespaced(
        self,
        entry: NamespacedPermissions,
        name: str,
        username: str,
        labels: dict[str, str],
        owner: dict[str, Any],
    ) -> None:
        await self.client.patch_or_create(
            role_manifest(
                "Role",
                name,
                entry.policy_rules(),
                namespace=entry.namespace,
                labels=labels,
                owner=owner,
            )
        )
        await self.client.patch_or_create(
            binding_manifest(
                "RoleBinding",
                name,
                username,
                namespace=entry.namespace,
                labels=labels,
                owner=owner,
            )
        )


__all__ = [
    "PermissionSynchronizer",
    "SyncResult",
    "binding_manifest",
    "role_manifest",
    "user_subject",
]
