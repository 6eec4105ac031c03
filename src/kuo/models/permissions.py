"""Inline RBAC permission models.

A managed user declares its grants inline: a list of cluster-wide rules and
a list of per-namespace rule sets. Each declaration entry is mapped onto a
Role/RoleBinding (or ClusterRole/ClusterRoleBinding) pair whose name is
derived from the entry's content, so two identical entries always map to the
same objects and any change maps to new ones.

Example:
    >>> from kuo.models.permissions import NamespacedPermissions, Permission
    >>> entry = NamespacedPermissions(
    ...     namespace="dev",
    ...     permissions=[Permission(resources=["pods"], verbs=["get", "list"])],
    ... )
    >>> entry.object_name("alice").startswith("alice-")
    True
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Number of hex digits of the SHA-256 digest kept in derived names
CONTENT_HASH_LENGTH = 16


def canonical_json(value: Any) -> str:
    """Serialize a JSON-compatible value with a stable key order."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(value: Any) -> str:
    """Stable short identifier of a JSON-compatible value.

    Args:
        value: Plain data (dicts, lists, strings, numbers, None).

    Returns:
        The first CONTENT_HASH_LENGTH hex digits of the SHA-256 digest of the
        canonical serialization.
    """
    digest = hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
    return digest[:CONTENT_HASH_LENGTH]


class Permission(BaseModel):
    """A single RBAC rule.

    Every field except ``verbs`` is optional; an absent field leaves the rule
    unrestricted along that axis, exactly like a Kubernetes PolicyRule.

    Attributes:
        api_groups: API groups containing the resources. "" is the core group.
        resources: Resources the rule applies to.
        resource_names: Optional allow-list of object names.
        non_resource_urls: Partial URLs; only meaningful for cluster permissions.
        verbs: Verbs allowed on all listed resources.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    api_groups: list[str] | None = Field(default=None, alias="apiGroups")
    resources: list[str] | None = Field(default=None)
    resource_names: list[str] | None = Field(default=None, alias="resourceNames")
    non_resource_urls: list[str] | None = Field(default=None, alias="nonResourceURLs")
    verbs: list[str] = Field(..., description="Verbs that apply to all listed resources")

    def to_policy_rule(self) -> dict[str, Any]:
        """Render as a Kubernetes PolicyRule dictionary."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class NamespacedPermissions(BaseModel):
    """Permissions granted inside one namespace."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    namespace: str = Field(..., min_length=1, description="Namespace to apply permissions to")
    permissions: list[Permission] = Field(
        default_factory=list,
        description="Permissions to apply to the namespace",
    )

    def canonical(self) -> dict[str, Any]:
        """Wire form used for content addressing."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def object_name(self, username: str) -> str:
        """Name of the Role and RoleBinding derived from this entry."""
        return f"{username}-{content_hash(self.canonical())}"

    def policy_rules(self) -> list[dict[str, Any]]:
        """Rules of the derived Role."""
        return [permission.to_policy_rule() for permission in self.permissions]


class InlinePermissions(BaseModel):
    """Permissions declared directly on a managed user.

    Attributes:
        cluster_permissions: Cluster-wide rules, all bound through one
            ClusterRole/ClusterRoleBinding pair.
        namespaced_permissions: Per-namespace rule sets, one Role/RoleBinding
            pair each.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    cluster_permissions: list[Permission] | None = Field(default=None, alias="clusterPermissions")
    namespaced_permissions: list[NamespacedPermissions] | None = Field(
        default=None,
        alias="namespacedPermissions",
    )

    def cluster_object_name(self, username: str) -> str | None:
        """Name of the ClusterRole and ClusterRoleBinding, None if nothing is declared."""
        if not self.cluster_permissions:
            return None
        canonical = [
            permission.model_dump(mode="json", by_alias=True, exclude_none=True)
            for permission in self.cluster_permissions
        ]
        return f"{username}-{content_hash(canonical)}"

    def cluster_policy_rules(self) -> list[dict[str, Any]]:
        """Rules of the derived ClusterRole."""
        return [permission.to_policy_rule() for permission in self.cluster_permissions or []]


__all__ = [
    "CONTENT_HASH_LENGTH",
    "InlinePermissions",
    "NamespacedPermissions",
    "Permission",
    "canonical_json",
    "content_hash",
]
