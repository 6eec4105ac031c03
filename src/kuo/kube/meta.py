"""Object metadata helpers: labels and owner references.

Owner references are weak back-links ``(apiVersion, kind, name, uid)``
stored on the child. They are resolved by lookup through the resource
client; cascading deletion is performed by the cluster garbage collector.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from kuo.models.managed_user import OwnerReference

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
OWNER_USER_LABEL = "kuo.github.io/owner-user"

RBAC_API_GROUP = "rbac.authorization.k8s.io"
RBAC_API_VERSION = f"{RBAC_API_GROUP}/v1"

# Server-managed metadata cleared before submitting an object back
_SERVER_MANAGED_FIELDS = ("managedFields",)


def owner_reference(api_version: str, kind: str, name: str, uid: str) -> dict[str, Any]:
    """Controller owner reference that does not block owner deletion."""
    return OwnerReference(
        api_version=api_version,
        kind=kind,
        name=name,
        uid=uid,
        controller=True,
        block_owner_deletion=False,
    ).to_dict()


def managed_labels(operator_name: str, username: str | None = None) -> dict[str, str]:
    """Labels attached to every object the operator creates.

    Args:
        operator_name: Value of the managed-by label.
        username: Managed user owning the object, for selector-based cleanup.
    """
    labels = {MANAGED_BY_LABEL: operator_name}
    if username is not None:
        labels[OWNER_USER_LABEL] = username
    return labels


def label_selector(labels: Mapping[str, str]) -> str:
    """Equality-based label selector string."""
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


def object_meta(
    name: str,
    *,
    namespace: str | None = None,
    labels: Mapping[str, str] | None = None,
    owners: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    """Build an ObjectMeta dictionary."""
    meta: dict[str, Any] = {"name": name}
    if namespace is not None:
        meta["namespace"] = namespace
    if labels:
        meta["labels"] = dict(labels)
    if owners:
        meta["ownerReferences"] = owners
    return meta


def first_owner(obj: Mapping[str, Any]) -> OwnerReference | None:
    """First owner reference of an object, the authoritative one."""
    owners = (obj.get("metadata") or {}).get("ownerReferences") or []
    return OwnerReference.model_validate(owners[0]) if owners else None


def strip_server_managed(obj: dict[str, Any]) -> dict[str, Any]:
    """Remove server-managed metadata in place and return the object."""
    metadata = obj.get("metadata")
    if metadata:
        for field in _SERVER_MANAGED_FIELDS:
            metadata.pop(field, None)
    return obj


__all__ = [
    "MANAGED_BY_LABEL",
    "OWNER_USER_LABEL",
    "RBAC_API_GROUP",
    "RBAC_API_VERSION",
    "first_owner",
    "label_selector",
    "managed_labels",
    "object_meta",
    "owner_reference",
    "strip_server_managed",
]
