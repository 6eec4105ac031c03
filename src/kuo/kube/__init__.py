"""Cluster access: the resource client and object metadata helpers."""

from __future__ import annotations

from kuo.kube.client import ResourceClient
from kuo.kube.meta import (
    MANAGED_BY_LABEL,
    OWNER_USER_LABEL,
    label_selector,
    managed_labels,
    owner_reference,
)

__all__ = [
    "MANAGED_BY_LABEL",
    "OWNER_USER_LABEL",
    "ResourceClient",
    "label_selector",
    "managed_labels",
    "owner_reference",
]
