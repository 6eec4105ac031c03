"""Kubeconfig rendering for managed users.

The document holds exactly one cluster (``cluster``), one user named after
the managed user and one context (``default``) selected as current. All
credentials are embedded inline as base64 data fields.

Example:
    >>> from kuo.kubeconfig import build_kubeconfig
    >>> text = build_kubeconfig(
    ...     "alice",
    ...     "https://10.0.0.1:6443",
    ...     private_key=key_pem,
    ...     client_cert=cert_pem,
    ...     root_cert=ca_pem,
    ... )
"""

from __future__ import annotations

import base64
from typing import Any

import yaml

from kuo.errors import KubeconfigError

CLUSTER_ENTRY_NAME = "cluster"
CONTEXT_NAME = "default"
CLUSTER_NAME_EXTENSION = "kuo.github.io/cluster-name"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def kubeconfig_document(
    user_name: str,
    kube_addr: str,
    *,
    private_key: str,
    client_cert: str,
    root_cert: str,
    cluster_name: str | None = None,
) -> dict[str, Any]:
    """Build the kubeconfig as a plain dictionary."""
    cluster: dict[str, Any] = {
        "server": kube_addr,
        "certificate-authority-data": _b64(root_cert),
    }
    if cluster_name:
        cluster["extensions"] = [
            {
                "name": CLUSTER_NAME_EXTENSION,
                "extension": {"name": cluster_name},
            }
        ]

    return {
        "apiVersion": "v1",
        "kind": "Config",
        "preferences": {},
        "clusters": [{"name": CLUSTER_ENTRY_NAME, "cluster": cluster}],
        "users": [
            {
                "name": user_name,
                "user": {
                    "client-certificate-data": _b64(client_cert),
                    "client-key-data": _b64(private_key),
                },
            }
        ],
        "contexts": [
            {
                "name": CONTEXT_NAME,
                "context": {"cluster": CLUSTER_ENTRY_NAME, "user": user_name},
            }
        ],
        "current-context": CONTEXT_NAME,
    }


def build_kubeconfig(
    user_name: str,
    kube_addr: str,
    *,
    private_key: str,
    client_cert: str,
    root_cert: str,
    cluster_name: str | None = None,
) -> str:
    """Render a kubeconfig YAML document for a managed user.

    Args:
        user_name: Managed user name, used as the kubeconfig user entry.
        kube_addr: API server address.
        private_key: PEM private key of the user.
        client_cert: PEM client certificate issued for the key.
        root_cert: PEM root CA of the cluster.
        cluster_name: Optional display name carried as a cluster extension.

    Returns:
        The kubeconfig as YAML text.

    Raises:
        KubeconfigError: If a required value is empty or rendering fails.
    """
    for field, value in (
        ("user name", user_name),
        ("server address", kube_addr),
        ("private key", private_key),
        ("client certificate", client_cert),
        ("root certificate", root_cert),
    ):
        if not value:
            raise KubeconfigError(f"{field} is empty")

    document = kubeconfig_document(
        user_name,
        kube_addr,
        private_key=private_key,
        client_cert=client_cert,
        root_cert=root_cert,
        cluster_name=cluster_name,
    )
    try:
        return yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
    except yaml.YAMLError as e:
        raise KubeconfigError(str(e)) from e


__all__ = [
    "CLUSTER_ENTRY_NAME",
    "CLUSTER_NAME_EXTENSION",
    "CONTEXT_NAME",
    "build_kubeconfig",
    "kubeconfig_document",
]
