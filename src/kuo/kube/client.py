"""Async resource client over the official Kubernetes Python client.

The kubernetes client is blocking, so every request runs in a worker thread.
All objects cross this boundary as plain dictionaries in their wire form
(camelCase keys), and every ``ApiException`` is re-raised as
:class:`~kuo.errors.ResourceClientError`.

Example:
    >>> from kuo.config import OperatorConfig
    >>> from kuo.kube.client import ResourceClient
    >>> client = ResourceClient(OperatorConfig())
    >>> client.connect()
    >>> secret = await client.get_secret("alice-data")
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

from kuo.errors import ResourceClientError
from kuo.models.managed_user import GROUP, PLURAL, VERSION

if TYPE_CHECKING:
    from kuo.config import OperatorConfig

logger = structlog.get_logger(__name__)

NAMESPACED_KINDS = frozenset({"Secret", "ConfigMap", "Role", "RoleBinding"})


class ResourceClient:
    """Typed CRUD access to the cluster objects the operator manages.

    Attributes:
        config: Operator configuration.
        namespace: Namespace of user Secrets and the root CA ConfigMap.
    """

    def __init__(self, config: OperatorConfig) -> None:
        """Initialize the client. Call connect() before issuing requests.

        Args:
            config: Operator configuration.
        """
        self.config = config
        self.namespace = config.resolved_namespace
        self._api_client: Any = None
        self._core: Any = None
        self._rbac: Any = None
        self._certs: Any = None
        self._custom: Any = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> None:
        """Load cluster credentials and build the API clients.

        Attempts to load configuration in this order:
        1. Explicit kubeconfig path from config
        2. In-cluster configuration
        3. Default kubeconfig (~/.kube/config)

        Raises:
            ResourceClientError: If no usable configuration is found.
        """
        try:
            if self.config.kubeconfig_path:
                k8s_config.load_kube_config(
                    config_file=self.config.kubeconfig_path,
                    context=self.config.context,
                )
                logger.info(
                    "kubeconfig_loaded",
                    kubeconfig_path=self.config.kubeconfig_path,
                    context=self.config.context,
                )
            else:
                try:
                    k8s_config.load_incluster_config()
                    logger.info("incluster_config_loaded")
                except k8s_config.ConfigException:
                    k8s_config.load_kube_config(context=self.config.context)
                    logger.info("default_kubeconfig_loaded", context=self.config.context)
        except Exception as e:
            logger.exception("kubernetes_config_failed")
            raise ResourceClientError("load cluster configuration", reason=str(e)) from e

        self._api_client = client.ApiClient()
        self._core = client.CoreV1Api(self._api_client)
        self._rbac = client.RbacAuthorizationV1Api(self._api_client)
        self._certs = client.CertificatesV1Api(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)

    async def verify(self) -> None:
        """Check that the API server is reachable.

        Raises:
            ResourceClientError: If the request fails.
        """
        await self._call("get API versions", client.CoreApi(self._api_client).get_api_versions)

    def close(self) -> None:
        """Release the connection pool."""
        if self._api_client is not None:
            self._api_client.close()
        self._api_client = None
        self._core = None
        self._rbac = None
        self._certs = None
        self._custom = None

    # =========================================================================
    # ManagedUser
    # =========================================================================

    async def get_managed_user(self, name: str) -> dict[str, Any]:
        """Read a ManagedUser object."""
        return await self._call(
            f"get managedusers {name}",
            self._custom.get_cluster_custom_object,
            GROUP,
            VERSION,
            PLURAL,
            name,
        )

    # =========================================================================
    # Secrets and ConfigMaps
    # =========================================================================

    async def get_secret(self, name: str) -> dict[str, Any] | None:
        """Read a Secret from the operator namespace, None if absent."""
        return await self._get_optional(
            f"get secrets {self.namespace}/{name}",
            self._core.read_namespaced_secret,
            name,
            self.namespace,
        )

    async def get_config_map(self, name: str) -> dict[str, Any] | None:
        """Read a ConfigMap from the operator namespace, None if absent."""
        return await self._get_optional(
            f"get configmaps {self.namespace}/{name}",
            self._core.read_namespaced_config_map,
            name,
            self.namespace,
        )

    # =========================================================================
    # Create-or-patch
    # =========================================================================

    async def patch_or_create(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create an object, or merge-patch it if it already exists.

        Namespaced kinds without an explicit namespace land in the operator
        namespace.

        Args:
            body: Object in wire form with kind and metadata.name set.

        Returns:
            The object as stored by the API server.
        """
        kind = body["kind"]
        name = body["metadata"]["name"]
        read, create, patch = self._crud(kind)
        args: tuple[Any, ...] = ()
        if kind in NAMESPACED_KINDS:
            namespace = body["metadata"].setdefault("namespace", self.namespace)
            args = (namespace,)
            target = f"{kind.lower()} {namespace}/{name}"
        else:
            target = f"{kind.lower()} {name}"

        existing = await self._get_optional(f"get {target}", read, name, *args)
        if existing is None:
            logger.debug("creating_object", kind=kind, name=name)
            return await self._call(f"create {target}", create, *args, body)
        logger.debug("patching_object", kind=kind, name=name)
        return await self._call(f"patch {target}", patch, name, *args, body)

    def _crud(self, kind: str) -> tuple[Callable[..., Any], ...]:
        table: dict[str, tuple[Callable[..., Any], ...]] = {
            "Secret": (
                self._core.read_namespaced_secret,
                self._core.create_namespaced_secret,
                self._core.patch_namespaced_secret,
            ),
            "Role": (
                self._rbac.read_namespaced_role,
                self._rbac.create_namespaced_role,
                self._rbac.patch_namespaced_role,
            ),
            "RoleBinding": (
                self._rbac.read_namespaced_role_binding,
                self._rbac.create_namespaced_role_binding,
                self._rbac.patch_namespaced_role_binding,
            ),
            "ClusterRole": (
                self._rbac.read_cluster_role,
                self._rbac.create_cluster_role,
                self._rbac.patch_cluster_role,
            ),
            "ClusterRoleBinding": (
                self._rbac.read_cluster_role_binding,
                self._rbac.create_cluster_role_binding,
                self._rbac.patch_cluster_role_binding,
            ),
        }
        if kind not in table:
            msg = f"Unsupported kind for patch_or_create: {kind}"
            raise ValueError(msg)
        return table[kind]

    # =========================================================================
    # RBAC listing and deletion
    # =========================================================================

    async def list_roles(self, label_selector: str) -> list[dict[str, Any]]:
        """List Roles in all namespaces matching a label selector."""
        result = await self._call(
            f"list roles {label_selector}",
            self._rbac.list_role_for_all_namespaces,
            label_selector=label_selector,
        )
        return result.get("items") or []

    async def list_cluster_roles(self, label_selector: str) -> list[dict[str, Any]]:
        """List ClusterRoles matching a label selector."""
        result = await self._call(
            f"list clusterroles {label_selector}",
            self._rbac.list_cluster_role,
            label_selector=label_selector,
        )
        return result.get("items") or []

    async def delete_role(self, name: str, namespace: str) -> None:
        """Delete a Role, ignoring an already deleted one."""
        await self._delete(f"roles {namespace}/{name}", self._rbac.delete_namespaced_role, name, namespace)

    async def delete_role_binding(self, name: str, namespace: str) -> None:
        """Delete a RoleBinding, ignoring an already deleted one."""
        await self._delete(
            f"rolebindings {namespace}/{name}",
            self._rbac.delete_namespaced_role_binding,
            name,
            namespace,
        )

    async def delete_cluster_role(self, name: str) -> None:
        """Delete a ClusterRole, ignoring an already deleted one."""
        await self._delete(f"clusterroles {name}", self._rbac.delete_cluster_role, name)

    async def delete_cluster_role_binding(self, name: str) -> None:
        """Delete a ClusterRoleBinding, ignoring an already deleted one."""
        await self._delete(
            f"clusterrolebindings {name}",
            self._rbac.delete_cluster_role_binding,
            name,
        )

    # =========================================================================
    # CertificateSigningRequests
    # =========================================================================

    async def get_csr(self, name: str) -> dict[str, Any] | None:
        """Read a CertificateSigningRequest, None if absent."""
        return await self._get_optional(
            f"get certificatesigningrequests {name}",
            self._certs.read_certificate_signing_request,
            name,
        )

    async def create_csr(self, body: dict[str, Any]) -> dict[str, Any]:
        """Create a CertificateSigningRequest."""
        return await self._call(
            f"create certificatesigningrequests {body['metadata']['name']}",
            self._certs.create_certificate_signing_request,
            body,
        )

    async def replace_csr_approval(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        """Submit conditions through the approval sub-resource."""
        return await self._call(
            f"update certificatesigningrequests/approval {name}",
            self._certs.replace_certificate_signing_request_approval,
            name,
            body,
        )

    async def delete_csr(self, name: str) -> None:
        """Delete a CertificateSigningRequest, ignoring an already deleted one."""
        await self._delete(
            f"certificatesigningrequests {name}",
            self._certs.delete_certificate_signing_request,
            name,
        )

    # =========================================================================
    # Helper Methods
    # =========================================================================

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking API call in a worker thread.

        Returns:
            The response converted to wire-form dictionaries.

        Raises:
            ResourceClientError: If the client is not connected or the API
                server rejects the request.
        """
        if self._api_client is None:
            raise ResourceClientError(operation, reason="Client not connected - call connect() first")
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as e:
            raise ResourceClientError(operation, status=e.status or 0, reason=e.reason or "") from e
        if isinstance(result, dict):
            return result
        return self._api_client.sanitize_for_serialization(result)

    async def _get_optional(
        self, operation: str, fn: Callable[..., Any], *args: Any
    ) -> dict[str, Any] | None:
        try:
            return await self._call(operation, fn, *args)
        except ResourceClientError as e:
            if e.not_found:
                return None
            raise

    async def _delete(self, target: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            await self._call(f"delete {target}", fn, *args)
        except ResourceClientError as e:
            if not e.not_found:
                raise
            logger.debug("object_already_deleted", target=target)


__all__ = ["NAMESPACED_KINDS", "ResourceClient"]
