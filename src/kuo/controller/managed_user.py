"""ManagedUser reconciler.

Each pass synchronizes the user's inline permissions, then makes sure the
user has an identity in flight:

- no Secret yet: generate a key, store it in ``<user>-data`` and file a CSR;
- Secret without a certificate and no CSR filed: file the CSR again from the
  stored key (the key is never regenerated once stored);
- otherwise: nothing to do until the periodic resync.

Example:
    >>> reconciler = ManagedUserReconciler(ctx)
    >>> action = await reconciler.reconcile(body)
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import structlog

from kuo.certs import build_csr_pem, csr_from_key_pem, generate_private_key, private_key_pem
from kuo.config import LONG_REQUEUE_SECONDS, SHORT_REQUEUE_SECONDS
from kuo.controller.permissions import PermissionSynchronizer
from kuo.controller.runtime import Action
from kuo.errors import CannotReconcileError, ResourceClientError
from kuo.kube.meta import managed_labels, object_meta, owner_reference
from kuo.models.managed_user import API_VERSION, KIND, ManagedUser, UserSecretData

if TYPE_CHECKING:
    from kuo.config import OperatorConfig
    from kuo.controller.context import OperatorContext

logger = structlog.get_logger(__name__)

CSR_API_VERSION = "certificates.k8s.io/v1"
CSR_USAGES = ("digital signature", "key encipherment", "client auth")


def user_owner_reference(user: ManagedUser) -> dict[str, Any]:
    """Owner reference to a managed user."""
    return owner_reference(API_VERSION, KIND, user.name or "", user.uid or "")


def secret_manifest(user: ManagedUser, data: UserSecretData, config: OperatorConfig) -> dict[str, Any]:
    """Manifest of a user's ``<user>-data`` Secret."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": object_meta(
            user.secret_name,
            namespace=config.resolved_namespace,
            labels=managed_labels(config.operator_name, user.name),
            owners=[user_owner_reference(user)],
        ),
        "data": data.to_secret_data(),
    }


def csr_manifest(user: ManagedUser, request_pem: str, config: OperatorConfig) -> dict[str, Any]:
    """Manifest of the CertificateSigningRequest filed for a user."""
    return {
        "apiVersion": CSR_API_VERSION,
        "kind": "CertificateSigningRequest",
        "metadata": object_meta(
            config.csr_name(user.name or ""),
            labels=managed_labels(config.operator_name, user.name),
            owners=[user_owner_reference(user)],
        ),
        "spec": {
            "request": base64.b64encode(request_pem.encode("ascii")).decode("ascii"),
            "signerName": config.signer_name,
            "usages": list(CSR_USAGES),
        },
    }


def read_user_secret(user: ManagedUser, secret: Mapping[str, Any] | None) -> UserSecretData | None:
    """Decode a user's Secret. A missing Secret or one without data is None.

    Raises:
        InvalidUserSecretDataError: If the Secret has data but no usable key.
    """
    if secret is None or not secret.get("data"):
        return None
    return UserSecretData.from_secret_data(user.secret_name, secret["data"])


class ManagedUserReconciler:
    """Drives a ManagedUser from declared to having a pending identity.

    Attributes:
        ctx: Operator context.
        permissions: Inline permission synchronizer.
    """

    def __init__(self, ctx: OperatorContext, permissions: PermissionSynchronizer | None = None) -> None:
        self.ctx = ctx
        self.permissions = permissions or PermissionSynchronizer(
            ctx.client, operator_name=ctx.config.operator_name
        )

    async def reconcile(self, body: Mapping[str, Any]) -> Action:
        """Reconcile one ManagedUser.

        Args:
            body: The ManagedUser object.

        Returns:
            Long requeue once the user has a Secret, short requeue after
            first-time provisioning.

        Raises:
            CannotReconcileError: If the object has no name or UID.
            CryptoError: If key or CSR generation fails.
            ResourceClientError: If a cluster request fails.
        """
        user = ManagedUser.from_body(body)
        if not user.name:
            raise CannotReconcileError("Managed user metadata has no name")
        if not user.uid:
            raise CannotReconcileError(f"Managed user '{user.name}' has no UID")
        log = logger.bind(user=user.name)

        await self.permissions.apply(user, user.spec.inline_permissions)

        secret = await self.ctx.client.get_secret(user.secret_name)
        data = read_user_secret(user, secret)
        if data is not None:
            if data.cert is None:
                await self._ensure_csr_filed(user, data)
            log.debug("user_already_provisioned")
            return Action.requeue(LONG_REQUEUE_SECONDS)

        log.info("provisioning_user", key_size=self.ctx.config.key_size)
        key = await asyncio.to_thread(generate_private_key, self.ctx.config.key_size)
        request_pem = build_csr_pem(key, user.name)
        data = UserSecretData(pkey=private_key_pem(key))
        await self.ctx.client.patch_or_create(secret_manifest(user, data, self.ctx.config))
        log.info("user_secret_created", secret=user.secret_name)

        await self._file_csr(user, request_pem)
        return Action.requeue(SHORT_REQUEUE_SECONDS)

    async def _ensure_csr_filed(self, user: ManagedUser, data: UserSecretData) -> None:
        name = self.ctx.config.csr_name(user.name or "")
        if await self.ctx.client.get_csr(name) is not None:
            return
        logger.info("refiling_csr_from_stored_key", user=user.name, csr=name)
        await self._file_csr(user, csr_from_key_pem(data.pkey, user.name or ""))

    async def _file_csr(self, user: ManagedUser, request_pem: str) -> None:
        manifest = csr_manifest(user, request_pem, self.ctx.config)
        name = manifest["metadata"]["name"]
        try:
            await self.ctx.client.create_csr(manifest)
        except ResourceClientError as e:
            if not e.conflict:
                raise
            logger.info("csr_already_filed", user=user.name, csr=name)
            return
        logger.info("csr_filed", user=user.name, csr=name, signer=self.ctx.config.signer_name)


__all__ = [
    "CSR_USAGES",
    "ManagedUserReconciler",
    "csr_manifest",
    "read_user_secret",
    "secret_manifest",
    "user_owner_reference",
]
