"""CertificateSigningRequest reconciler.

The lifecycle of a CSR filed for a managed user is an explicit state
machine. ``classify`` derives the state from the CSR and the owner's Secret,
and ``TRANSITIONS`` maps each state to its handler:

    UNSIGNED  -> append an Approved condition
    APPROVED  -> wait for the external signer
    SIGNED    -> store certificate and kubeconfig, mail it, delete the CSR
    CONSUMED  -> nothing left to do
    DENIED    -> fail with CSRDeniedError

The reconciler only ever approves and consumes requests. Signing is done by
the cluster signer named in the request.
"""

from __future__ import annotations

import copy
import enum
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from kuo.certs import decode_certificate
from kuo.config import LONG_REQUEUE_SECONDS, SHORT_REQUEUE_SECONDS
from kuo.controller.managed_user import read_user_secret, secret_manifest
from kuo.controller.runtime import Action
from kuo.errors import (
    CannotReconcileError,
    CSRDeniedError,
    EmailDeliveryError,
    ResourceClientError,
    RootCertificateError,
)
from kuo.kube.meta import first_owner, strip_server_managed
from kuo.kubeconfig import build_kubeconfig
from kuo.mail import deliver_kubeconfig
from kuo.models.managed_user import ManagedUser, UserSecretData

if TYPE_CHECKING:
    from kuo.controller.context import OperatorContext

logger = structlog.get_logger(__name__)

APPROVED_REASON = "KuoApproved"
APPROVED_MESSAGE = "Certificate request approved by kuo"


class CSRState(enum.Enum):
    """Lifecycle state of a user CSR."""

    UNSIGNED = "Unsigned"
    APPROVED = "Approved"
    SIGNED = "Signed"
    DENIED = "Denied"
    CONSUMED = "Consumed"


def _has_condition(csr: Mapping[str, Any], condition_type: str) -> bool:
    conditions = (csr.get("status") or {}).get("conditions") or []
    return any(
        condition.get("type") == condition_type and condition.get("status", "True") != "False"
        for condition in conditions
    )


def classify(csr: Mapping[str, Any], secret: UserSecretData) -> CSRState:
    """Derive the lifecycle state of a CSR.

    A complete Secret wins over everything else, and a Denied condition is
    checked before the certificate so a denied request is never consumed.

    Args:
        csr: The CertificateSigningRequest object.
        secret: Decoded Secret of the owning user.

    Returns:
        The current state.
    """
    if secret.is_complete:
        return CSRState.CONSUMED
    if _has_condition(csr, "Denied"):
        return CSRState.DENIED
    if (csr.get("status") or {}).get("certificate"):
        return CSRState.SIGNED
    if _has_condition(csr, "Approved"):
        return CSRState.APPROVED
    return CSRState.UNSIGNED


def approval_condition(now: datetime | None = None) -> dict[str, str]:
    """Approved condition submitted through the approval sub-resource."""
    now = now or datetime.now(timezone.utc)
    return {
        "type": "Approved",
        "status": "True",
        "reason": APPROVED_REASON,
        "message": APPROVED_MESSAGE,
        "lastUpdateTime": now.strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


Handler = Callable[["CSRReconciler", str, Mapping[str, Any], ManagedUser, UserSecretData], Awaitable[Action]]


class CSRReconciler:
    """Approves user CSRs and turns signed ones into kubeconfigs.

    Attributes:
        ctx: Operator context.
    """

    def __init__(self, ctx: OperatorContext) -> None:
        self.ctx = ctx

    async def reconcile(self, body: Mapping[str, Any]) -> Action:
        """Reconcile one CSR.

        Args:
            body: The CertificateSigningRequest object.

        Returns:
            Short requeue for orphaned requests, long requeue otherwise.

        Raises:
            CannotReconcileError: If the CSR has no name or the owner's Secret
                is missing.
            CSRDeniedError: If the request was denied.
            RootCertificateError: If the cluster root CA cannot be read.
            CryptoError: If the issued certificate cannot be decoded.
            ResourceClientError: If a cluster request fails.
        """
        name = (body.get("metadata") or {}).get("name")
        if not name:
            raise CannotReconcileError("CSR metadata has no name")
        log = logger.bind(csr=name)

        owner = first_owner(body)
        if owner is None:
            log.warning("csr_has_no_owner")
            return Action.requeue(SHORT_REQUEUE_SECONDS)

        try:
            user = ManagedUser.from_body(await self.ctx.client.get_managed_user(owner.name))
        except ResourceClientError as e:
            if not e.not_found:
                raise
            log.warning("csr_owner_not_found", owner=owner.name)
            return Action.requeue(SHORT_REQUEUE_SECONDS)

        secret = read_user_secret(user, await self.ctx.client.get_secret(user.secret_name))
        if secret is None:
            raise CannotReconcileError(f"Secret '{user.secret_name}' of user '{user.name}' does not exist")

        state = classify(body, secret)
        log.debug("csr_state_classified", state=state.value, user=user.name)
        return await TRANSITIONS[state](self, name, body, user, secret)

    async def _approve(
        self, name: str, csr: Mapping[str, Any], user: ManagedUser, secret: UserSecretData
    ) -> Action:
        approval = strip_server_managed(copy.deepcopy(dict(csr)))
        status = approval.setdefault("status", {})
        status["conditions"] = [*(status.get("conditions") or []), approval_condition()]
        await self.ctx.client.replace_csr_approval(name, approval)
        logger.info("csr_approved", csr=name, user=user.name)
        return Action.requeue(LONG_REQUEUE_SECONDS)

    async def _await_signature(
        self, name: str, csr: Mapping[str, Any], user: ManagedUser, secret: UserSecretData
    ) -> Action:
        logger.debug("csr_awaiting_signature", csr=name, user=user.name)
        return Action.requeue(LONG_REQUEUE_SECONDS)

    async def _deny(
        self, name: str, csr: Mapping[str, Any], user: ManagedUser, secret: UserSecretData
    ) -> Action:
        raise CSRDeniedError(name)

    async def _already_consumed(
        self, name: str, csr: Mapping[str, Any], user: ManagedUser, secret: UserSecretData
    ) -> Action:
        logger.debug("csr_already_consumed", csr=name, user=user.name)
        return Action.requeue(LONG_REQUEUE_SECONDS)

    async def _complete(
        self, name: str, csr: Mapping[str, Any], user: ManagedUser, secret: UserSecretData
    ) -> Action:
        config = self.ctx.config
        root_cert = await self.root_certificate()
        client_cert = decode_certificate(csr["status"]["certificate"])
        kubeconfig = build_kubeconfig(
            user.name or "",
            config.kube_addr,
            private_key=secret.pkey,
            client_cert=client_cert,
            root_cert=root_cert,
            cluster_name=config.cluster_name,
        )
        completed = UserSecretData(pkey=secret.pkey, cert=client_cert, kubeconfig=kubeconfig)
        await self.ctx.client.patch_or_create(secret_manifest(user, completed, config))
        logger.info("user_credentials_stored", csr=name, user=user.name, secret=user.secret_name)

        try:
            await deliver_kubeconfig(self.ctx.mailer, user, kubeconfig)
        except EmailDeliveryError as e:
            logger.error("kubeconfig_mail_failed", user=user.name, error=str(e))

        await self.ctx.client.delete_csr(name)
        logger.info("csr_consumed", csr=name, user=user.name)
        return Action.requeue(LONG_REQUEUE_SECONDS)

    async def root_certificate(self) -> str:
        """Read the cluster root CA from the configured ConfigMap.

        Raises:
            RootCertificateError: If the ConfigMap, its data or the key is missing.
        """
        name = self.ctx.config.default_cert_name
        key = self.ctx.config.default_cert_key
        config_map = await self.ctx.client.get_config_map(name)
        if config_map is None:
            raise RootCertificateError(f"The ConfigMap {name} doesn't exist.")
        data = config_map.get("data")
        if not data:
            raise RootCertificateError(f"The ConfigMap {name} has no data.")
        if key not in data:
            raise RootCertificateError(f"The key {key} doesn't exist in the ConfigMap {name}.")
        return data[key]


TRANSITIONS: dict[CSRState, Handler] = {
    CSRState.UNSIGNED: CSRReconciler._approve,
    CSRState.APPROVED: CSRReconciler._await_signature,
    CSRState.SIGNED: CSRReconciler._complete,
    CSRState.DENIED: CSRReconciler._deny,
    CSRState.CONSUMED: CSRReconciler._already_consumed,
}


__all__ = [
    "APPROVED_MESSAGE",
    "APPROVED_REASON",
    "TRANSITIONS",
    "CSRReconciler",
    "CSRState",
    "approval_condition",
    "classify",
]
