"""Unit tests for the CSR reconciler."""

from __future__ import annotations

import base64
import copy
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import yaml

from kuo.config import LONG_REQUEUE_SECONDS, SHORT_REQUEUE_SECONDS
from kuo.controller.context import OperatorContext
from kuo.controller.csr import (
    APPROVED_REASON,
    CSRReconciler,
    CSRState,
    approval_condition,
    classify,
)
from kuo.controller.managed_user import ManagedUserReconciler
from kuo.errors import (
    CannotReconcileError,
    CSRDeniedError,
    EmailDeliveryError,
    RootCertificateError,
)
from kuo.models.managed_user import UserSecretData

from tests.conftest import ROOT_CA_PEM, TEST_NAMESPACE, FakeResourceClient

PENDING = UserSecretData(pkey="KEY")
COMPLETE = UserSecretData(pkey="KEY", cert="CERT", kubeconfig="CFG")


def _csr(*conditions: dict[str, str], certificate: str | None = None) -> dict[str, Any]:
    status: dict[str, Any] = {"conditions": list(conditions)}
    if certificate is not None:
        status["certificate"] = certificate
    return {"metadata": {"name": "kuo-alice"}, "status": status}


async def _provision(ctx: OperatorContext, fake_client: FakeResourceClient, spec: dict[str, Any] | None = None) -> None:
    body = fake_client.add_managed_user("alice", spec or {"email": "a@x.com"})
    await ManagedUserReconciler(ctx).reconcile(body)


def _stored_csr(fake_client: FakeResourceClient) -> dict[str, Any]:
    csr = fake_client.get("CertificateSigningRequest", "kuo-alice")
    assert csr is not None
    return copy.deepcopy(csr)


class TestClassify:
    """Tests for CSR state classification."""

    @pytest.mark.parametrize(
        ("csr", "secret", "expected"),
        [
            (_csr(), PENDING, CSRState.UNSIGNED),
            (_csr({"type": "Approved", "status": "True"}), PENDING, CSRState.APPROVED),
            (_csr({"type": "Approved"}, certificate="Q0VSVA=="), PENDING, CSRState.SIGNED),
            (_csr({"type": "Denied", "status": "True"}), PENDING, CSRState.DENIED),
            (_csr({"type": "Denied"}, certificate="Q0VSVA=="), PENDING, CSRState.DENIED),
            (_csr({"type": "Approved"}, certificate="Q0VSVA=="), COMPLETE, CSRState.CONSUMED),
            (_csr(), COMPLETE, CSRState.CONSUMED),
            (_csr({"type": "Approved", "status": "False"}), PENDING, CSRState.UNSIGNED),
        ],
    )
    def test_classify(self, csr: dict[str, Any], secret: UserSecretData, expected: CSRState) -> None:
        """Test each lifecycle state is recognized."""
        assert classify(csr, secret) is expected

    def test_no_status(self) -> None:
        """Test a CSR without status is unsigned."""
        assert classify({"metadata": {"name": "x"}}, PENDING) is CSRState.UNSIGNED


class TestApprovalCondition:
    """Tests for approval_condition."""

    def test_fields(self) -> None:
        """Test the condition carries reason, message and timestamp."""
        condition = approval_condition(datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc))
        assert condition["type"] == "Approved"
        assert condition["status"] == "True"
        assert condition["reason"] == APPROVED_REASON
        assert condition["lastUpdateTime"] == "2024-05-01T12:30:00Z"


class TestApprove:
    """Tests for the UNSIGNED transition."""

    @pytest.mark.asyncio
    async def test_appends_approved_condition(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a new request is approved through the approval sub-resource."""
        await _provision(ctx, fake_client)
        csr = _stored_csr(fake_client)
        csr["metadata"]["managedFields"] = [{"manager": "kube-controller-manager"}]

        with patch.object(fake_client, "replace_csr_approval", wraps=fake_client.replace_csr_approval) as approve:
            action = await CSRReconciler(ctx).reconcile(csr)

        assert action.requeue_after == LONG_REQUEUE_SECONDS
        name, submitted = approve.await_args.args
        assert name == "kuo-alice"
        assert "managedFields" not in submitted["metadata"]
        assert "managedFields" in csr["metadata"]
        (condition,) = _stored_csr(fake_client)["status"]["conditions"]
        assert condition["type"] == "Approved"

    @pytest.mark.asyncio
    async def test_approved_waits(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test an approved request is left for the signer."""
        await _provision(ctx, fake_client)
        await CSRReconciler(ctx).reconcile(_stored_csr(fake_client))

        action = await CSRReconciler(ctx).reconcile(_stored_csr(fake_client))

        assert action.requeue_after == LONG_REQUEUE_SECONDS
        assert fake_client.calls_to("replace_csr_approval") == ["kuo-alice"]


class TestDenied:
    """Tests for the DENIED transition."""

    @pytest.mark.asyncio
    async def test_denied_never_approved(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a denied request raises and is never approved."""
        await _provision(ctx, fake_client)
        csr = _stored_csr(fake_client)
        csr["status"] = {"conditions": [{"type": "Denied", "status": "True"}]}

        with pytest.raises(CSRDeniedError, match="kuo-alice"):
            await CSRReconciler(ctx).reconcile(csr)
        assert fake_client.calls_to("replace_csr_approval") == []


class TestComplete:
    """Tests for the SIGNED transition."""

    @pytest.mark.asyncio
    async def test_secret_completed_and_csr_deleted(
        self,
        ctx_with_mailer: OperatorContext,
        fake_client: FakeResourceClient,
        mock_mailer: MagicMock,
        sign_csr: Callable[[str], None],
    ) -> None:
        """Test a signed request becomes a kubeconfig, is mailed once and deleted."""
        await _provision(ctx_with_mailer, fake_client)
        reconciler = CSRReconciler(ctx_with_mailer)
        await reconciler.reconcile(_stored_csr(fake_client))
        sign_csr("kuo-alice")

        action = await reconciler.reconcile(_stored_csr(fake_client))

        assert action.requeue_after == LONG_REQUEUE_SECONDS
        secret = fake_client.get("Secret", "alice-data", TEST_NAMESPACE)
        assert secret is not None
        data = UserSecretData.from_secret_data("alice-data", secret["data"])
        assert data.is_complete
        assert data.cert is not None
        assert data.cert.startswith("-----BEGIN CERTIFICATE-----")

        kubeconfig = yaml.safe_load(data.kubeconfig or "")
        cluster = kubeconfig["clusters"][0]["cluster"]
        assert cluster["server"] == "https://10.0.0.1:6443"
        assert base64.b64decode(cluster["certificate-authority-data"]).decode() == ROOT_CA_PEM
        user = kubeconfig["users"][0]["user"]
        assert base64.b64decode(user["client-key-data"]).decode() == data.pkey

        assert fake_client.get("CertificateSigningRequest", "kuo-alice") is None
        mock_mailer.send_kubeconfig.assert_awaited_once()
        mailed_user, mailed_config = mock_mailer.send_kubeconfig.await_args.args
        assert mailed_user.name == "alice"
        assert mailed_config == data.kubeconfig

    @pytest.mark.asyncio
    async def test_mail_failure_still_consumes(
        self,
        ctx_with_mailer: OperatorContext,
        fake_client: FakeResourceClient,
        mock_mailer: MagicMock,
        sign_csr: Callable[[str], None],
    ) -> None:
        """Test credentials are stored and the CSR deleted when mail fails."""
        mock_mailer.send_kubeconfig.side_effect = EmailDeliveryError("a@x.com", "refused")
        await _provision(ctx_with_mailer, fake_client)
        sign_csr("kuo-alice")

        await CSRReconciler(ctx_with_mailer).reconcile(_stored_csr(fake_client))

        secret = fake_client.get("Secret", "alice-data", TEST_NAMESPACE)
        assert secret is not None
        assert UserSecretData.from_secret_data("alice-data", secret["data"]).is_complete
        assert fake_client.get("CertificateSigningRequest", "kuo-alice") is None

    @pytest.mark.asyncio
    async def test_without_mailer(
        self, ctx: OperatorContext, fake_client: FakeResourceClient, sign_csr: Callable[[str], None]
    ) -> None:
        """Test completion works with mail disabled."""
        await _provision(ctx, fake_client)
        sign_csr("kuo-alice")

        await CSRReconciler(ctx).reconcile(_stored_csr(fake_client))

        assert fake_client.calls_to("delete_csr") == ["kuo-alice"]

    @pytest.mark.asyncio
    async def test_consumed_is_noop(
        self, ctx: OperatorContext, fake_client: FakeResourceClient, sign_csr: Callable[[str], None]
    ) -> None:
        """Test a replayed event for a consumed request changes nothing."""
        await _provision(ctx, fake_client)
        sign_csr("kuo-alice")
        csr = _stored_csr(fake_client)
        await CSRReconciler(ctx).reconcile(csr)
        writes = len(fake_client.calls_to("patch_or_create"))

        action = await CSRReconciler(ctx).reconcile(csr)

        assert action.requeue_after == LONG_REQUEUE_SECONDS
        assert len(fake_client.calls_to("patch_or_create")) == writes
        assert fake_client.calls_to("delete_csr") == ["kuo-alice"]


class TestOwnership:
    """Tests for owner and Secret resolution."""

    @pytest.mark.asyncio
    async def test_no_owner(self, ctx: OperatorContext) -> None:
        """Test a request without an owner is skipped."""
        action = await CSRReconciler(ctx).reconcile({"metadata": {"name": "someone-else"}})
        assert action.requeue_after == SHORT_REQUEUE_SECONDS

    @pytest.mark.asyncio
    async def test_owner_gone(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a request whose owner was deleted is skipped."""
        await _provision(ctx, fake_client)
        del fake_client.managed_users["alice"]

        action = await CSRReconciler(ctx).reconcile(_stored_csr(fake_client))

        assert action.requeue_after == SHORT_REQUEUE_SECONDS

    @pytest.mark.asyncio
    async def test_missing_secret(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a missing Secret cannot be reconciled."""
        await _provision(ctx, fake_client)
        fake_client.objects.pop(("Secret", TEST_NAMESPACE, "alice-data"))

        with pytest.raises(CannotReconcileError, match="alice-data"):
            await CSRReconciler(ctx).reconcile(_stored_csr(fake_client))

    @pytest.mark.asyncio
    async def test_missing_name(self, ctx: OperatorContext) -> None:
        """Test a request without a name is rejected."""
        with pytest.raises(CannotReconcileError):
            await CSRReconciler(ctx).reconcile({"metadata": {}})


class TestRootCertificate:
    """Tests for reading the cluster root CA."""

    @pytest.mark.asyncio
    async def test_read(self, ctx: OperatorContext) -> None:
        """Test the configured key is returned."""
        assert await CSRReconciler(ctx).root_certificate() == ROOT_CA_PEM

    @pytest.mark.asyncio
    async def test_config_map_missing(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a missing ConfigMap is reported."""
        fake_client.objects.pop(("ConfigMap", TEST_NAMESPACE, "kube-root-ca.crt"))
        with pytest.raises(RootCertificateError, match="doesn't exist"):
            await CSRReconciler(ctx).root_certificate()

    @pytest.mark.asyncio
    async def test_no_data(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a ConfigMap without data is reported."""
        fake_client.objects[("ConfigMap", TEST_NAMESPACE, "kube-root-ca.crt")].pop("data")
        with pytest.raises(RootCertificateError, match="has no data"):
            await CSRReconciler(ctx).root_certificate()

    @pytest.mark.asyncio
    async def test_key_missing(self, ctx: OperatorContext, fake_client: FakeResourceClient) -> None:
        """Test a ConfigMap without the key is reported."""
        fake_client.objects[("ConfigMap", TEST_NAMESPACE, "kube-root-ca.crt")]["data"] = {"other": "x"}
        with pytest.raises(RootCertificateError, match="The key ca.crt"):
            await CSRReconciler(ctx).root_certificate()
