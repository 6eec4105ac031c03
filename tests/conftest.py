"""Shared fixtures for kuo tests.

Fixtures:
    - operator_config: OperatorConfig with test defaults (2048-bit keys)
    - fake_client: In-memory resource client
    - mock_mailer: Mailer double recording deliveries
    - ctx / ctx_with_mailer: OperatorContext wired to the fakes
    - certificate_authority: Signs CSRs like the cluster signer would
"""

from __future__ import annotations

import base64
import copy
import datetime
import itertools
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kuo.config import OperatorConfig
from kuo.controller.context import OperatorContext
from kuo.errors import ResourceClientError
from kuo.mail import Mailer
from kuo.models.managed_user import API_VERSION, KIND

TEST_NAMESPACE = "kuo-system"
ROOT_CA_PEM = "-----BEGIN CERTIFICATE-----\nROOT\n-----END CERTIFICATE-----\n"


def _merge(target: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _matches(obj: dict[str, Any], selector: str) -> bool:
    labels = (obj.get("metadata") or {}).get("labels") or {}
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeResourceClient:
    """In-memory stand-in for ResourceClient.

    Objects are stored in wire form keyed by ``(kind, namespace, name)``.
    ``fail_names`` makes patch_or_create raise a 500 for those object names.
    """

    def __init__(self, namespace: str = TEST_NAMESPACE) -> None:
        self.namespace = namespace
        self.objects: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.managed_users: dict[str, dict[str, Any]] = {}
        self.fail_names: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self._uids = itertools.count(1)

    # Test helpers -------------------------------------------------------------

    def add_managed_user(self, name: str, spec: dict[str, Any] | None = None) -> dict[str, Any]:
        body = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": {"name": name, "uid": f"uid-{name}"},
            "spec": spec or {},
        }
        self.managed_users[name] = body
        return copy.deepcopy(body)

    def get(self, kind: str, name: str, namespace: str = "") -> dict[str, Any] | None:
        return self.objects.get((kind, namespace, name))

    def of_kind(self, kind: str) -> list[dict[str, Any]]:
        return [obj for (k, _, _), obj in self.objects.items() if k == kind]

    def calls_to(self, operation: str) -> list[str]:
        return [target for op, target in self.calls if op == operation]

    def put(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Store an object as if it had been created by someone else."""
        stored = copy.deepcopy(obj)
        metadata = stored.setdefault("metadata", {})
        metadata.setdefault("uid", f"uid-{next(self._uids)}")
        key = (stored["kind"], metadata.get("namespace", ""), metadata["name"])
        self.objects[key] = stored
        return copy.deepcopy(stored)

    # ResourceClient surface ---------------------------------------------------

    async def get_managed_user(self, name: str) -> dict[str, Any]:
        self.calls.append(("get_managed_user", name))
        if name not in self.managed_users:
            raise ResourceClientError(f"get managedusers {name}", status=404, reason="Not Found")
        return copy.deepcopy(self.managed_users[name])

    async def get_secret(self, name: str) -> dict[str, Any] | None:
        self.calls.append(("get_secret", name))
        obj = self.get("Secret", name, self.namespace)
        return copy.deepcopy(obj) if obj else None

    async def get_config_map(self, name: str) -> dict[str, Any] | None:
        self.calls.append(("get_config_map", name))
        obj = self.get("ConfigMap", name, self.namespace)
        return copy.deepcopy(obj) if obj else None

    async def patch_or_create(self, body: dict[str, Any]) -> dict[str, Any]:
        kind = body["kind"]
        metadata = body["metadata"]
        name = metadata["name"]
        if kind in {"Secret", "ConfigMap", "Role", "RoleBinding"}:
            metadata.setdefault("namespace", self.namespace)
        namespace = metadata.get("namespace", "")
        self.calls.append(("patch_or_create", f"{kind}/{name}"))
        if name in self.fail_names:
            raise ResourceClientError(f"patch {kind.lower()} {name}", status=500, reason="Internal Error")
        key = (kind, namespace, name)
        if key in self.objects:
            _merge(self.objects[key], copy.deepcopy(body))
        else:
            self.put(body)
        return copy.deepcopy(self.objects[key])

    async def list_roles(self, label_selector: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(obj) for obj in self.of_kind("Role") if _matches(obj, label_selector)]

    async def list_cluster_roles(self, label_selector: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(obj) for obj in self.of_kind("ClusterRole") if _matches(obj, label_selector)]

    async def delete_role(self, name: str, namespace: str) -> None:
        self.calls.append(("delete_role", f"{namespace}/{name}"))
        self.objects.pop(("Role", namespace, name), None)

    async def delete_role_binding(self, name: str, namespace: str) -> None:
        self.calls.append(("delete_role_binding", f"{namespace}/{name}"))
        self.objects.pop(("RoleBinding", namespace, name), None)

    async def delete_cluster_role(self, name: str) -> None:
        self.calls.append(("delete_cluster_role", name))
        self.objects.pop(("ClusterRole", "", name), None)

    async def delete_cluster_role_binding(self, name: str) -> None:
        self.calls.append(("delete_cluster_role_binding", name))
        self.objects.pop(("ClusterRoleBinding", "", name), None)

    async def get_csr(self, name: str) -> dict[str, Any] | None:
        obj = self.get("CertificateSigningRequest", name)
        return copy.deepcopy(obj) if obj else None

    async def create_csr(self, body: dict[str, Any]) -> dict[str, Any]:
        name = body["metadata"]["name"]
        self.calls.append(("create_csr", name))
        if self.get("CertificateSigningRequest", name) is not None:
            raise ResourceClientError(f"create certificatesigningrequests {name}", status=409, reason="Conflict")
        return self.put(body)

    async def replace_csr_approval(self, name: str, body: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("replace_csr_approval", name))
        stored = self.get("CertificateSigningRequest", name)
        if stored is None:
            raise ResourceClientError(f"update certificatesigningrequests/approval {name}", status=404)
        stored.setdefault("status", {})["conditions"] = copy.deepcopy(body["status"]["conditions"])
        return copy.deepcopy(stored)

    async def delete_csr(self, name: str) -> None:
        self.calls.append(("delete_csr", name))
        self.objects.pop(("CertificateSigningRequest", "", name), None)


class CertificateAuthority:
    """Signs CSRs the way the cluster signer does, for completion tests."""

    def __init__(self) -> None:
        self.key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kuo-test-ca")])

    def sign(self, request_b64: str) -> str:
        """Issue a certificate for a base64 PEM CSR, returned base64 PEM."""
        csr = x509.load_pem_x509_csr(base64.b64decode(request_b64))
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(self.name)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + datetime.timedelta(days=1))
            .sign(self.key, hashes.SHA256())
        )
        return base64.b64encode(cert.public_bytes(serialization.Encoding.PEM)).decode("ascii")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def operator_config() -> OperatorConfig:
    """OperatorConfig with test defaults."""
    return OperatorConfig(
        namespace=TEST_NAMESPACE,
        kube_addr="https://10.0.0.1:6443",
        key_size=2048,
        smtp=None,
    )


@pytest.fixture
def fake_client() -> FakeResourceClient:
    """Empty in-memory cluster with the root CA ConfigMap in place."""
    client = FakeResourceClient()
    client.put(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "kube-root-ca.crt", "namespace": TEST_NAMESPACE},
            "data": {"ca.crt": ROOT_CA_PEM},
        }
    )
    return client


@pytest.fixture
def mock_mailer() -> MagicMock:
    """Mailer double whose send_kubeconfig succeeds."""
    mailer = MagicMock(spec=Mailer)
    mailer.send_kubeconfig = AsyncMock(return_value=None)
    return mailer


@pytest.fixture
def ctx(operator_config: OperatorConfig, fake_client: FakeResourceClient) -> OperatorContext:
    """Operator context without mail delivery."""
    return OperatorContext(config=operator_config, client=fake_client)  # type: ignore[arg-type]


@pytest.fixture
def ctx_with_mailer(
    operator_config: OperatorConfig, fake_client: FakeResourceClient, mock_mailer: MagicMock
) -> OperatorContext:
    """Operator context with a mailer double."""
    return OperatorContext(config=operator_config, client=fake_client, mailer=mock_mailer)  # type: ignore[arg-type]


@pytest.fixture(scope="session")
def certificate_authority() -> CertificateAuthority:
    """Test certificate authority shared across the session."""
    return CertificateAuthority()


@pytest.fixture
def sign_csr(
    fake_client: FakeResourceClient, certificate_authority: CertificateAuthority
) -> Callable[[str], None]:
    """Approve-and-sign a stored CSR as the external signer would."""

    def _sign(name: str) -> None:
        csr = fake_client.get("CertificateSigningRequest", name)
        assert csr is not None
        csr.setdefault("status", {})["certificate"] = certificate_authority.sign(csr["spec"]["request"])

    return _sign
