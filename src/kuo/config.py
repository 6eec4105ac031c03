"""Configuration models for the kuo operator.

Settings are resolved once at process start from ``KUO_OPERATOR_*``
environment variables (and an optional ``.env`` file), then overridden by
command-line flags. The resulting :class:`OperatorConfig` is frozen and
shared by reference with every reconciler.

Environment Variables:
    KUO_OPERATOR_SIGNER_NAME: Signer requested on every CSR.
    KUO_OPERATOR_KUBE_ADDR: API server address written into kubeconfigs.
    KUO_OPERATOR_CLUSTER_NAME: Optional cluster display name.
    KUO_OPERATOR_DEFAULT_CERT_NAME: ConfigMap holding the cluster root CA.
    KUO_OPERATOR_DEFAULT_CERT_KEY: Key of the root CA inside that ConfigMap.
    KUO_OPERATOR_SMTP_URL: Enables mail delivery when set (here or in .env).
    KUO_OPERATOR_SERVER_PORT: Port of the health endpoint.

Example:
    >>> from kuo.config import OperatorConfig
    >>> config = OperatorConfig(kube_addr="https://10.0.0.1:6443")
    >>> config.signer_name
    'kubernetes.io/kube-apiserver-client'
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Requeue intervals in seconds
SHORT_REQUEUE_SECONDS = 5 * 60
LONG_REQUEUE_SECONDS = 10 * 60
ERROR_REQUEUE_SECONDS = 60
MALFORMED_REQUEUE_SECONDS = 5 * 60

DEFAULT_NAMESPACE = "default"
SERVICE_ACCOUNT_NAMESPACE_FILE = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")

_NAME_PATTERN = r"^[a-z0-9][a-z0-9-]*[a-z0-9]$|^[a-z0-9]$"


class SMTPConfig(BaseSettings):
    """Mail transport settings.

    Mail delivery is optional: the operator only builds an SMTPConfig when
    an SMTP URL is provided.

    Attributes:
        url: ``smtp://host`` or ``smtps://host``. ``smtps`` enables implicit TLS.
        port: SMTP server port.
        user: Username to authenticate with.
        password: Password to authenticate with.
        from_email: Sender address.
        from_name: Sender display name.
        timeout_seconds: Connection and command timeout.
        verify_on_startup: Check the connection before starting the controllers.
    """

    model_config = SettingsConfigDict(
        env_prefix="KUO_OPERATOR_SMTP_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    url: str = Field(..., min_length=1, description="smtp:// or smtps:// server URL")
    port: int = Field(default=587, ge=1, le=65535)
    user: str = Field(default="kum")
    password: SecretStr = Field(default=SecretStr("kum"))
    from_email: str = Field(..., min_length=3, description="Sender address")
    from_name: str = Field(default="Kubernetes User Operator")
    timeout_seconds: float = Field(default=30.0, gt=0)
    verify_on_startup: bool = Field(default=True)

    @field_validator("url")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        """Require an smtp or smtps URL.

        Args:
            v: The configured URL.

        Returns:
            The URL unchanged.

        Raises:
            ValueError: If the scheme is neither smtp nor smtps.
        """
        if not v.startswith(("smtp://", "smtps://")):
            msg = f"SMTP URL must start with smtp:// or smtps://, got {v!r}"
            raise ValueError(msg)
        return v

    @property
    def hostname(self) -> str:
        """Host part of the URL."""
        return self.url.split("://", 1)[1].split("/", 1)[0].split(":", 1)[0]

    @property
    def use_tls(self) -> bool:
        """Whether the connection starts with TLS."""
        return self.url.startswith("smtps://")


class ServerConfig(BaseSettings):
    """Health endpoint bind address."""

    model_config = SettingsConfigDict(
        env_prefix="KUO_OPERATOR_SERVER_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    host: str = Field(default="0.0.0.0")  # noqa: S104
    port: int = Field(default=9000, ge=1, le=65535)


class OperatorConfig(BaseSettings):
    """Top-level operator configuration.

    Attributes:
        signer_name: Signer that should sign every CSR created by the operator.
        kube_addr: Kubernetes API server address written into kubeconfigs.
        cluster_name: Optional display name of the cluster.
        default_cert_name: ConfigMap holding the cluster root CA.
        default_cert_key: Key of the root CA inside the ConfigMap.
        namespace: Namespace of user Secrets and the root CA ConfigMap.
            None resolves to the service account namespace or ``default``.
        csr_prefix: Prefix of CSR names (``<prefix>-<username>``).
        operator_name: Value of the ``app.kubernetes.io/managed-by`` label.
        key_size: RSA key size for generated private keys.
        kubeconfig_path: Path to kubeconfig file. None uses in-cluster config.
        context: Kubeconfig context to use. None uses current context.
        log_level: Minimum log level.
        log_json: Render logs as JSON instead of console output.
        smtp: Mail transport settings, None disables mail delivery.
        server: Health endpoint settings.
    """

    model_config = SettingsConfigDict(
        env_prefix="KUO_OPERATOR_",
        env_file=".env",
        extra="ignore",
        frozen=True,
    )

    signer_name: str = Field(default="kubernetes.io/kube-apiserver-client", min_length=1)
    kube_addr: str = Field(default="https://0.0.0.0:6443", min_length=1)
    cluster_name: str | None = Field(default=None)
    default_cert_name: str = Field(default="kube-root-ca.crt", min_length=1)
    default_cert_key: str = Field(default="ca.crt", min_length=1)
    namespace: str | None = Field(default=None, pattern=_NAME_PATTERN, max_length=63)
    csr_prefix: str = Field(default="kuo", pattern=_NAME_PATTERN, max_length=50)
    operator_name: str = Field(default="kuo-operator", min_length=1, max_length=63)
    key_size: int = Field(default=4096, ge=2048)
    kubeconfig_path: str | None = Field(default=None)
    context: str | None = Field(default=None)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    log_json: bool = Field(default=True)
    smtp: SMTPConfig | None = Field(default=None)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @field_validator("kubeconfig_path")
    @classmethod
    def expand_kubeconfig_path(cls, v: str | None) -> str | None:
        """Expand ~ in kubeconfig path."""
        if v is None:
            return None
        return str(Path(v).expanduser())

    @property
    def resolved_namespace(self) -> str:
        """Namespace used for user Secrets and the root CA ConfigMap."""
        if self.namespace:
            return self.namespace
        if SERVICE_ACCOUNT_NAMESPACE_FILE.exists():
            value = SERVICE_ACCOUNT_NAMESPACE_FILE.read_text().strip()
            if value:
                return value
        return DEFAULT_NAMESPACE

    def csr_name(self, username: str) -> str:
        """CSR name for a managed user."""
        return f"{self.csr_prefix}-{username}"


def load_config(
    overrides: dict[str, Any] | None = None,
    *,
    smtp_overrides: dict[str, Any] | None = None,
    server_overrides: dict[str, Any] | None = None,
) -> OperatorConfig:
    """Build the operator configuration from the environment and overrides.

    Overrides whose value is None are ignored so unset command-line flags
    never mask environment variables.

    Args:
        overrides: Top-level field values.
        smtp_overrides: SMTPConfig field values.
        server_overrides: ServerConfig field values.

    Returns:
        The resolved configuration.
    """
    values = {k: v for k, v in (overrides or {}).items() if v is not None}
    smtp_values = {k: v for k, v in (smtp_overrides or {}).items() if v is not None}
    server_values = {k: v for k, v in (server_overrides or {}).items() if v is not None}

    return OperatorConfig(**values, smtp=_load_smtp(smtp_values), server=ServerConfig(**server_values))


def _load_smtp(values: dict[str, Any]) -> SMTPConfig | None:
    """Build SMTPConfig from overrides, environment and .env file.

    Mail stays disabled when no source provides a URL. Any other validation
    failure is raised.
    """
    try:
        return SMTPConfig(**values)
    except ValidationError as e:
        if any(err["type"] == "missing" and err["loc"] == ("url",) for err in e.errors()):
            return None
        raise


__all__ = [
    "ERROR_REQUEUE_SECONDS",
    "LONG_REQUEUE_SECONDS",
    "MALFORMED_REQUEUE_SECONDS",
    "SHORT_REQUEUE_SECONDS",
    "OperatorConfig",
    "SMTPConfig",
    "ServerConfig",
    "load_config",
]
