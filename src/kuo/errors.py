"""Custom exceptions for the kuo operator.

Exception Hierarchy:
    KuoError (base)
    ├── MalformedObjectError
    │   ├── CannotReconcileError
    │   ├── CSRDeniedError
    │   └── InvalidUserSecretDataError
    ├── ResourceClientError
    ├── RootCertificateError
    ├── EmailDeliveryError
    ├── CryptoError
    └── KubeconfigError

MalformedObjectError subclasses describe an object that cannot make progress
in its current state. The controller runtime requeues them on a longer
interval than every other error.

Example:
    >>> from kuo.errors import CannotReconcileError
    >>> raise CannotReconcileError("Managed user metadata has no UID")
    CannotReconcileError: Cannot reconcile: Managed user metadata has no UID
"""

from __future__ import annotations


class KuoError(Exception):
    """Base exception for all operator errors.

    Attributes:
        message: Human-readable error message.
    """

    def __init__(self, message: str) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
        """
        self.message = message
        super().__init__(message)


class MalformedObjectError(KuoError):
    """Base for errors caused by the object itself rather than infrastructure."""


class CannotReconcileError(MalformedObjectError):
    """Raised when an object is missing data required to reconcile it.

    Example:
        >>> raise CannotReconcileError("CSR metadata has no name")
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Cannot reconcile: {reason}")


class CSRDeniedError(MalformedObjectError):
    """Raised when a certificate signing request carries a Denied condition.

    Attributes:
        csr_name: Name of the denied request.
    """

    def __init__(self, csr_name: str = "") -> None:
        self.csr_name = csr_name
        message = "CSR was denied"
        if csr_name:
            message = f"CSR '{csr_name}' was denied"
        super().__init__(message)


class InvalidUserSecretDataError(MalformedObjectError):
    """Raised when a user Secret exists but holds no private key."""

    def __init__(self, secret_name: str) -> None:
        self.secret_name = secret_name
        super().__init__(f"Secret '{secret_name}' has no 'pkey' entry")


class ResourceClientError(KuoError):
    """Raised when a cluster API request fails.

    Wraps the kubernetes client's ApiException so callers never depend on
    the client library's exception types.

    Attributes:
        status: HTTP status returned by the API server (0 if unknown).
        operation: Description of the request that failed.
        reason: Reason reported by the API server.

    Example:
        >>> raise ResourceClientError(
        ...     "create certificatesigningrequest kuo-alice",
        ...     status=409,
        ...     reason="AlreadyExists",
        ... )
    """

    def __init__(self, operation: str, *, status: int = 0, reason: str = "") -> None:
        self.operation = operation
        self.status = status
        self.reason = reason
        message = f"Kubernetes API request failed: {operation}"
        if status:
            message = f"{message} (status {status})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    @property
    def not_found(self) -> bool:
        """Whether the API server answered 404."""
        return self.status == 404

    @property
    def conflict(self) -> bool:
        """Whether the API server answered 409."""
        return self.status == 409


class RootCertificateError(KuoError):
    """Raised when the cluster root certificate cannot be read.

    Example:
        >>> raise RootCertificateError("The ConfigMap kube-root-ca.crt doesn't exist.")
    """

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Cannot get root kube certificate. Reason: {reason}")


class EmailDeliveryError(KuoError):
    """Raised when a kubeconfig e-mail cannot be sent."""

    def __init__(self, recipient: str, reason: str) -> None:
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"Cannot send e-mail to '{recipient}'. Reason: {reason}")


class CryptoError(KuoError):
    """Raised when key generation, CSR building or certificate decoding fails."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Cryptographic operation '{operation}' failed: {reason}")


class KubeconfigError(KuoError):
    """Raised when a kubeconfig document cannot be rendered."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Cannot generate kubeconfig. Reason: {reason}")


__all__ = [
    "CSRDeniedError",
    "CannotReconcileError",
    "CryptoError",
    "EmailDeliveryError",
    "InvalidUserSecretDataError",
    "KubeconfigError",
    "KuoError",
    "MalformedObjectError",
    "ResourceClientError",
    "RootCertificateError",
]
