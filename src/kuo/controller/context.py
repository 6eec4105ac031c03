"""Shared state handed to every reconciler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kuo.config import OperatorConfig
    from kuo.kube.client import ResourceClient
    from kuo.mail import Mailer


@dataclass(frozen=True)
class OperatorContext:
    """Configuration and collaborators, resolved once at process start.

    Attributes:
        config: Operator configuration.
        client: Cluster resource client.
        mailer: Mail transport, None when SMTP is not configured.
    """

    config: OperatorConfig
    client: ResourceClient
    mailer: Mailer | None = None


__all__ = ["OperatorContext"]
