"""kuo - Kubernetes User Operator.

Provisions certificate-based users declared as ``ManagedUser`` objects and
keeps their inline RBAC grants in sync.

Example:
    >>> from kuo import ManagedUser, OperatorConfig
    >>> config = OperatorConfig()
"""

from __future__ import annotations

from kuo.config import OperatorConfig, SMTPConfig, load_config
from kuo.errors import KuoError
from kuo.models import InlinePermissions, ManagedUser, NamespacedPermissions, Permission

__version__ = "0.1.0"

__all__ = [
    "InlinePermissions",
    "KuoError",
    "ManagedUser",
    "NamespacedPermissions",
    "OperatorConfig",
    "Permission",
    "SMTPConfig",
    "__version__",
    "load_config",
]
