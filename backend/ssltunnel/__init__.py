"""
SSL tunnel certificate management.

Provisions and renews the TLS certificate for a gateway reachable through
a subdomain of a shared tunnel domain:
- Subdomain registration with the registration service
- Let's Encrypt issuance via DNS-01 (registration) and HTTP-01 (renewal)
- Atomic certificate bundle storage
- Automatic certificate renewal
"""

from .config import TunnelConfig, load_tunnel_config, clear_tunnel_config_cache
from .errors import (
    TunnelError,
    NetworkError,
    SubscriptionError,
    ChallengeError,
    IssuanceError,
    PersistenceError,
    EmailAssociationError,
)
from .settings import SettingsStore, TunnelToken
from .storage import CertificateBundle, CertificateInfo, CertificateStore
from .registrar import SubdomainRegistrar
from .acme_client import ACMEIssuer
from .lifecycle import (
    CertificateLifecycleManager,
    RegistrationResult,
    RegistrationState,
    RenewalState,
    RenewalStatus,
    get_lifecycle_manager,
)
from .app import create_app

__all__ = [
    "TunnelConfig",
    "load_tunnel_config",
    "clear_tunnel_config_cache",
    "TunnelError",
    "NetworkError",
    "SubscriptionError",
    "ChallengeError",
    "IssuanceError",
    "PersistenceError",
    "EmailAssociationError",
    "SettingsStore",
    "TunnelToken",
    "CertificateBundle",
    "CertificateInfo",
    "CertificateStore",
    "SubdomainRegistrar",
    "ACMEIssuer",
    "CertificateLifecycleManager",
    "RegistrationResult",
    "RegistrationState",
    "RenewalState",
    "RenewalStatus",
    "get_lifecycle_manager",
    "create_app",
]
