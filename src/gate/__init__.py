"""Access gate for the LAN file-share service.

The gate decides, per request, whether an origin may reach the file-share
API (private-network allow-list, shared password, adaptive lockout), and
keeps the service's self-signed TLS certificate in step with its domain.
"""

from gate.network import (
    Classification,
    classify,
    is_private,
)
from gate.lockout import (
    LockoutTracker,
    LockStatus,
    MAX_FAILED_ATTEMPTS,
    LOCKOUT_DURATION,
)
from gate.auth import (
    AccessPolicy,
    AuthError,
    Decision,
    Outcome,
    extract_credential,
    resolve_origin,
)
from gate.tls import (
    CertificateGenerationError,
    CertificateManager,
    CertificateMaterial,
    CertificateToolError,
    DomainPolicy,
    DomainRecord,
    OpenSSLTool,
    discover_gateway_address,
    ensure_certificate,
)
from gate.httpd import (
    Server,
    create_server,
)

__all__ = [
    # Classification
    "Classification",
    "classify",
    "is_private",
    # Lockout
    "LockoutTracker",
    "LockStatus",
    "MAX_FAILED_ATTEMPTS",
    "LOCKOUT_DURATION",
    # Policy
    "AccessPolicy",
    "AuthError",
    "Decision",
    "Outcome",
    "extract_credential",
    "resolve_origin",
    # TLS
    "CertificateGenerationError",
    "CertificateManager",
    "CertificateMaterial",
    "CertificateToolError",
    "DomainPolicy",
    "DomainRecord",
    "OpenSSLTool",
    "discover_gateway_address",
    "ensure_certificate",
    # Server
    "Server",
    "create_server",
]
