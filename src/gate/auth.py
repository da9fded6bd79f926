"""Access policy for gated requests.

Provides:
- Origin and credential extraction from a request
- The authorization decision (allow-list bypass, lockout, password check)
- Rendering of a decision into the structured 401 response body
"""

import hmac
import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from gate.lockout import LockoutTracker, LockStatus, MAX_FAILED_ATTEMPTS
from gate.network import Classification, classify, normalize_address

logger = logging.getLogger(__name__)

PASSWORD_HEADER = "X-Access-Password"
PASSWORD_QUERY_PARAM = "password"


class AuthError(Exception):
    """Authentication error with error code and HTTP status."""

    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(f"{code}: {message}")


class Outcome(str, Enum):
    ALLOW = "allow"
    REQUIRE_CREDENTIAL = "require_credential"
    LOCKED = "locked"
    INVALID_CREDENTIAL = "invalid_credential"


@dataclass(frozen=True)
class Decision:
    """Result of authorizing one request."""
    outcome: Outcome
    is_external: bool = False
    remaining_hours: int = 0
    remaining_attempts: int = 0

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOW

    def to_error(self) -> Optional[AuthError]:
        """Return the AuthError for a denial, or None when allowed."""
        if self.outcome is Outcome.ALLOW:
            return None
        if self.outcome is Outcome.LOCKED:
            return AuthError(
                "E302",
                "Too many failed attempts, access locked. "
                f"Remaining time: {self.remaining_hours} hours",
                401,
            )
        if self.outcome is Outcome.INVALID_CREDENTIAL:
            return AuthError(
                "E301",
                f"Incorrect password, remaining attempts: {self.remaining_attempts}",
                401,
            )
        if self.is_external:
            return AuthError("E300", "Password required for external access", 401)
        return AuthError("E300", "Password required", 401)

    def to_response(self) -> tuple[dict, int]:
        """Render the decision as (response_body, http_status)."""
        error = self.to_error()
        if error is None:
            return {"authorized": True, "isExternalAccess": self.is_external}, 200

        body: dict = {
            "requiresPassword": True,
            "message": error.message,
            "error": {"code": error.code, "message": error.message},
        }
        if self.outcome is Outcome.LOCKED:
            body["locked"] = True
            body["remainingHours"] = self.remaining_hours
        elif self.outcome is Outcome.INVALID_CREDENTIAL:
            body["remainingAttempts"] = self.remaining_attempts
        else:
            body["isExternalAccess"] = self.is_external
        return body, error.http_status


def _hours_ceil(seconds: float) -> int:
    return max(1, math.ceil(seconds / 3600))


def credentials_match(supplied: str, secret: str) -> bool:
    """Compare a supplied password with the secret in constant time."""
    return hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8"))


def extract_credential(
    headers: Mapping[str, str],
    query: Optional[Mapping[str, list]] = None,
) -> Optional[str]:
    """Read the password from the X-Access-Password header or ?password=.

    Args:
        headers: Request headers (case-insensitive mapping in practice)
        query: Parsed query string (parse_qs output)

    Returns:
        The supplied password, or None if absent or empty
    """
    password = headers.get(PASSWORD_HEADER) if headers else None
    if not password and query:
        values = query.get(PASSWORD_QUERY_PARAM) or []
        password = values[0] if values else None
    return password or None


def resolve_origin(
    peer_address: str,
    headers: Mapping[str, str],
    trust_proxy: bool = False,
) -> str:
    """Determine the origin key for a request.

    With trust_proxy set, the first X-Forwarded-For hop (then X-Real-IP)
    wins over the socket peer address. Both headers are client-controlled,
    so they are ignored unless the gate sits behind a trusted proxy.
    """
    if trust_proxy and headers:
        forwarded = headers.get("X-Forwarded-For") or ""
        if first_hop := forwarded.split(",")[0].strip():
            return normalize_address(first_hop)
        if real_ip := (headers.get("X-Real-IP") or "").strip():
            return normalize_address(real_ip)
    return normalize_address(peer_address)


class AccessPolicy:
    """Combines origin class, allow-list, secret and lockout into a decision.

    The tracker is injected so that tests (and multiple listeners) can
    share or isolate lockout state explicitly.
    """

    def __init__(
        self,
        secret: str,
        allowed_hosts: tuple[str, ...] = (),
        tracker: Optional[LockoutTracker] = None,
    ):
        self.secret = secret
        self.allowed_hosts = tuple(h for h in allowed_hosts if h)
        self.tracker = tracker if tracker is not None else LockoutTracker()

    def is_allow_listed(self, origin: str, host: str) -> bool:
        return any(
            fragment in host or fragment in origin
            for fragment in self.allowed_hosts
        )

    def authorize(
        self,
        origin: str,
        host: str = "",
        credential: Optional[str] = None,
    ) -> Decision:
        """Decide whether a request may proceed.

        Args:
            origin: Origin key (client address)
            host: Host header value
            credential: Supplied password, None if absent

        Returns:
            Decision describing the outcome
        """
        origin = origin or ""
        host = host or ""
        is_external = classify(origin) is Classification.EXTERNAL

        # Trusted internal hosts bypass both credential and lockout
        if not is_external and self.is_allow_listed(origin, host):
            return Decision(Outcome.ALLOW)

        status = self.tracker.status(origin)
        if status.locked:
            return _locked(status, is_external)

        if not credential:
            return Decision(Outcome.REQUIRE_CREDENTIAL, is_external=is_external)

        if not credentials_match(credential, self.secret):
            status = self.tracker.record_failure(origin)
            if status.locked:
                return _locked(status, is_external)
            return Decision(
                Outcome.INVALID_CREDENTIAL,
                is_external=is_external,
                remaining_attempts=status.remaining_attempts,
            )

        # The tracker rechecks the lock; another request may have set it since
        status = self.tracker.record_success(origin)
        if status.locked:
            return _locked(status, is_external)
        return Decision(Outcome.ALLOW, is_external=is_external)


def _locked(status: LockStatus, is_external: bool) -> Decision:
    return Decision(
        Outcome.LOCKED,
        is_external=is_external,
        remaining_hours=_hours_ceil(status.remaining_seconds),
    )


def create_policy(secret: str, allowed_hosts: tuple[str, ...] = ()) -> AccessPolicy:
    """Create a policy with a fresh tracker using the fixed lockout constants."""
    return AccessPolicy(
        secret=secret,
        allowed_hosts=allowed_hosts,
        tracker=LockoutTracker(threshold=MAX_FAILED_ATTEMPTS),
    )
