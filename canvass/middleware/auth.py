"""Volunteer bearer token verification.

This module resolves the caller of a request into an identity: the
verified user id, its tenant, its role and whether its profile is active.

Tokens have the form "<auth_user_id>.<signature>" where the signature is
the hex HMAC-SHA256 of the user id under SECRET_KEY. Token issuance
belongs to the identity provider and is not handled here.

Security: tenant and volunteer identity used by the submission pipeline
MUST come from this module, never from the request payload.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from canvass.config import get_settings
from canvass.models.database import get_db
from canvass.models.volunteer import Volunteer, READER_ROLES
from canvass.logging_config import get_logger

logger = get_logger(__name__)


class AuthenticationError(Exception):
    """Raised when the caller cannot be identified."""
    pass


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller.

    Attributes:
        user_id: Verified identity provider user id
        volunteer_id: Primary key of the volunteer profile
        tenant_id: Tenant the caller belongs to
        role: admin, manager, analyst or volunteer
        active: Whether the profile may submit
    """
    user_id: str
    volunteer_id: int
    tenant_id: str
    role: str
    active: bool = True

    @property
    def can_read_tenant_responses(self) -> bool:
        return self.role in READER_ROLES


def sign_user_id(user_id: str, secret_key: Optional[str] = None) -> str:
    """Compute the token signature of a user id."""
    if secret_key is None:
        secret_key = get_settings().secret_key
    return hmac.new(
        secret_key.encode("utf-8"), user_id.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def create_token(user_id: str, secret_key: Optional[str] = None) -> str:
    """Create a bearer token for a user id.

    Example:
        >>> token = create_token("auth0|42", "secret")
        >>> token.startswith("auth0|42.")
        True
    """
    return f"{user_id}.{sign_user_id(user_id, secret_key)}"


def verify_token(token: str, secret_key: Optional[str] = None) -> Optional[str]:
    """Verify a bearer token.

    Args:
        token: Token from the Authorization header
        secret_key: Override for the configured secret

    Returns:
        The verified user id, or None if the token is malformed or forged
    """
    user_id, separator, signature = token.rpartition(".")
    if not separator or not user_id or not signature:
        return None
    expected = sign_user_id(user_id, secret_key)
    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(expected, signature):
        return None
    return user_id


class HmacTokenIdentityProvider:
    """Identity provider backed by signed tokens and the volunteers table.

    Usage:
        provider = HmacTokenIdentityProvider(db)
        identity = provider.identify(request.headers.get("Authorization"))
    """

    def __init__(self, db: Session, secret_key: Optional[str] = None):
        self.db = db
        self.secret_key = secret_key

    def identify(self, authorization: Optional[str]) -> CallerIdentity:
        """Resolve an Authorization header into a caller identity.

        Args:
            authorization: Header value ("Bearer <token>")

        Returns:
            CallerIdentity of an active volunteer

        Raises:
            AuthenticationError: If the header is missing, the token is
                invalid, or the profile is missing or inactive
        """
        if not authorization:
            raise AuthenticationError("Authentication required")

        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise AuthenticationError("Authentication required")

        user_id = verify_token(token.strip(), self.secret_key)
        if user_id is None:
            # Never log token values
            logger.warning("Rejected bearer token with invalid signature")
            raise AuthenticationError("Invalid credentials")

        volunteer = Volunteer.get_by_auth_user_id(self.db, user_id)
        if volunteer is None:
            logger.warning(f"No volunteer profile for user {user_id}")
            raise AuthenticationError("Invalid or inactive volunteer profile")
        if not volunteer.active:
            logger.warning(f"Inactive volunteer profile for user {user_id}")
            raise AuthenticationError("Invalid or inactive volunteer profile")

        return CallerIdentity(
            user_id=user_id,
            volunteer_id=volunteer.id,
            tenant_id=volunteer.tenant_id,
            role=volunteer.role,
            active=volunteer.active,
        )


def get_identity_provider(db: Session = Depends(get_db)) -> HmacTokenIdentityProvider:
    """FastAPI dependency returning the identity provider for a request."""
    return HmacTokenIdentityProvider(db)
