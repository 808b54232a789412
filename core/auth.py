"""Auth0 JWT authentication, admin resolution and the cron key guard."""

import hmac
import logging
import time
from typing import Any

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from core.constants import UserRole
from core.exceptions import AuthorizationError
from database.connection import get_db_session
from database.models import User as UserRecord
from database.service import DatabaseService
from schemas.auth import AuthenticatedUser, AuthError, User

logger = logging.getLogger(__name__)

JWKS_CACHE_SECONDS = 3600


class Auth0JWTBearer(HTTPBearer):
    """Auth0 JWT Bearer token authentication."""

    def __init__(self, auto_error: bool = True):
        """Initialize Auth0 JWT Bearer."""
        super().__init__(auto_error=auto_error)
        self._jwks_cache: dict[str, Any] = {}
        self._cache_expiry: int = 0

    async def get_jwks(self) -> dict[str, Any]:
        """Get JSON Web Key Set from Auth0."""
        current_time = int(time.time())
        if self._jwks_cache and current_time < self._cache_expiry:
            return self._jwks_cache

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(settings.auth0_jwks_url)
                response.raise_for_status()
                jwks = response.json()

                self._jwks_cache = jwks
                self._cache_expiry = current_time + JWKS_CACHE_SECONDS

                return jwks  # type: ignore[no-any-return]

        except httpx.HTTPError as e:
            logger.error(f"Unable to fetch JWKS: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Unable to fetch JWKS: {e}",
            ) from e

    def get_rsa_key(
        self, token_header: dict[str, Any], jwks: dict[str, Any]
    ) -> dict[str, Any]:
        """Get RSA key for token verification."""
        if "kid" not in token_header:
            raise AuthError(
                error="invalid_header",
                description="Authorization malformed: missing kid",
                status_code=401,
            )

        for key in jwks.get("keys", []):
            if key["kid"] == token_header["kid"]:
                return {
                    "kty": key["kty"],
                    "kid": key["kid"],
                    "use": key["use"],
                    "n": key["n"],
                    "e": key["e"],
                }

        raise AuthError(
            error="invalid_header",
            description="Unable to find appropriate key",
            status_code=401,
        )

    async def verify_token(self, token: str) -> User:
        """Verify and decode JWT token."""
        try:
            try:
                token_header = jwt.get_unverified_header(token)
            except JWTError as e:
                raise AuthError(
                    error="invalid_header",
                    description="Invalid header: Use an RS256 signed JWT Access Token",
                    status_code=401,
                ) from e

            jwks = await self.get_jwks()
            rsa_key = self.get_rsa_key(token_header, jwks)

            try:
                payload = jwt.decode(
                    token,
                    rsa_key,
                    algorithms=["RS256"],
                    audience=settings.auth0_api_audience,
                    issuer=settings.auth0_issuer,
                )
            except jwt.ExpiredSignatureError as e:
                raise AuthError(
                    error="token_expired",
                    description="Token has expired",
                    status_code=401,
                ) from e
            except jwt.JWTClaimsError as e:
                raise AuthError(
                    error="invalid_claims",
                    description="Invalid audience or issuer",
                    status_code=401,
                ) from e
            except JWTError as e:
                raise AuthError(
                    error="invalid_token",
                    description="Invalid token",
                    status_code=401,
                ) from e

            return User(**payload)

        except AuthError:
            raise
        except Exception as e:
            raise AuthError(
                error="invalid_token",
                description=f"Unable to parse authentication token: {e}",
                status_code=401,
            ) from e

    async def __call__(
        self, credentials: HTTPAuthorizationCredentials = Depends(HTTPBearer())  # noqa: B008
    ) -> User:
        """Validate JWT token and return user."""
        if not credentials:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Bearer token missing",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            return await self.verify_token(credentials.credentials)
        except AuthError as e:
            raise HTTPException(
                status_code=e.status_code,
                detail={"error": e.error, "description": e.description},
                headers={"WWW-Authenticate": "Bearer"},
            ) from e


# Global instances
auth0_jwt_bearer = Auth0JWTBearer()
cron_bearer = HTTPBearer(auto_error=False)


async def get_current_user(user: User = Depends(auth0_jwt_bearer)) -> AuthenticatedUser:  # noqa: B008
    """Get current authenticated user."""
    permissions = []

    if user.scope:
        permissions.extend(user.scope.split())

    if user.permissions:
        permissions.extend(user.permissions)

    # Remove duplicates while preserving order
    permissions = list(dict.fromkeys(permissions))

    return AuthenticatedUser(
        user_id=user.sub,
        email=user.email,
        name=user.name or user.nickname,
        permissions=permissions,
    )


async def get_current_admin(
    current_user: AuthenticatedUser = Depends(get_current_user),  # noqa: B008
    db_session: AsyncSession = Depends(get_db_session),  # noqa: B008
) -> UserRecord:
    """
    Resolve the caller to a local user allowed to manage billing.

    Raises:
        AuthorizationError: If the local user is not a company admin
    """
    db_service = DatabaseService(db_session)
    user = await db_service.get_or_create_user(
        auth0_user_id=current_user.user_id,
        email=current_user.email,
        name=current_user.name,
    )
    if user.role != UserRole.ADMIN:
        raise AuthorizationError("only company admins can manage billing")
    return user


async def verify_cron_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(cron_bearer),  # noqa: B008
) -> None:
    """Guard scheduler endpoints with the shared ``CRON_API_KEY`` bearer token."""
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode(), settings.cron_api_key.encode()
    ):
        logger.warning("Rejected scheduler call with a missing or wrong key")
        raise AuthError(
            error="invalid_cron_key",
            description="Invalid or missing scheduler key",
            status_code=401,
        )
