"""
Authentication utilities for Supabase JWT verification.

The frontend signs in with supabase.auth.signInWithPassword() and sends the JWT
in the Authorization header. This module verifies the JWT, extracts user info,
and checks that storage paths claimed by a request belong to that user.
"""
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from typing import Optional
import requests
from rag_ingest.core.config import settings
from rag_ingest.core.errors import Forbidden, IngestionError, Unauthorized

# auto_error=False so a missing header is reported as 401 by us, not 403 by FastAPI
security = HTTPBearer(auto_error=False)


class User:
    """User model extracted from JWT token."""
    def __init__(self, user_id: str, email: Optional[str] = None, role: Optional[str] = None):
        self.id = user_id
        self.email = email
        self.role = role or "user"  # Default role


# Cache for JWKS keys (to avoid fetching on every request)
_jwks_cache = None


def get_supabase_jwks():
    """
    Fetch Supabase's JSON Web Key Set (JWKS) for JWT verification.

    Newer Supabase projects sign with ES256/RS256, so the public key has to
    come from the project's JWKS endpoint.

    Returns:
        dict: JWKS containing public keys for token verification
    """
    global _jwks_cache

    if _jwks_cache is not None:
        return _jwks_cache

    try:
        jwks_url = f"{settings.SUPABASE_URL}/auth/v1/.well-known/jwks.json"
        response = requests.get(jwks_url, timeout=10)
        response.raise_for_status()
        _jwks_cache = response.json()
        return _jwks_cache
    except requests.RequestException as e:
        raise IngestionError(f"Failed to fetch JWKS from Supabase: {str(e)}", step="auth")


def verify_token(token: str) -> dict:
    """
    Verify Supabase JWT token and return decoded payload.

    Legacy projects sign with the shared HS256 secret; newer ones use ES256 or
    RS256 and publish the public key as JWKS. The token header decides which.

    Args:
        token: JWT token from Authorization header

    Returns:
        Decoded JWT payload containing user info

    Raises:
        Unauthorized: If token is malformed, invalid or expired
    """
    try:
        header = jwt.get_unverified_header(token)
        if header.get("alg") == "HS256":
            key, algorithms = settings.SUPABASE_JWT_SECRET, ["HS256"]
        else:
            key, algorithms = get_supabase_jwks(), ["ES256", "RS256"]

        return jwt.decode(
            token,
            key,
            algorithms=algorithms,
            audience="authenticated",  # Supabase uses "authenticated" as audience
            options={"verify_aud": True},
        )
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token has expired")
    except JWTError as e:
        raise Unauthorized(f"Invalid authentication credentials: {str(e)}")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> User:
    """
    FastAPI dependency to get current authenticated user from JWT token.

    Usage in route:
        @router.post("/rag/upload")
        def upload(current_user: User = Depends(get_current_user)):
            ...

    Raises:
        Unauthorized: If token is missing, invalid, expired or has no subject
    """
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Unauthorized")

    payload = verify_token(credentials.credentials)

    # Supabase JWT structure: {"sub": "user_id", "email": "user@example.com", ...}
    user_id = payload.get("sub")
    if not user_id:
        raise Unauthorized("Could not validate user")

    return User(user_id=user_id, email=payload.get("email"), role=payload.get("role"))


def ensure_path_owned(user_id: str, file_path: str) -> None:
    """Storage objects live under "{user_id}/..."; anything else is someone else's."""
    if not file_path.startswith(f"{user_id}/"):
        raise Forbidden("Invalid file path, access denied")
