from fastapi import HTTPException, Security, Request
from fastapi.security.api_key import APIKeyHeader
from urllib.parse import urlparse
import secrets
import hashlib
from typing import Optional

API_KEY_NAME = "access_token"

api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


class SecurityManager:
    def __init__(self, api_key: str):
        self.api_key_hash = hashlib.sha256(api_key.encode()).hexdigest()

    def _matches(self, candidate: str) -> bool:
        # Use constant-time comparison to prevent timing attacks
        provided_hash = hashlib.sha256(candidate.encode()).hexdigest()
        return secrets.compare_digest(provided_hash, self.api_key_hash)

    def get_api_key(self, api_key: Optional[str] = Security(api_key_header)) -> str:
        """Validate API key"""
        if not api_key:
            raise HTTPException(
                status_code=401,
                detail="API key required",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if not self._matches(api_key):
            raise HTTPException(
                status_code=403,
                detail="Invalid API key"
            )

        return api_key

    def is_authorized(self, request: Request) -> bool:
        """Accept the service key as the access_token header or a Bearer token."""
        candidate = request.headers.get(API_KEY_NAME)
        if not candidate:
            authorization = request.headers.get("Authorization", "")
            if authorization.lower().startswith("bearer "):
                candidate = authorization[7:].strip()
        return bool(candidate) and self._matches(candidate)


def validate_site_url(url: str) -> bool:
    """Basic check that a site root is an absolute http(s) URL"""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
