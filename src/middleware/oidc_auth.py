"""OIDC verification middleware for push-dispatched job callbacks.

Every request under ``/api/jobs/`` must carry a Google-signed ID token
(``Authorization: Bearer ...``) issued to the designated service account for
this service's audience.  On success ``request.state.dispatcher`` holds the
verified identity.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from jwt import PyJWKClient
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.config import Settings, get_settings
from src.dependencies import DispatcherIdentity

logger = logging.getLogger("syncguard.auth")

PROTECTED_PREFIX = "/api/jobs/"
GOOGLE_ISSUERS = {"https://accounts.google.com", "accounts.google.com"}


class OIDCVerifier:
    """Verify Google-issued OIDC ID tokens against the JWKS."""

    def __init__(self, jwks_url: str, audience: str, service_account_email: str) -> None:
        self.audience = audience
        self.service_account_email = service_account_email
        self._jwks_client = PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)

    def verify(self, token: str) -> DispatcherIdentity:
        """Return the caller identity.

        Raises:
            jwt.InvalidTokenError: Bad signature, audience, issuer, or caller.
        """
        signing_key = self._jwks_client.get_signing_key_from_jwt(token)
        claims = pyjwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            audience=self.audience,
        )
        if claims.get("iss") not in GOOGLE_ISSUERS:
            raise pyjwt.InvalidIssuerError(f"Unexpected issuer {claims.get('iss')!r}")
        email = claims.get("email")
        if email != self.service_account_email or not claims.get("email_verified", False):
            raise pyjwt.InvalidTokenError(f"Caller {email!r} is not the dispatcher identity")
        return DispatcherIdentity(email=email, subject=claims.get("sub", ""))


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


class OIDCAuthMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: Any,
        settings: Settings | None = None,
        verifier: OIDCVerifier | None = None,
    ) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._verifier = verifier or OIDCVerifier(
            s.push_jwks_url, s.oidc_audience, s.push_service_account_email
        )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if not request.url.path.startswith(PROTECTED_PREFIX):
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            logger.warning("Job callback without bearer token: %s", request.url.path)
            return _unauthorized("Missing OIDC token")

        token = auth_header.removeprefix("Bearer ").strip()
        try:
            request.state.dispatcher = self._verifier.verify(token)
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.PyJWTError as exc:
            logger.warning("OIDC validation failed: %s", exc)
            return _unauthorized("Invalid token")

        return await call_next(request)
