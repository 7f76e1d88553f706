from __future__ import annotations

from typing import Optional

from deviceauth.logging import get_logger
from deviceauth.service.errors import InvalidTokenError
from deviceauth.service.tokens import TokenIssuer

logger = get_logger(__name__)


class AuthGateway:
    """Resolves the caller's user id from a bearer access token.

    Validation is purely structural and temporal: the token is not compared
    against the session's stored access token, so an access token issued
    before a revocation keeps working until it expires. Closing that gap
    needs a per-request store lookup or a revocation epoch in the claims.
    """

    def __init__(self, tokens: TokenIssuer) -> None:
        self.tokens = tokens

    def authenticate(self, bearer_token: str) -> str:
        if not bearer_token:
            raise InvalidTokenError("missing bearer token")
        try:
            return self.tokens.verify_access_token(bearer_token)
        except InvalidTokenError:
            logger.info("access_token_rejected")
            raise

    def authenticate_header(self, authorization: Optional[str]) -> str:
        return self.authenticate(self._extract_bearer(authorization))

    def _extract_bearer(self, header: Optional[str]) -> str:
        if not header:
            raise InvalidTokenError("missing bearer token")
        lower = header.lower()
        if not lower.startswith("bearer "):
            raise InvalidTokenError("authorization scheme must be Bearer")
        token = header.split(" ", 1)[1].strip()
        if not token:
            raise InvalidTokenError("missing bearer token")
        return token
