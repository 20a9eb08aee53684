"""
auth/csrf.py -- Stateless double-submit-cookie CSRF protection.

Pattern:
  generate() returns a random cookie value plus a token value equal to
  HMAC-SHA256(csrf_secret, cookie_value). The cookie goes out httpOnly; the
  token goes out in a response body and the client echoes it in the
  X-CSRF-Token header. verify() recomputes the HMAC from the cookie, so the
  server stores nothing. A cross-site attacker can make the browser send the
  cookie but cannot read it, and cannot mint a matching header without the
  secret.

Cookie attributes:
  production  name "__Host-<app>.x-csrf-token", SameSite=Strict, Secure
  otherwise   name "<app>.x-csrf-token",        SameSite=Lax, not Secure
  always      httpOnly, Path=/, no Domain (the __Host- prefix requires that)

Safe methods (GET, HEAD, OPTIONS by default) skip verification entirely.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Iterable

from auth.errors import InvalidOrMissingCsrfToken
from auth.models import CsrfPair

DEFAULT_IGNORED_METHODS = ("GET", "HEAD", "OPTIONS")


class CsrfGuard:
    def __init__(
        self,
        secret: str,
        app_name: str = "authcore",
        production: bool = False,
        token_size: int = 64,
        ignored_methods: Iterable[str] = DEFAULT_IGNORED_METHODS,
        header_name: str = "X-CSRF-Token",
    ) -> None:
        self._secret = secret.encode("utf-8")
        self.production = production
        self.token_size = token_size
        self.ignored_methods = frozenset(m.upper() for m in ignored_methods)
        self.header_name = header_name
        stem = f"{app_name}.x-csrf-token"
        self.cookie_name = f"__Host-{stem}" if production else stem

    @property
    def cookie_options(self) -> dict:
        """Keyword arguments for Starlette's Response.set_cookie()."""
        return {
            "httponly": True,
            "path": "/",
            "samesite": "strict" if self.production else "lax",
            "secure": self.production,
        }

    def _sign(self, cookie_value: str) -> str:
        return hmac.new(self._secret, cookie_value.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate(self) -> CsrfPair:
        cookie_value = secrets.token_hex(self.token_size)
        return CsrfPair(cookie_value=cookie_value, token_value=self._sign(cookie_value))

    def verify(self, cookie_value: str | None, token_value: str | None) -> bool:
        """Constant-time check that token_value was derived from cookie_value."""
        if not cookie_value or not token_value:
            return False
        return hmac.compare_digest(self._sign(cookie_value).encode("utf-8"), token_value.encode("utf-8"))

    def protect(self, method: str, cookie_value: str | None, token_value: str | None) -> None:
        """Raise InvalidOrMissingCsrfToken unless the request is safe or the pair verifies."""
        if method.upper() in self.ignored_methods:
            return
        if not self.verify(cookie_value, token_value):
            raise InvalidOrMissingCsrfToken()

    def set_cookie(self, response, pair: CsrfPair) -> None:
        """Write the cookie half of pair onto a Starlette/FastAPI response."""
        response.set_cookie(self.cookie_name, value=pair.cookie_value, **self.cookie_options)
