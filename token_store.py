"""
token_store.py
--------------
ChartBridge — EHR Patient Dashboard Proxy — Token Store
-------------------------------------------------------
Reads and writes the opaque access / refresh token pair. The refresh protocol
only sees the ``TokenStore`` interface, so the backing can be swapped without
touching it:

    MemoryTokenStore          in-process dict (server-side session store).
    CookieJarTokenStore       an ``httpx.Cookies`` jar (client side).
    ResponseCookieTokenStore  incoming request cookies + ``Set-Cookie`` on the
                              outgoing starlette response (HTTP-only backing
                              used by the gateways).

Token contents are never inspected or validated.

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx
from fastapi import Request, Response

from schemas import CookiePolicy, TokenKind, TokenPair

logger = logging.getLogger(__name__)


class TokenStore(ABC):
    """Interface over whatever secure key-value backing holds the pair."""

    @abstractmethod
    def get(self, kind: TokenKind) -> Optional[str]:
        """Return the stored token of *kind*, or None."""

    @abstractmethod
    def set(self, pair: TokenPair, policy: CookiePolicy) -> None:
        """Replace both tokens at once."""

    @abstractmethod
    def clear(self) -> None:
        """Forget both tokens."""


class MemoryTokenStore(TokenStore):
    """Dict-backed store. ``policy`` is recorded but expiry is not enforced."""

    def __init__(self, pair: Optional[TokenPair] = None) -> None:
        self._tokens: Dict[TokenKind, str] = {}
        self.policy: Optional[CookiePolicy] = None
        if pair is not None:
            self.set(pair, CookiePolicy())

    def get(self, kind: TokenKind) -> Optional[str]:
        return self._tokens.get(kind)

    def set(self, pair: TokenPair, policy: CookiePolicy) -> None:
        self._tokens = {TokenKind.ACCESS: pair.access, TokenKind.REFRESH: pair.refresh}
        self.policy = policy

    def clear(self) -> None:
        self._tokens = {}


class CookieJarTokenStore(TokenStore):
    """
    Store backed by an ``httpx.Cookies`` jar, typically the jar of the
    ``httpx.AsyncClient`` that talks to the gateway, so cookies the gateway
    sets and tokens the session client writes end up in the same place.
    """

    def __init__(self, jar: httpx.Cookies, domain: str = "") -> None:
        self.jar = jar
        self.domain = domain

    def get(self, kind: TokenKind) -> Optional[str]:
        # Iterate rather than jar.get(): the gateway may have set the cookie
        # under a different domain than ours, which would raise CookieConflict.
        for cookie in self.jar.jar:
            if cookie.name == kind.value and cookie.value:
                return cookie.value
        return None

    def set(self, pair: TokenPair, policy: CookiePolicy) -> None:
        self.clear()
        self.jar.set(TokenKind.ACCESS.value, pair.access, domain=self.domain, path=policy.path)
        self.jar.set(TokenKind.REFRESH.value, pair.refresh, domain=self.domain, path=policy.path)

    def clear(self) -> None:
        for kind in TokenKind:
            stale = [c for c in self.jar.jar if c.name == kind.value]
            for cookie in stale:
                self.jar.jar.clear(cookie.domain, cookie.path, cookie.name)


class ResponseCookieTokenStore(TokenStore):
    """
    HTTP-only cookie backing on the server side.

    Reads come from the request's ``Cookie`` header; writes are emitted as
    ``Set-Cookie`` headers on *response*. A write is visible to subsequent
    ``get`` calls within the same request. Deletions reuse the path, Secure
    and SameSite attributes of *policy* (or of the last ``set``) so the
    browser matches them to the cookies being expired.
    """

    def __init__(
        self,
        request: Request,
        response: Optional[Response] = None,
        policy: Optional[CookiePolicy] = None,
    ) -> None:
        self.request = request
        self.response = response
        self.policy = policy or CookiePolicy()
        self._written: Dict[TokenKind, Optional[str]] = {}

    def get(self, kind: TokenKind) -> Optional[str]:
        if kind in self._written:
            return self._written[kind]
        return self.request.cookies.get(kind.value) or None

    def _require_response(self) -> Response:
        if self.response is None:
            raise RuntimeError("ResponseCookieTokenStore is read-only without a response.")
        return self.response

    def set(self, pair: TokenPair, policy: CookiePolicy) -> None:
        response = self._require_response()
        for kind, value in ((TokenKind.ACCESS, pair.access), (TokenKind.REFRESH, pair.refresh)):
            response.set_cookie(
                kind.value,
                value,
                max_age=policy.max_age(kind),
                path=policy.path,
                httponly=policy.http_only,
                secure=policy.secure,
                samesite=policy.same_site,
            )
            self._written[kind] = value
        self.policy = policy
        logger.debug(
            "token_store: token cookies written (secure=%s, samesite=%s).",
            policy.secure, policy.same_site,
        )

    def clear(self) -> None:
        response = self._require_response()
        for kind in TokenKind:
            response.delete_cookie(
                kind.value,
                path=self.policy.path,
                secure=self.policy.secure,
                httponly=self.policy.http_only,
                samesite=self.policy.same_site,
            )
            self._written[kind] = None
