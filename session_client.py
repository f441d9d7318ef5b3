"""
session_client.py
-----------------
ChartBridge — EHR Patient Dashboard Proxy — Session Client
----------------------------------------------------------
Authenticated async HTTP client with single-flight token refresh.

Every request carries ``Authorization: Bearer <access>`` read from a
``TokenStore``. When a request comes back 401:

  * state IDLE       -> become REFRESHING, exchange the refresh token for a new
                        pair (exactly one refresh call), store the pair, wake
                        every parked caller with the new access token, retry.
  * state REFRESHING -> park on a future until the in-flight refresh settles,
                        then retry with its token (or raise its error).
  * already retried  -> raise ``AuthError``; a second refresh is never tried,
                        so an endpoint that always answers 401 cannot loop.

A missing refresh token or a failed refresh is terminal for the session:
the store is cleared, all parked callers are rejected (never left pending)
and the ``on_login_required`` callback fires, the Python equivalent of
redirecting the browser to the login page.

Refresh state lives on the instance, so several independent sessions can
share one process.

Usage (talking to the dashboard gateway):
    async with gateway_session("https://dashboard.example.com") as session:
        resp = await session.login(u, p)
        resp = await session.get("/patients", params={"page": 2})

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from errors import AuthError
from schemas import CookiePolicy, TokenKind, TokenPair
from token_store import CookieJarTokenStore, TokenStore

logger = logging.getLogger(__name__)

Refresher = Callable[[str], Awaitable[TokenPair]]
LoginRequired = Callable[[], Any]


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class SessionClient:
    """
    Wraps an ``httpx.AsyncClient`` with bearer auth and refresh-and-retry.

    Args:
        store:             Where the token pair lives.
        refresher:         ``async (refresh_token) -> TokenPair``; performs the
                           refresh grant. Called at most once at a time.
        base_url:          Base URL for relative request paths.
        policy:            Cookie policy applied when the refreshed pair is stored.
        on_login_required: Called when the session cannot be recovered.
        http:              Pre-built ``httpx.AsyncClient``; closed by ``aclose``
                           only when ``owns_http`` is True.
        transport:         Transport for the client we build ourselves.
        timeout:           Request timeout in seconds.
        owns_http:         Whether ``aclose`` closes the HTTP client; defaults
                           to True only when we built it.
    """

    # Paths whose 401 is an answer, not an expired token.
    no_refresh_paths: Tuple[str, ...] = ()

    def __init__(
        self,
        store: TokenStore,
        refresher: Refresher,
        *,
        base_url: str = "",
        policy: Optional[CookiePolicy] = None,
        on_login_required: Optional[LoginRequired] = None,
        http: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        owns_http: Optional[bool] = None,
    ) -> None:
        self.store = store
        self.policy = policy or CookiePolicy()
        self._refresher = refresher
        self._on_login_required = on_login_required
        self._owns_http = http is None if owns_http is None else owns_http
        self._http = http or httpx.AsyncClient(
            base_url=base_url, transport=transport, timeout=timeout
        )
        self._state = RefreshState.IDLE
        self._queue: List[asyncio.Future] = []

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.aclose()

    # ── Introspection ────────────────────────────────────────────────────────

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending(self) -> int:
        """Number of callers parked behind the in-flight refresh."""
        return len(self._queue)

    def get_access_token(self) -> Optional[str]:
        return self.store.get(TokenKind.ACCESS)

    def get_refresh_token(self) -> Optional[str]:
        return self.store.get(TokenKind.REFRESH)

    def is_authenticated(self) -> bool:
        return self.get_access_token() is not None

    def logout(self) -> None:
        """Drop both tokens and hand control to the login flow."""
        self.store.clear()
        self._login_required()

    # ── Requests ─────────────────────────────────────────────────────────────

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send an authenticated request, recovering one 401 via refresh.

        Returns:
            The response for any status other than 401.

        Raises:
            AuthError: if no refresh is possible, or the retried call is also 401.
            Exception: whatever the refresher raised when the refresh failed.
        """
        headers = kwargs.pop("headers", None)
        sent_token = self.get_access_token()
        response = await self._send(method, url, sent_token, headers, kwargs)
        if response.status_code != 401 or httpx.URL(url).path in self.no_refresh_paths:
            return response

        logger.debug("SessionClient: %s %s -> 401, refreshing.", method, url)
        token = await self._refreshed_token(sent_token)

        retry = await self._send(method, url, token, headers, kwargs)
        if retry.status_code == 401:
            logger.warning("SessionClient: %s %s still 401 after refresh.", method, url)
            raise AuthError("Unauthorized - request rejected after token refresh")
        return retry

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def _send(
        self,
        method: str,
        url: str,
        token: Optional[str],
        headers: Optional[Dict[str, str]],
        kwargs: Dict[str, Any],
    ) -> httpx.Response:
        merged = dict(headers or {})
        if token:
            merged["Authorization"] = f"Bearer {token}"
        return await self._http.request(method, url, headers=merged, **kwargs)

    # ── Refresh protocol ─────────────────────────────────────────────────────

    async def _refreshed_token(self, sent_token: Optional[str]) -> str:
        if self._state is RefreshState.REFRESHING:
            waiter = asyncio.get_running_loop().create_future()
            self._queue.append(waiter)
            logger.debug("SessionClient: parked behind refresh (%d waiting).", len(self._queue))
            return await waiter

        # A refresh finished between our send and now; its token is already current.
        current = self.get_access_token()
        if current and current != sent_token:
            return current

        self._state = RefreshState.REFRESHING
        try:
            refresh_token = self.get_refresh_token()
            if not refresh_token:
                error = AuthError("Unauthorized - no refresh token, login required")
                self._settle(error=error)
                self._login_required()
                raise error

            try:
                pair = await self._refresher(refresh_token)
            except Exception as exc:
                logger.warning("SessionClient: token refresh failed (%s).", type(exc).__name__)
                self.store.clear()
                self._settle(error=exc)
                self._login_required()
                raise

            self.store.set(pair, self.policy)
            logger.info("SessionClient: token refreshed, resuming %d queued call(s).", len(self._queue))
            self._settle(token=pair.access)
            return pair.access
        finally:
            self._state = RefreshState.IDLE
            if self._queue:
                # Refresh was cancelled mid-flight; parked callers must not hang.
                self._settle(error=AuthError("Unauthorized - token refresh interrupted"))

    def _settle(self, *, token: Optional[str] = None, error: Optional[BaseException] = None) -> None:
        waiters, self._queue = self._queue, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(token)

    def _login_required(self) -> None:
        logger.info("SessionClient: session unrecoverable, login required.")
        if self._on_login_required is not None:
            self._on_login_required()


class GatewaySession(SessionClient):
    """
    Session client bound to the dashboard gateway.

    ``login`` goes straight to the HTTP client: a rejected login is returned
    as-is and never starts a refresh, and the auth routes themselves are
    exempt from refresh-and-retry.
    """

    no_refresh_paths = ("/login", "/refresh")

    async def login(self, username: str, password: str) -> httpx.Response:
        """POST the credentials to ``/login``; cookies from a 200 land in the jar."""
        resp = await self._http.post("/login", data={"username": username, "password": password})
        logger.info("GatewaySession: login -> HTTP %d.", resp.status_code)
        return resp


def gateway_session(
    base_url: str,
    *,
    on_login_required: Optional[LoginRequired] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout: float = 30.0,
) -> GatewaySession:
    """
    Session client for the dashboard's own HTTP API.

    Tokens live in the client's cookie jar, where ``POST /login`` and
    ``POST /refresh`` put them; refreshing goes through the gateway's
    ``/refresh`` route, so gateway and client always share one token pair.
    """
    http = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)

    async def refresh_via_gateway(refresh_token: str) -> TokenPair:
        resp = await http.post("/refresh", data={"refresh_token": refresh_token})
        if resp.status_code != 200:
            raise AuthError(f"Token refresh rejected (HTTP {resp.status_code})")
        return TokenPair.from_grant_response(resp.json())

    session = GatewaySession(
        CookieJarTokenStore(http.cookies),
        refresh_via_gateway,
        on_login_required=on_login_required,
        http=http,
        owns_http=True,
    )
    return session
