"""
auth_gateway.py
---------------
ChartBridge — EHR Patient Dashboard Proxy — Auth Gateway
--------------------------------------------------------
Server-side login, refresh and logout. Credentials are exchanged with the
remote grant endpoint and the resulting pair is written into the Token
Store's HTTP-only cookie backing; the browser never handles a token value
except through the raw grant response the remote itself returned.

This module talks to ``EHRClient`` directly and never to the Session Client,
so logging in can never trigger a refresh.

Credentials never reach a log line or an error body.

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ehr_client import EHRClient
from errors import AuthError, RemoteError, ValidationError
from schemas import CookiePolicy, TokenKind, TokenPair
from token_store import TokenStore

logger = logging.getLogger(__name__)


def validate_credentials(username: Optional[str], password: Optional[str]) -> List[Dict[str, Any]]:
    """
    Return field-level problems for a login form; empty list when valid.

    Each problem is ``{"path": [field], "message": str}``.
    """
    problems = []
    if not (username or "").strip():
        problems.append({"path": ["username"], "message": "Username is required"})
    if not password:
        problems.append({"path": ["password"], "message": "Password is required"})
    return problems


def _pair_from(data: Dict[str, Any]) -> TokenPair:
    try:
        return TokenPair.from_grant_response(data)
    except PydanticValidationError as exc:
        raise RemoteError(
            "Token endpoint returned an incomplete token pair", status_code=502
        ) from exc


class AuthGateway:
    """
    Login / refresh / logout against the remote grant endpoint.

    Args:
        ehr:    Connected ``EHRClient``.
        policy: Cookie policy used whenever a pair is persisted.
    """

    def __init__(self, ehr: EHRClient, policy: CookiePolicy) -> None:
        self.ehr = ehr
        self.policy = policy

    async def login(self, username: str, password: str, store: TokenStore) -> Dict[str, Any]:
        """
        Exchange credentials for a token pair and persist it in *store*.

        Returns:
            The remote token response body, unchanged.

        Raises:
            ValidationError: if either field is empty (no remote call is made).
            GrantError / RemoteError: if the remote refuses or fails.
        """
        problems = validate_credentials(username, password)
        if problems:
            raise ValidationError("Invalid input data", details=problems)

        data = await self.ehr.password_grant(username, password)
        store.set(_pair_from(data), self.policy)
        logger.info("AuthGateway: login succeeded, token cookies issued.")
        return data

    async def refresh(self, refresh_token: Optional[str], store: TokenStore) -> Dict[str, Any]:
        """
        Rotate the pair using *refresh_token* (falls back to the one in *store*).

        Raises:
            AuthError: if no refresh token is available.
            GrantError / RemoteError: if the remote refuses or fails.
        """
        token = refresh_token or store.get(TokenKind.REFRESH)
        if not token:
            raise AuthError("Unauthorized - No refresh token found")

        data = await self.ehr.refresh_grant(token)
        store.set(_pair_from(data), self.policy)
        logger.info("AuthGateway: token pair rotated.")
        return data

    async def refresh_pair(self, refresh_token: str) -> TokenPair:
        """
        Refresh grant returning just the pair; the ``SessionClient`` refresher
        for sessions that talk to the remote API directly.
        """
        return _pair_from(await self.ehr.refresh_grant(refresh_token))

    def logout(self, store: TokenStore) -> None:
        store.clear()
        logger.info("AuthGateway: token cookies cleared.")
