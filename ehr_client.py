"""
ehr_client.py
-------------
ChartBridge — EHR Patient Dashboard Proxy — Remote EHR API Client
-----------------------------------------------------------------
Async client for the third-party EHR API. Two surfaces are used:

  1. OAuth2 grant endpoint  ``POST {base}/{prefix}/ema/ws/oauth2/grant``
     form-encoded, ``grant_type=password`` (login) or
     ``grant_type=refresh_token`` (refresh).
  2. FHIR Patient endpoints ``{base}/{prefix}/ema/fhir/v2/Patient[/{id}]``
     carrying ``Authorization: Bearer <access>``.

Every call carries the ``x-api-key`` header. Unlike a service-account
client this one never caches a token: the caller always supplies the
bearer token it read from the user's cookies.

Remote failures are mapped onto the proxy error taxonomy:

    401                 -> AuthError
    404                 -> NotFoundError
    400 on a write      -> ValidationError (remote detail is logged, not returned)
    transport failure   -> RemoteError(502)
    any other non-2xx   -> RemoteError(status)

Usage (async context manager — preferred):
    async with EHRClient(settings) as client:
        grant = await client.password_grant("jdoe", "secret")
        bundle = await client.search_patients(grant["access_token"], page=2)

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config import Settings
from errors import AuthError, NotFoundError, RemoteError, ValidationError

logger = logging.getLogger(__name__)

_FHIR_JSON = "application/fhir+json"

# Only these keys of a remote OAuth2 error body are ever echoed to a caller.
_SAFE_GRANT_ERROR_KEYS = ("error", "error_description")


def _reason(resp: httpx.Response) -> str:
    return resp.reason_phrase or f"HTTP {resp.status_code}"


def sanitize_grant_error(resp: httpx.Response) -> Any:
    """
    Reduce a failed grant response to the standard OAuth2 error fields.

    Returns a dict with ``error``/``error_description`` when the remote sent
    them, otherwise the HTTP reason phrase.
    """
    try:
        body = resp.json()
    except ValueError:
        return _reason(resp)
    if isinstance(body, dict):
        safe = {k: body[k] for k in _SAFE_GRANT_ERROR_KEYS if isinstance(body.get(k), str)}
        if safe:
            return safe
    return _reason(resp)


class GrantError(RemoteError):
    """Raised when the token endpoint refuses a grant; ``detail`` is sanitized."""

    def __init__(self, status_code: int, detail: Any) -> None:
        self.detail = detail
        if isinstance(detail, dict):
            message = detail.get("error_description") or detail.get("error")
        else:
            message = str(detail)
        super().__init__(message or "Token request failed", status_code=status_code)

    def to_body(self) -> dict:
        return {"error": self.detail}


class EHRClient:
    """
    Async client for the remote EHR API.

    Args:
        settings:  Validated ``Settings`` (base URL, firm prefix, API key,
                   timeout).
        transport: Optional ``httpx`` transport; tests pass an
                   ``httpx.MockTransport`` here.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=self.settings.timeout,
                transport=self._transport,
                headers={"x-api-key": self.settings.api_key},
            )
            logger.debug("EHRClient: HTTP transport initialised.")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("EHRClient: HTTP transport closed.")

    async def __aenter__(self) -> "EHRClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            raise RuntimeError(
                "EHRClient is not connected. "
                "Use 'async with EHRClient(settings) as client:' or call connect() first."
            )
        return self._http

    # ── OAuth2 grants ────────────────────────────────────────────────────────

    async def _grant(self, form_data: Dict[str, str]) -> Dict[str, Any]:
        grant_type = form_data["grant_type"]
        try:
            resp = await self._client().post(
                self.settings.grant_url,
                data=form_data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as exc:
            logger.error("EHRClient: %s grant transport failure: %s", grant_type, type(exc).__name__)
            raise RemoteError("Token endpoint unreachable", status_code=502) from exc

        if resp.status_code != 200:
            logger.warning("EHRClient: %s grant rejected (HTTP %d).", grant_type, resp.status_code)
            raise GrantError(resp.status_code, sanitize_grant_error(resp))

        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteError("Token endpoint returned a malformed body", status_code=502) from exc
        if not isinstance(data, dict) or not data.get("access_token"):
            raise RemoteError("Token endpoint returned no access token", status_code=502)

        logger.info(
            "EHRClient: %s grant succeeded (expires_in=%s).",
            grant_type, data.get("expires_in", "?"),
        )
        return data

    async def password_grant(self, username: str, password: str) -> Dict[str, Any]:
        """Exchange user credentials for a token response (``grant_type=password``)."""
        return await self._grant({
            "grant_type": "password",
            "username":   username,
            "password":   password,
        })

    async def refresh_grant(self, refresh_token: str) -> Dict[str, Any]:
        """Exchange a refresh token for a new token response (``grant_type=refresh_token``)."""
        return await self._grant({
            "grant_type":    "refresh_token",
            "refresh_token": refresh_token,
        })

    # ── FHIR requests ────────────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Execute an authenticated FHIR request and return the parsed JSON body.

        Raises:
            AuthError, NotFoundError, ValidationError, RemoteError — see module
            docstring for the status mapping.
        """
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": _FHIR_JSON,
        }
        if json is not None:
            headers["Content-Type"] = _FHIR_JSON

        try:
            resp = await self._client().request(
                method,
                f"{self.settings.fhir_base}{path}",
                headers=headers,
                params=params,
                json=json,
            )
        except httpx.HTTPError as exc:
            logger.error("EHRClient: %s %s transport failure: %s", method, path, type(exc).__name__)
            raise RemoteError("Remote EHR API unreachable", status_code=502) from exc

        if resp.status_code not in range(200, 300):
            logger.warning(
                "EHRClient: %s %s -> HTTP %d %s", method, path, resp.status_code, _reason(resp)
            )
            if resp.status_code == 401:
                raise AuthError("Unauthorized - Token may be expired")
            if resp.status_code == 404:
                raise NotFoundError("Patient not found" if path.startswith("/Patient/") else None)
            if resp.status_code == 400 and method != "GET":
                logger.debug("EHRClient: remote validation detail: %s", resp.text[:300])
                raise ValidationError("Bad request - Invalid patient data")
            raise RemoteError(
                f"Remote request failed: {_reason(resp)}", status_code=resp.status_code
            )

        try:
            body = resp.json() if resp.content else {}
        except ValueError as exc:
            raise RemoteError("Remote EHR API returned a malformed body", status_code=502) from exc
        return body if isinstance(body, dict) else {}

    async def search_patients(
        self,
        access_token: str,
        page: int = 1,
        count: int = 20,
    ) -> Dict[str, Any]:
        """
        Search Patient resources  ->  ``GET .../Patient``.

        ``page`` and ``_count`` are only sent when they differ from the
        remote defaults (1 and 20).
        """
        params: Dict[str, str] = {}
        if page != 1:
            params["page"] = str(page)
        if count != 20:
            params["_count"] = str(count)
        logger.debug("EHRClient: GET /Patient params=%s", params or "<default>")
        return await self._request("GET", "/Patient", access_token, params=params or None)

    async def get_patient(self, access_token: str, patient_id: str) -> Dict[str, Any]:
        """Read one Patient resource  ->  ``GET .../Patient/{id}``."""
        return await self._request("GET", f"/Patient/{patient_id}", access_token)

    async def update_patient(
        self,
        access_token: str,
        patient_id: str,
        resource: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Replace one Patient resource  ->  ``PUT .../Patient/{id}``."""
        logger.debug("EHRClient: PUT /Patient/%s", patient_id)
        return await self._request("PUT", f"/Patient/{patient_id}", access_token, json=resource)
