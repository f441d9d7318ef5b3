"""
main.py
-------
ChartBridge — EHR Patient Dashboard Proxy — FastAPI server
----------------------------------------------------------
HTTP boundary of the dashboard. Proxies authenticated calls to the remote
EHR API and keeps the token pair in HTTP-only cookies.

Endpoints:
    GET  /health          — Service health check
    POST /login           — Password grant; sets access_token / refresh_token cookies
    POST /refresh         — Refresh grant; rotates both cookies
    POST /logout          — Clears both cookies
    GET  /patients        — One page of patients  (?page=&count=)
    GET  /patients/{id}   — One patient: {id, resourceType, raw, formatted}
    PUT  /patients/{id}   — Update one patient from the edit form

Errors render as ``{"error": ...}`` (plus ``details`` for validation
problems) with the status of the matching ``errors.ProxyError`` subclass.
Unexpected exceptions are logged here and answered with a generic 500.

Run:
    uvicorn main:app --reload

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

import os
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Form, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth_gateway import AuthGateway
from config import Settings, get_settings
from ehr_client import EHRClient
from errors import ProxyError, UnknownError, ValidationError
from resource_gateway import ResourceGateway
from token_store import ResponseCookieTokenStore

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "ChartBridge EHR Patient Dashboard Proxy"

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    # Fail fast on a misconfigured environment.
    settings = get_settings()
    logger.info("%s %s starting (environment=%s).", SERVICE_NAME, VERSION, settings.environment)
    yield


# ── FastAPI app ────────────────────────────────────────────────────────────────

app = FastAPI(
    title=SERVICE_NAME,
    version=VERSION,
    description="Cookie-authenticated proxy between the patient dashboard and the remote EHR API.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)


# ── Dependencies ───────────────────────────────────────────────────────────────

def get_ehr_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for outbound EHR calls; None means the real network."""
    return None


async def get_ehr_client(
    settings: Settings = Depends(get_settings),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_ehr_transport),
) -> AsyncIterator[EHRClient]:
    async with EHRClient(settings, transport=transport) as client:
        yield client


def get_auth_gateway(
    ehr: EHRClient = Depends(get_ehr_client),
    settings: Settings = Depends(get_settings),
) -> AuthGateway:
    return AuthGateway(ehr, settings.cookie_policy())


def get_resource_gateway(ehr: EHRClient = Depends(get_ehr_client)) -> ResourceGateway:
    return ResourceGateway(ehr)


# ── Error handling ─────────────────────────────────────────────────────────────

@app.exception_handler(ProxyError)
async def handle_proxy_error(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message,
                     type(exc.__cause__).__name__ if exc.__cause__ else type(exc).__name__)
    return JSONResponse(exc.to_body(), status_code=exc.status_code)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("%s %s raised an unexpected error.", request.method, request.url.path)
    error = UnknownError()
    return JSONResponse(error.to_body(), status_code=error.status_code)


# ── Endpoints ──────────────────────────────────────────────────────────────────

@app.get("/health")
def health_check() -> dict:
    """
    Return service health status.

    Returns:
        dict: service, version, status, timestamp.
    """
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.post("/login")
async def login(
    request: Request,
    response: Response,
    username: str = Form(""),
    password: str = Form(""),
    auth: AuthGateway = Depends(get_auth_gateway),
) -> dict:
    """
    Exchange form credentials for a token pair.

    On success the raw token response is returned and both tokens are set as
    HTTP-only, SameSite=strict cookies (Secure in production).
    """
    store = ResponseCookieTokenStore(request, response)
    return await auth.login(username, password, store)


@app.post("/refresh")
async def refresh(
    request: Request,
    response: Response,
    refresh_token: str = Form(""),
    auth: AuthGateway = Depends(get_auth_gateway),
) -> dict:
    """Rotate the token pair. The refresh token comes from the form or the cookie."""
    store = ResponseCookieTokenStore(request, response)
    return await auth.refresh(refresh_token or None, store)


@app.post("/logout")
def logout(
    request: Request,
    response: Response,
    settings: Settings = Depends(get_settings),
) -> dict:
    """Clear both token cookies. No remote call is made."""
    ResponseCookieTokenStore(request, response, settings.cookie_policy()).clear()
    logger.info("logout: token cookies cleared.")
    return {"message": "Logged out"}


@app.get("/patients")
async def list_patients(
    request: Request,
    page: Optional[str] = Query(None),
    count: Optional[str] = Query(None),
    gateway: ResourceGateway = Depends(get_resource_gateway),
) -> dict:
    """Return ``{total, patients, links, pagination}``."""
    return await gateway.list_patients(ResponseCookieTokenStore(request), page, count)


@app.get("/patients/{patient_id}")
async def get_patient(
    patient_id: str,
    request: Request,
    gateway: ResourceGateway = Depends(get_resource_gateway),
) -> dict:
    """Return ``{id, resourceType, raw, formatted}``."""
    return await gateway.get_patient(ResponseCookieTokenStore(request), patient_id)


@app.put("/patients/{patient_id}")
async def update_patient(
    patient_id: str,
    request: Request,
    gateway: ResourceGateway = Depends(get_resource_gateway),
) -> dict:
    """Apply the edit form to the patient and return ``{message, patient}``."""
    store = ResponseCookieTokenStore(request)
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValidationError("Invalid JSON in request body") from exc
    return await gateway.update_patient(store, patient_id, body)
