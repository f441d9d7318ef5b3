"""
config.py
---------
ChartBridge — EHR Patient Dashboard Proxy — Settings
----------------------------------------------------
Loads runtime settings from the environment (``.env`` is honoured through
python-dotenv) and validates them with pydantic. Any missing or malformed
value raises ``ConfigurationError`` naming every offending variable, so a
misconfigured deployment fails at startup instead of on the first request.

Environment variables:
    EHR_BASE_URL            Base URL of the remote EHR API (http/https).
    EHR_FIRM_URL_PREFIX     Firm / tenant path segment after the base URL.
    EHR_API_KEY             Value sent in the ``x-api-key`` header.
    APP_ENV                 ``production`` turns on Secure cookies.
    EHR_TIMEOUT             Remote request timeout in seconds (default 30).
    ACCESS_TOKEN_MAX_AGE    Access-token cookie lifetime in seconds (3600).
    REFRESH_TOKEN_MAX_AGE   Refresh-token cookie lifetime in seconds (7 days).

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

import logging
import os
from functools import lru_cache
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from errors import ConfigurationError
from schemas import CookiePolicy

logger = logging.getLogger(__name__)

_ENV_FIELDS = {
    "EHR_BASE_URL": "base_url",
    "EHR_FIRM_URL_PREFIX": "firm_url_prefix",
    "EHR_API_KEY": "api_key",
    "APP_ENV": "environment",
    "EHR_TIMEOUT": "timeout",
    "ACCESS_TOKEN_MAX_AGE": "access_token_max_age",
    "REFRESH_TOKEN_MAX_AGE": "refresh_token_max_age",
}
_FIELD_ENV = {field: env for env, field in _ENV_FIELDS.items()}


class Settings(BaseModel):
    """Validated runtime configuration."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    base_url:              str
    firm_url_prefix:       str = Field(min_length=1)
    api_key:               str = Field(min_length=1)
    environment:           str = "development"
    timeout:               float = Field(default=30.0, gt=0)
    access_token_max_age:  int = Field(default=3600, gt=0)
    refresh_token_max_age: int = Field(default=86400 * 7, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")) or len(v.split("://", 1)[1]) == 0:
            raise ValueError("Invalid base URL")
        return v.rstrip("/")

    @field_validator("firm_url_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        return v.strip("/")

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def api_root(self) -> str:
        """``{base}/{prefix}`` — root of every remote path."""
        return f"{self.base_url}/{self.firm_url_prefix}"

    @property
    def grant_url(self) -> str:
        return f"{self.api_root}/ema/ws/oauth2/grant"

    @property
    def fhir_base(self) -> str:
        return f"{self.api_root}/ema/fhir/v2"

    def cookie_policy(self) -> CookiePolicy:
        """Cookie attributes applied whenever the token pair is written."""
        return CookiePolicy(
            access_max_age=self.access_token_max_age,
            refresh_max_age=self.refresh_token_max_age,
            http_only=True,
            secure=self.is_production,
            same_site="strict",
        )


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build ``Settings`` from *environ* (defaults to ``os.environ`` after
    ``load_dotenv()``).

    Raises:
        ConfigurationError: if any required variable is missing or invalid.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ

    raw = {
        field: environ[env]
        for env, field in _ENV_FIELDS.items()
        if environ.get(env) not in (None, "")
    }

    try:
        settings = Settings(**raw)
    except PydanticValidationError as exc:
        problems = []
        for err in exc.errors():
            field = str(err["loc"][0]) if err.get("loc") else "?"
            problems.append(f"{_FIELD_ENV.get(field, field)}: {err['msg']}")
        logger.error("config: invalid environment (%s).", "; ".join(problems))
        raise ConfigurationError(
            "Environment configuration error", problems=problems
        ) from exc

    logger.info(
        "config: settings loaded (api_root=%s, environment=%s).",
        settings.api_root, settings.environment,
    )
    return settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once. Used as a FastAPI dependency."""
    return load_settings()
