"""
schemas.py
----------
ChartBridge — EHR Patient Dashboard Proxy — Pydantic Data Contracts
-------------------------------------------------------------------
Pydantic v2 models for the few structured values that cross module
boundaries. The remote Patient resource itself is deliberately NOT modelled:
it is an externally owned document that this codebase reads and partially
rewrites, and any field we do not know about must survive a write-back
untouched. It therefore travels as a plain ``dict``.

Public API
----------
    TokenKind       Which half of the pair (and which cookie) is meant.
    TokenPair       Opaque access + refresh bearer credentials.
    CookiePolicy    Expiry and transport flags applied when a pair is stored.
    NameEdit        Edited family / given names.
    PatientEdit     Body of ``PUT /patients/{id}`` — the edit form fields plus
                    the optional retained raw document.

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TokenKind(str, Enum):
    """Token kinds; the value doubles as the cookie name."""

    ACCESS = "access_token"
    REFRESH = "refresh_token"


class TokenPair(BaseModel):
    """
    Access / refresh bearer credentials issued by the remote API.

    Both members are replaced together on every refresh; the store never holds
    an access token from one grant next to a refresh token from another.
    """

    model_config = ConfigDict(frozen=True)

    access:     str = Field(min_length=1)
    refresh:    str = Field(min_length=1)
    expires_in: Optional[int] = None

    @classmethod
    def from_grant_response(cls, data: Dict[str, Any]) -> "TokenPair":
        """Build a pair from an OAuth2 token response body."""
        expires_in = data.get("expires_in")
        return cls(
            access=data.get("access_token") or "",
            refresh=data.get("refresh_token") or "",
            expires_in=int(expires_in) if expires_in not in (None, "") else None,
        )

    def __repr__(self) -> str:
        # Token values stay out of logs and tracebacks.
        return f"TokenPair(access=***, refresh=***, expires_in={self.expires_in})"

    __str__ = __repr__


class CookiePolicy(BaseModel):
    """Per-token lifetime plus transport flags for the backing cookie jar."""

    model_config = ConfigDict(frozen=True)

    access_max_age:  int = 3600
    refresh_max_age: int = 86400 * 7
    http_only:       bool = True
    secure:          bool = True
    same_site:       Literal["strict", "lax", "none"] = "strict"
    path:            str = "/"

    def max_age(self, kind: TokenKind) -> int:
        return self.access_max_age if kind is TokenKind.ACCESS else self.refresh_max_age


class NameEdit(BaseModel):
    """Edited name parts. ``full`` from the view is accepted and ignored."""

    model_config = ConfigDict(extra="ignore")

    family: Optional[str] = None
    given:  Optional[List[str]] = None


class PatientEdit(BaseModel):
    """
    Edit form submitted by the dashboard.

    Only fields that are present are written back; everything else in the
    remote document is preserved. ``raw`` is the document returned by
    ``GET /patients/{id}`` and retained by the client as the base for the
    merge; when omitted the gateway fetches the current document first.
    """

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    id:            str = Field(min_length=1)
    resourceType:  Optional[str] = None
    name:          Optional[NameEdit] = None
    gender:        Optional[str] = None
    birthDate:     Optional[str] = None
    active:        Optional[bool] = None
    maritalStatus: Optional[str] = None
    telecom:       Optional[List[Dict[str, Any]]] = None
    raw:           Optional[Dict[str, Any]] = None

    @field_validator("resourceType")
    @classmethod
    def validate_resource_type(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v != "Patient":
            raise ValueError("resourceType must be 'Patient'")
        return v

    def edits(self) -> Dict[str, Any]:
        """Return the edited fields only, in the shape ``to_raw`` expects."""
        return self.model_dump(
            include={"name", "gender", "birthDate", "active", "maritalStatus", "telecom"},
            exclude_none=True,
        )
