"""
resource_gateway.py
-------------------
ChartBridge — EHR Patient Dashboard Proxy — Resource Gateway
------------------------------------------------------------
List / read / update of Patient resources on behalf of the logged-in user.

The bearer token comes from the Token Store's cookie backing. A missing
token is an immediate ``AuthError``: the gateway never refreshes on its own.
A 401 from the remote API is passed through so the caller's Session Client
can refresh through ``POST /refresh`` and retry.

Updates are validated locally before anything is sent: the body must be a
JSON object whose ``id`` equals the path id (and, when the client sends back
the retained ``raw`` document, so must its ``id``). Edits are then merged
onto the full document with ``resource_mapper.to_raw`` so fields the form
does not expose are written back unchanged.

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

import resource_mapper
from ehr_client import EHRClient
from errors import AuthError, ValidationError
from schemas import PatientEdit, TokenKind
from token_store import TokenStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_COUNT = 20
MAX_COUNT = 100

_ID_MISMATCH = "Patient ID in URL does not match ID in request body"


def _positive_int(value: Optional[str], default: int, field: str, maximum: Optional[int] = None) -> int:
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        number = 0
    if number < 1 or (maximum is not None and number > maximum):
        limit = f" between 1 and {maximum}" if maximum else ""
        raise ValidationError(
            "Invalid query parameters",
            details=[{"path": [field], "message": f"{field} must be a whole number{limit}"}],
        )
    return number


def _require_token(store: TokenStore) -> str:
    token = store.get(TokenKind.ACCESS)
    if not token:
        raise AuthError("Unauthorized - No access token found")
    return token


def parse_patient_edit(patient_id: str, body: Any) -> PatientEdit:
    """
    Validate an update body against the path id.

    Raises:
        ValidationError: malformed body, missing id, or any id mismatch.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid patient data - request body must be a JSON object")
    body_id = body.get("id")
    if body_id in (None, ""):
        raise ValidationError("Invalid patient data - id is required")
    if str(body_id) != patient_id:
        raise ValidationError(_ID_MISMATCH)

    try:
        edit = PatientEdit.model_validate({**body, "id": str(body_id)})
    except PydanticValidationError as exc:
        details = [
            {"path": [str(p) for p in err.get("loc", ())], "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        raise ValidationError("Invalid patient data", details=details) from exc

    if edit.raw is not None:
        if str(edit.raw.get("id", "")) != patient_id:
            raise ValidationError(_ID_MISMATCH)
        if edit.raw.get("resourceType", "Patient") != "Patient":
            raise ValidationError("Invalid patient data - raw resourceType must be 'Patient'")
    return edit


class ResourceGateway:
    """Patient endpoints backed by a connected ``EHRClient``."""

    def __init__(self, ehr: EHRClient) -> None:
        self.ehr = ehr

    async def list_patients(
        self,
        store: TokenStore,
        page: Optional[str] = None,
        count: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return ``{total, patients, links, pagination}`` for one search page."""
        token = _require_token(store)
        page_no = _positive_int(page, DEFAULT_PAGE, "page")
        page_size = _positive_int(count, DEFAULT_COUNT, "count", MAX_COUNT)

        bundle = await self.ehr.search_patients(token, page=page_no, count=page_size)
        result = resource_mapper.to_list_page(bundle, page_no)
        logger.info(
            "ResourceGateway: page %d -> %d patient(s) (hasNext=%s).",
            page_no, len(result["patients"]), result["pagination"]["hasNext"],
        )
        return result

    async def get_patient(self, store: TokenStore, patient_id: str) -> Dict[str, Any]:
        """Return ``{id, resourceType, raw, formatted}``."""
        token = _require_token(store)
        raw = await self.ehr.get_patient(token, patient_id)
        return resource_mapper.to_detail(raw)

    async def update_patient(self, store: TokenStore, patient_id: str, body: Any) -> Dict[str, Any]:
        """
        Merge the edit form onto the full document and PUT it back.

        Returns:
            ``{"message": ..., "patient": {id, resourceType, raw, formatted}}``
        """
        token = _require_token(store)
        edit = parse_patient_edit(patient_id, body)

        existing = edit.raw if edit.raw is not None else await self.ehr.get_patient(token, patient_id)
        updated = resource_mapper.to_raw(existing, edit.edits())
        updated["id"] = patient_id
        updated.setdefault("resourceType", "Patient")

        saved = await self.ehr.update_patient(token, patient_id, updated)
        logger.info("ResourceGateway: Patient/%s updated.", patient_id)
        return {
            "message": "Patient updated successfully",
            "patient": resource_mapper.to_detail(saved or updated),
        }
