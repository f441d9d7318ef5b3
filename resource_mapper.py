"""
resource_mapper.py
------------------
ChartBridge — EHR Patient Dashboard Proxy — Patient Resource Mapping Layer
--------------------------------------------------------------------------
Pure functions translating between the remote EHR's nested FHIR-style
``Patient`` resource and the flattened view the dashboard renders and edits.

Read direction (``to_view``) applies a fixed fallback for every field so
that absence never leaks into the view as ``None``:

    id / identifier           "N/A"
    name.family               "Unknown"
    name.given                ["Unknown"]
    name.full                 "<first given> <family>" with the same fallbacks
    gender                    "unknown"
    birthDate / maritalStatus / lastUpdated   "Unknown"
    active / deceased         False
    telecom / address         []
    ethnicity                 "Unspecified"

Write direction (``to_raw``) merges the edit-form fields onto a deep copy of
the full remote document. Fields the form does not expose (address,
identifiers, extensions, meta, name.use, maritalStatus.coding, ...) must come
back byte-for-byte identical: the remote system persists whatever we send,
so dropping them would be data loss.

Public API:
    ETHNICITY_EXTENSION_URL   US Core ethnicity extension URL.
    ETHNICITY_TEXT_URL        Sub-extension carrying the display text.
    find_extension_value()    Two-level extension lookup by URL.
    to_view()                 Remote resource  ->  flattened view.
    to_raw()                  Remote resource + edits  ->  updated resource.
    to_detail()               Detail envelope {id, resourceType, raw, formatted}.
    to_list_page()            Search bundle  ->  {total, patients, links, pagination}.

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ETHNICITY_EXTENSION_URL = "http://hl7.org/fhir/us/core/StructureDefinition/us-core-ethnicity"
ETHNICITY_TEXT_URL = "text"

_NOT_AVAILABLE = "N/A"
_UNKNOWN = "Unknown"
_UNSPECIFIED = "Unspecified"

# Bundle link relations. Some servers spell the backwards link "previous".
_NEXT_RELATIONS = ("next",)
_PREV_RELATIONS = ("prev", "previous")

_Resource = Dict[str, Any]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _first(items: Any) -> Dict[str, Any]:
    """Return the first element of a list of dicts, or ``{}``."""
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _find_by_url(nodes: Any, url: str) -> Optional[Dict[str, Any]]:
    if not isinstance(nodes, list):
        return None
    for node in nodes:
        if isinstance(node, dict) and node.get("url") == url:
            return node
    return None


def find_extension_value(extensions: Any, url: str, sub_url: str) -> Optional[str]:
    """
    Find the extension whose ``url`` equals *url*, then its nested extension
    whose ``url`` equals *sub_url*, and return that node's ``valueString``.

    Args:
        extensions: The resource's ``extension`` array (may be absent/None).
        url:        Outer extension URL, e.g. ``ETHNICITY_EXTENSION_URL``.
        sub_url:    Inner extension URL, e.g. ``ETHNICITY_TEXT_URL``.

    Returns:
        The string value, or None when any level is missing or empty.
    """
    outer = _find_by_url(extensions, url)
    if outer is None:
        return None
    inner = _find_by_url(outer.get("extension"), sub_url)
    if inner is None:
        return None
    value = inner.get("valueString")
    return value if isinstance(value, str) and value else None


def _list_or_empty(value: Any) -> List[Any]:
    return list(value) if isinstance(value, list) else []


# ---------------------------------------------------------------------------
# Read direction
# ---------------------------------------------------------------------------

def to_view(raw: Optional[_Resource]) -> Dict[str, Any]:
    """
    Project a remote Patient resource onto the flattened display view.

    Derived fresh on every call; nothing is cached.
    """
    raw = raw or {}
    name = _first(raw.get("name"))
    family = name.get("family") or _UNKNOWN
    given = [g for g in _list_or_empty(name.get("given")) if isinstance(g, str) and g] or [_UNKNOWN]

    deceased = raw.get("deceasedBoolean")
    active = raw.get("active")

    return {
        "id":            raw.get("id") or _NOT_AVAILABLE,
        "identifier":    _first(raw.get("identifier")).get("value") or _NOT_AVAILABLE,
        "name": {
            "family": family,
            "given":  given,
            "full":   f"{given[0]} {family}",
        },
        "gender":        raw.get("gender") or "unknown",
        "birthDate":     raw.get("birthDate") or _UNKNOWN,
        "active":        active if isinstance(active, bool) else False,
        "deceased":      deceased if isinstance(deceased, bool) else False,
        "maritalStatus": (raw.get("maritalStatus") or {}).get("text") or _UNKNOWN,
        "lastUpdated":   (raw.get("meta") or {}).get("lastUpdated") or _UNKNOWN,
        "telecom":       _list_or_empty(raw.get("telecom")),
        "address":       _list_or_empty(raw.get("address")),
        "ethnicity":     find_extension_value(
            raw.get("extension"), ETHNICITY_EXTENSION_URL, ETHNICITY_TEXT_URL
        ) or _UNSPECIFIED,
    }


def to_detail(raw: _Resource) -> Dict[str, Any]:
    """Detail envelope; ``raw`` is retained so the client can base edits on it."""
    return {
        "id":           raw.get("id") or _NOT_AVAILABLE,
        "resourceType": raw.get("resourceType") or "Patient",
        "raw":          raw,
        "formatted":    to_view(raw),
    }


def _link_url(links: Iterable[Any], relations: Iterable[str]) -> str:
    for link in links:
        if isinstance(link, dict) and link.get("relation") in relations and link.get("url"):
            return link["url"]
    return ""


def to_list_page(bundle: Optional[_Resource], page: int) -> Dict[str, Any]:
    """
    Convert a search Bundle into a list page.

    ``hasNext``/``hasPrev`` reflect only whether the remote returned a
    next/prev link for this page; totals are not stable across pages and are
    never used to infer navigation.
    """
    bundle = bundle or {}
    links = _list_or_empty(bundle.get("link"))

    patients = []
    for entry in _list_or_empty(bundle.get("entry")):
        if not isinstance(entry, dict):
            continue
        view = to_view(entry.get("resource"))
        view["fullUrl"] = entry.get("fullUrl") or _NOT_AVAILABLE
        patients.append(view)

    next_url = _link_url(links, _NEXT_RELATIONS)
    prev_url = _link_url(links, _PREV_RELATIONS)
    total = bundle.get("total")

    return {
        "total":    total if isinstance(total, int) else 0,
        "patients": patients,
        "links": {
            "self": _link_url(links, ("self",)),
            "next": next_url,
            "prev": prev_url,
        },
        "pagination": {
            "currentPage": page,
            "hasNext":     bool(next_url),
            "hasPrev":     bool(prev_url),
        },
    }


# ---------------------------------------------------------------------------
# Write direction
# ---------------------------------------------------------------------------

def _merge_name(updated: _Resource, name_edit: Dict[str, Any]) -> None:
    names = updated.get("name")
    if not isinstance(names, list) or not names or not isinstance(names[0], dict):
        names = [{}] + (names[1:] if isinstance(names, list) else [])
        updated["name"] = names
    primary = names[0]
    if name_edit.get("family") is not None:
        primary["family"] = name_edit["family"]
    if name_edit.get("given") is not None:
        primary["given"] = list(name_edit["given"])


def to_raw(existing_raw: _Resource, edits: Dict[str, Any]) -> _Resource:
    """
    Merge edit-form fields onto a copy of *existing_raw*.

    Recognised edit keys: ``name`` ({family, given}), ``gender``,
    ``birthDate``, ``active``, ``maritalStatus`` (display text), ``telecom``.
    Keys that are absent or None leave the document unchanged. The input
    document is never mutated.

    Args:
        existing_raw: The full remote Patient resource.
        edits:        Edited fields, e.g. ``PatientEdit.edits()``.

    Returns:
        A new resource dict ready to PUT back to the remote API.
    """
    updated = copy.deepcopy(existing_raw)

    name_edit = edits.get("name")
    if isinstance(name_edit, dict):
        _merge_name(updated, name_edit)

    for key in ("gender", "birthDate", "active"):
        if edits.get(key) is not None:
            updated[key] = edits[key]

    if edits.get("maritalStatus") is not None:
        marital = updated.get("maritalStatus")
        marital = dict(marital) if isinstance(marital, dict) else {}
        marital["text"] = edits["maritalStatus"]
        updated["maritalStatus"] = marital

    if edits.get("telecom") is not None:
        updated["telecom"] = copy.deepcopy(list(edits["telecom"]))

    logger.debug(
        "resource_mapper.to_raw: merged %s onto Patient/%s.",
        sorted(k for k, v in edits.items() if v is not None),
        existing_raw.get("id", "?"),
    )
    return updated
