"""
test_resource_mapper.py
-----------------------
ChartBridge — EHR Patient Dashboard Proxy — Test Suite for resource_mapper.py
-----------------------------------------------------------------------------
Tests cover:
    - to_view on a complete resource
    - to_view fallback completeness (no None anywhere in the view)
    - find_extension_value two-level lookup
    - to_raw merge semantics: edited values applied, unedited fields untouched,
      input never mutated
    - to_list_page pagination link fidelity

Run:
    pytest tests/test_resource_mapper.py -v --tb=short

Project: ChartBridge — EHR Patient Dashboard Proxy
"""

import copy
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from resource_mapper import (
    ETHNICITY_EXTENSION_URL,
    ETHNICITY_TEXT_URL,
    find_extension_value,
    to_detail,
    to_list_page,
    to_raw,
    to_view,
)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _patient(patient_id="42"):
    """A fully populated remote Patient resource."""
    return {
        "resourceType": "Patient",
        "id": patient_id,
        "meta": {"lastUpdated": "2024-05-01T10:00:00Z", "versionId": "3"},
        "extension": [
            {"url": "http://example.org/other", "valueString": "x"},
            {
                "url": ETHNICITY_EXTENSION_URL,
                "extension": [
                    {"url": "ombCategory", "valueCoding": {"code": "2186-5"}},
                    {"url": ETHNICITY_TEXT_URL, "valueString": "Not Hispanic or Latino"},
                ],
            },
        ],
        "identifier": [
            {"system": "urn:mrn", "value": "MRN-001"},
            {"system": "urn:ssn", "value": "999-99-9999"},
        ],
        "active": True,
        "name": [{"use": "official", "prefix": ["Ms."], "family": "Rivera", "given": ["Ana", "Maria"]}],
        "telecom": [{"system": "phone", "value": "555-0100", "use": "home", "rank": "1"}],
        "gender": "female",
        "birthDate": "1980-02-14",
        "deceasedBoolean": False,
        "maritalStatus": {
            "coding": [{"system": "http://terminology.hl7.org/CodeSystem/v3-MaritalStatus", "code": "M"}],
            "text": "Married",
        },
        "address": [{"use": "home", "line": ["1 Main St"], "city": "Springfield", "state": "IL",
                     "postalCode": "62701", "country": "US"}],
    }


def _walk(value):
    """Yield every leaf of a nested dict/list structure."""
    if isinstance(value, dict):
        for v in value.values():
            yield from _walk(v)
    elif isinstance(value, list):
        for v in value:
            yield from _walk(v)
    else:
        yield value


# ── to_view ────────────────────────────────────────────────────────────────────

def test_to_view_full_resource():
    """Every populated field should be projected onto the view."""
    view = to_view(_patient())
    assert view["id"] == "42"
    assert view["identifier"] == "MRN-001"
    assert view["name"] == {"family": "Rivera", "given": ["Ana", "Maria"], "full": "Ana Rivera"}
    assert view["gender"] == "female"
    assert view["birthDate"] == "1980-02-14"
    assert view["active"] is True
    assert view["deceased"] is False
    assert view["maritalStatus"] == "Married"
    assert view["lastUpdated"] == "2024-05-01T10:00:00Z"
    assert view["telecom"][0]["value"] == "555-0100"
    assert view["address"][0]["city"] == "Springfield"
    assert view["ethnicity"] == "Not Hispanic or Latino"


def test_to_view_all_fields_absent_uses_fallbacks():
    """An empty resource should map to the documented fallback for every field."""
    view = to_view({})
    assert view == {
        "id": "N/A",
        "identifier": "N/A",
        "name": {"family": "Unknown", "given": ["Unknown"], "full": "Unknown Unknown"},
        "gender": "unknown",
        "birthDate": "Unknown",
        "active": False,
        "deceased": False,
        "maritalStatus": "Unknown",
        "lastUpdated": "Unknown",
        "telecom": [],
        "address": [],
        "ethnicity": "Unspecified",
    }


def test_to_view_never_contains_none():
    """Explicit nulls in the source must not leak into the view."""
    raw = {
        "id": None, "identifier": [{"value": None}], "name": [{"family": None, "given": None}],
        "gender": None, "birthDate": None, "active": None, "deceasedBoolean": None,
        "maritalStatus": None, "meta": None, "telecom": None, "address": None, "extension": None,
    }
    assert None not in list(_walk(to_view(raw)))
    assert None not in list(_walk(to_view(None)))


def test_to_view_partial_name():
    """A family name without given names falls back per part."""
    view = to_view({"name": [{"family": "Smith"}]})
    assert view["name"]["given"] == ["Unknown"]
    assert view["name"]["full"] == "Unknown Smith"


def test_to_view_is_derived_fresh():
    """Mutating one view must not affect a later projection."""
    raw = _patient()
    first = to_view(raw)
    first["telecom"].append({"system": "email"})
    assert len(to_view(raw)["telecom"]) == 1
    assert len(raw["telecom"]) == 1


# ── find_extension_value ──────────────────────────────────────────────────────

def test_find_extension_value_found():
    """Two-level lookup returns the nested valueString."""
    value = find_extension_value(_patient()["extension"], ETHNICITY_EXTENSION_URL, ETHNICITY_TEXT_URL)
    assert value == "Not Hispanic or Latino"


def test_find_extension_value_missing_levels():
    """Any missing level yields None."""
    assert find_extension_value(None, ETHNICITY_EXTENSION_URL, ETHNICITY_TEXT_URL) is None
    assert find_extension_value([], ETHNICITY_EXTENSION_URL, ETHNICITY_TEXT_URL) is None
    assert find_extension_value([{"url": ETHNICITY_EXTENSION_URL}], ETHNICITY_EXTENSION_URL, "text") is None
    no_text = [{"url": ETHNICITY_EXTENSION_URL, "extension": [{"url": "ombCategory"}]}]
    assert find_extension_value(no_text, ETHNICITY_EXTENSION_URL, "text") is None


def test_to_view_ethnicity_unspecified_without_extension():
    """Missing ethnicity extension maps to 'Unspecified'."""
    raw = _patient()
    raw["extension"] = [{"url": "http://example.org/other", "valueString": "x"}]
    assert to_view(raw)["ethnicity"] == "Unspecified"


# ── to_raw ─────────────────────────────────────────────────────────────────────

def test_to_raw_applies_edits():
    """Edited fields should appear in the updated document."""
    edits = {
        "name": {"family": "Rivera-Lopez", "given": ["Ana"]},
        "gender": "other",
        "birthDate": "1981-03-15",
        "active": False,
        "maritalStatus": "Divorced",
        "telecom": [{"system": "email", "value": "ana@example.org", "use": "work"}],
    }
    updated = to_raw(_patient(), edits)
    assert updated["name"][0]["family"] == "Rivera-Lopez"
    assert updated["name"][0]["given"] == ["Ana"]
    assert updated["gender"] == "other"
    assert updated["birthDate"] == "1981-03-15"
    assert updated["active"] is False
    assert updated["maritalStatus"]["text"] == "Divorced"
    assert updated["telecom"] == [{"system": "email", "value": "ana@example.org", "use": "work"}]


def test_to_raw_round_trip_preserves_unedited_fields():
    """Fields the form does not cover must be byte-for-byte identical after write-back."""
    raw = _patient()
    edits = {"name": {"family": "Doe"}, "gender": "male", "maritalStatus": "Single"}
    updated = to_raw(raw, edits)

    view = to_view(updated)
    assert view["name"]["family"] == "Doe"
    assert view["name"]["given"] == ["Ana", "Maria"]
    assert view["gender"] == "male"
    assert view["maritalStatus"] == "Single"

    for key in ("address", "identifier", "extension", "meta", "telecom", "birthDate", "deceasedBoolean"):
        assert json.dumps(updated[key], sort_keys=True) == json.dumps(raw[key], sort_keys=True), key
    assert updated["name"][0]["use"] == "official"
    assert updated["name"][0]["prefix"] == ["Ms."]
    assert updated["maritalStatus"]["coding"] == raw["maritalStatus"]["coding"]


def test_to_raw_does_not_mutate_input():
    """The existing document is copied, never edited in place."""
    raw = _patient()
    snapshot = copy.deepcopy(raw)
    to_raw(raw, {"name": {"family": "Doe"}, "telecom": [], "maritalStatus": "Single"})
    assert raw == snapshot


def test_to_raw_no_edits_is_identity():
    """An empty edit set returns an equal document."""
    raw = _patient()
    assert to_raw(raw, {}) == raw


def test_to_raw_creates_missing_name_and_marital_status():
    """Edits onto a sparse document create the containers they need."""
    updated = to_raw({"resourceType": "Patient", "id": "7"},
                     {"name": {"family": "New", "given": ["Person"]}, "maritalStatus": "Widowed"})
    assert updated["name"] == [{"family": "New", "given": ["Person"]}]
    assert updated["maritalStatus"] == {"text": "Widowed"}


# ── to_detail / to_list_page ──────────────────────────────────────────────────

def test_to_detail_keeps_raw():
    """Detail envelope retains the raw document for editing."""
    raw = _patient()
    detail = to_detail(raw)
    assert detail["id"] == "42"
    assert detail["resourceType"] == "Patient"
    assert detail["raw"] is raw
    assert detail["formatted"]["name"]["full"] == "Ana Rivera"


def test_list_page_only_next_link():
    """A bundle with only a next link means hasNext=True, hasPrev=False."""
    bundle = {
        "resourceType": "Bundle",
        "total": 45,
        "link": [
            {"relation": "self", "url": "https://ehr.test/Patient?page=1"},
            {"relation": "next", "url": "https://ehr.test/Patient?page=2"},
        ],
        "entry": [{"fullUrl": "https://ehr.test/Patient/42", "resource": _patient()}],
    }
    page = to_list_page(bundle, 1)
    assert page["pagination"] == {"currentPage": 1, "hasNext": True, "hasPrev": False}
    assert page["links"]["next"] == "https://ehr.test/Patient?page=2"
    assert page["links"]["prev"] == ""
    assert page["total"] == 45
    assert page["patients"][0]["fullUrl"] == "https://ehr.test/Patient/42"
    assert page["patients"][0]["identifier"] == "MRN-001"


def test_list_page_navigation_ignores_counts():
    """Navigation comes from links alone even when counts suggest otherwise."""
    bundle = {"total": 1000, "link": [{"relation": "previous", "url": "u"}], "entry": []}
    page = to_list_page(bundle, 3)
    assert page["pagination"] == {"currentPage": 3, "hasNext": False, "hasPrev": True}


def test_list_page_empty_bundle():
    """An empty bundle yields an empty, well-formed page."""
    page = to_list_page({}, 1)
    assert page["total"] == 0
    assert page["patients"] == []
    assert page["pagination"]["hasNext"] is False
    assert None not in list(_walk(page))
