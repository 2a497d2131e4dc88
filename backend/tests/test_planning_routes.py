import json

import pytest

from database import PlanningAnalysis
from subscription import get_subscription

HOUSE = ("house.jpg", b"\xff\xd8 fake jpeg", "image/jpeg")
PLAN = ("plan.png", b"\x89PNG fake", "image/png")


def _create(client, auth, mode="classic", floorplan=True, **fields):
    files = {"propertyImage": HOUSE}
    if floorplan:
        files["floorplan"] = PLAN
    data = {"address": "12 Acacia Avenue, Leeds", "postcode": "LS6 2AB", "houseNumber": "12",
            "workflowMode": mode, **fields}
    resp = client.post("/api/planning/upload", files=files, data=data, headers=auth)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _set(db, analysis_id, **fields):
    db.query(PlanningAnalysis).filter(PlanningAnalysis.id == analysis_id).update(fields)
    db.commit()


# ── Upload / CRUD ─────────────────────────────────────────────────────────────
def test_upload_creates_pending_analysis(client, auth, services, user):
    body = _create(client, auth)
    assert body["status"] == "pending"
    assert body["workflowMode"] == "classic"
    assert body["houseNumber"] == "12"
    assert f"planning-property-{user.id}-" in body["propertyImageUrl"]
    assert f"planning-floorplan-{user.id}-" in body["floorplanUrl"]
    assert body["propertyImageUrl"] in services.blob.objects


def test_upload_validation(client, auth):
    resp = client.post("/api/planning/upload", data={"postcode": "LS6 2AB"}, headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Property image is required"

    resp = client.post("/api/planning/upload", files={"propertyImage": HOUSE},
                       data={"workflowMode": "extend"}, headers=auth)
    assert resp.json()["error"] == "Floorplan upload is required for Smart Extension mode"

    resp = client.post("/api/planning/upload", files={"propertyImage": ("house.gif", b"GIF89a", "image/gif")},
                       headers=auth)
    assert resp.json()["error"] == "Invalid property image type. Allowed: JPEG, PNG, WebP"

    resp = client.post("/api/planning/upload",
                       files={"propertyImage": HOUSE, "floorplan": ("plan.pdf", b"%PDF", "application/pdf")},
                       headers=auth)
    assert resp.json()["error"] == "Invalid floorplan type. Allowed: JPEG, PNG, WebP"


def test_analyses_are_private(client, auth, other_auth):
    analysis = _create(client, auth)
    for path in ("", "/status"):
        assert client.get(f"/api/planning/{analysis['id']}{path}", headers=other_auth).status_code == 404
    assert client.post(f"/api/planning/{analysis['id']}/analyze", headers=other_auth).status_code == 404
    assert client.delete(f"/api/planning/{analysis['id']}", headers=other_auth).status_code == 404
    assert client.get("/api/planning", headers=other_auth).json() == []


def test_delete_analysis(client, auth):
    analysis = _create(client, auth)
    resp = client.delete(f"/api/planning/{analysis['id']}", headers=auth)
    assert resp.json() == {"success": True}
    assert client.get(f"/api/planning/{analysis['id']}", headers=auth).status_code == 404


# ── Classic workflow ──────────────────────────────────────────────────────────
def test_classic_workflow(client, auth, services, db, user):
    analysis = _create(client, auth)
    base = f"/api/planning/{analysis['id']}"

    body = client.post(f"{base}/analyze", headers=auth).json()
    assert body["status"] == "searching"
    assert body["propertyAnalysis"]["propertyType"] == "semi-detached"

    again = client.post(f"{base}/analyze", headers=auth)
    assert again.status_code == 400
    assert again.json()["error"] == "Analysis has already been started"

    body = client.post(f"{base}/search", headers=auth).json()
    assert body["status"] == "awaiting_selection"
    assert body["latitude"] == "53.8"
    assert body["approvalSearchResults"]["approvals"][0]["modificationType"] == "rear_extension"

    body = client.post(f"{base}/select", json={"modificationType": "rear_extension"}, headers=auth).json()
    assert body["selectedModification"] == "rear_extension"

    body = client.post(f"{base}/generate", headers=auth).json()
    assert body["status"] == "completed"
    assert body["generatedExteriorUrl"] == "https://cdn.example/exterior.png"
    assert body["generatedFloorplanUrl"] == "https://cdn.example/floorplan.png"
    assert ("visualization", "rear_extension", "Rear extension") in services.gemini.calls
    assert ("floorplan", "rear_extension", 200) in services.gemini.calls
    assert get_subscription(db, user.id).generations_used == 1


def test_analyze_failure_records_error(client, auth, services):
    services.gemini.analysis = {"success": False, "error": "Invalid property analysis response"}
    analysis = _create(client, auth)
    resp = client.post(f"/api/planning/{analysis['id']}/analyze", headers=auth)
    assert resp.status_code == 500
    body = client.get(f"/api/planning/{analysis['id']}/status", headers=auth).json()
    assert body["status"] == "failed"
    assert body["errorMessage"] == "Invalid property analysis response"


def test_search_preconditions(client, auth, db):
    analysis = _create(client, auth, address="", postcode="")
    resp = client.post(f"/api/planning/{analysis['id']}/search", headers=auth)
    assert resp.json()["error"] == "Property must be analyzed first"

    _set(db, analysis["id"], property_analysis=json.dumps({"propertyType": "terraced"}), status="searching")
    resp = client.post(f"/api/planning/{analysis['id']}/search", headers=auth)
    assert resp.json()["error"] == "Address or postcode is required for planning search"


def test_select_requires_awaiting_selection(client, auth):
    analysis = _create(client, auth)
    resp = client.post(f"/api/planning/{analysis['id']}/select",
                       json={"modificationType": "loft_conversion"}, headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Analysis is not awaiting modification selection"


def test_classic_visualization_failure(client, auth, services, db, user):
    analysis = _create(client, auth)
    _set(db, analysis["id"], status="awaiting_selection", selected_modification="dormer",
         property_analysis=json.dumps({"propertyType": "detached"}),
         approval_search_results=json.dumps({"approvals": []}))
    services.gemini.visualization = {"success": False, "error": "No image generated", "rateLimited": False}
    resp = client.post(f"/api/planning/{analysis['id']}/generate", headers=auth)
    assert resp.status_code == 500
    assert client.get(f"/api/planning/{analysis['id']}", headers=auth).json()["status"] == "failed"
    assert get_subscription(db, user.id).generations_used == 0


def test_generate_without_credits(client, auth, db, user):
    analysis = _create(client, auth)
    sub = get_subscription(db, user.id)
    sub.generations_used = 2
    db.commit()
    resp = client.post(f"/api/planning/{analysis['id']}/generate", headers=auth)
    assert resp.status_code == 403
    assert resp.json()["code"] == "NO_CREDITS"


# ── Extend workflow ───────────────────────────────────────────────────────────
def test_extend_pipeline(client, auth, services):
    analysis = _create(client, auth, mode="extend")
    base = f"/api/planning/{analysis['id']}"

    resp = client.post(f"{base}/select-option", json={"optionTier": "pdr_only"}, headers=auth)
    assert resp.json()["error"] == "Extension options must be generated first"

    body = client.post(f"{base}/extend", headers=auth).json()
    assert body["status"] == "options_ready"
    assert body["epcData"]["builtForm"] == "Semi-Detached"
    assert body["pdrAssessment"]["propertyCategory"] == "semi_detached"
    assert body["realApprovalData"]["councilName"] == "Leeds City Council"
    assert [o["tier"] for o in body["extensionOptions"]] == ["pdr_only", "moderate_planning", "maximum_extension"]
    assert set(body["costEstimate"]) == {"pdr_only", "moderate_planning", "maximum_extension"}
    assert body["partyWallAssessment"]["required"] is True
    assert "overallRisk" in body["neighbourImpact"]

    body = client.post(f"{base}/select-option", json={"optionTier": "moderate_planning"}, headers=auth).json()
    assert body["selectedOptionTier"] == "moderate_planning"

    body = client.post(f"{base}/generate", headers=auth).json()
    assert body["status"] == "completed"
    assert body["generatedOptionFloorplans"] == {"moderate_planning": "https://cdn.example/floorplan.png"}
    assert body["generatedExteriorUrl"] == "https://cdn.example/exterior.png"


def test_extend_without_epc_uses_defaults(client, auth, services):
    services.epc.result = {"success": False, "error": "No EPC records found for this postcode"}
    analysis = _create(client, auth, mode="extend")
    body = client.post(f"/api/planning/{analysis['id']}/extend", headers=auth).json()
    assert body["status"] == "options_ready"
    assert body["epcData"] is None
    assert body["pdrAssessment"]["propertyCategory"] == "semi_detached"


def test_extend_failure_marks_failed(client, auth, services):
    async def boom(postcode, address):
        raise RuntimeError("upstream exploded")

    services.perplexity.check_conservation_and_listing = boom
    analysis = _create(client, auth, mode="extend")
    resp = client.post(f"/api/planning/{analysis['id']}/extend", headers=auth)
    assert resp.status_code == 500
    assert resp.json()["error"] == "Smart extension analysis failed"
    body = client.get(f"/api/planning/{analysis['id']}", headers=auth).json()
    assert body["status"] == "failed"
    assert body["errorMessage"] == "upstream exploded"


def test_extend_preconditions(client, auth):
    classic = _create(client, auth)
    resp = client.post(f"/api/planning/{classic['id']}/extend", headers=auth)
    assert resp.json()["error"] == "This analysis is not in extend mode"

    resp = client.post(f"/api/planning/{classic['id']}/select-option", json={"optionTier": "pdr_only"},
                       headers=auth)
    assert resp.json()["error"] == "This analysis is not in extend mode"

    resp = client.post(f"/api/planning/{classic['id']}/select-option", json={"optionTier": "mansion"},
                       headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Invalid option tier")


def test_extend_refused_while_running(client, auth, db):
    analysis = _create(client, auth, mode="extend")
    _set(db, analysis["id"], status="pdr_calculating")
    resp = client.post(f"/api/planning/{analysis['id']}/extend", headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Smart extension analysis is already running"


@pytest.mark.parametrize("listed", [True, False])
def test_extend_records_heritage(client, auth, services, listed):
    services.perplexity.heritage = {
        "isConservationArea": True, "isListedBuilding": listed,
        "listedBuildingGrade": "II" if listed else None, "conservationAreaName": "Headingley",
    }
    analysis = _create(client, auth, mode="extend")
    body = client.post(f"/api/planning/{analysis['id']}/extend", headers=auth).json()
    assert body["isConservationArea"] is True
    assert body["isListedBuilding"] is listed
    assert body["conservationAreaName"] == "Headingley"


def test_extend_generate_survives_floorplan_rate_limit(client, auth, services, db, user):
    services.gemini.floorplan = {"success": False, "error": "429 Too Many Requests", "rateLimited": True}
    analysis = _create(client, auth, mode="extend")
    base = f"/api/planning/{analysis['id']}"
    client.post(f"{base}/extend", headers=auth)
    client.post(f"{base}/select-option", json={"optionTier": "pdr_only"}, headers=auth)

    resp = client.post(f"{base}/generate", headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["generatedOptionFloorplans"] == {"pdr_only": None}
    assert body["generatedFloorplanUrl"] is None
    assert body["generatedExteriorUrl"] == "https://cdn.example/exterior.png"
    assert get_subscription(db, user.id).generations_used == 1
