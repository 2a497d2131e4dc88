import pytest

from database import FloorplanModel
from subscription import get_subscription


def _project(client, auth, name="Cottage"):
    resp = client.post("/api/projects", json={"name": name}, headers=auth)
    assert resp.status_code == 201
    return resp.json()


def _upload(client, auth, project_id):
    resp = client.post(
        f"/api/projects/{project_id}/upload",
        files={"file": ("plan.png", b"\x89PNG fake", "image/png")},
        headers=auth,
    )
    assert resp.status_code == 201
    return resp.json()


def _set(db, model_id, **fields):
    db.query(FloorplanModel).filter(FloorplanModel.id == model_id).update(fields)
    db.commit()


@pytest.fixture
def uploaded(client, auth):
    project = _project(client, auth)
    return _upload(client, auth, project["id"])


# ── Projects ──────────────────────────────────────────────────────────────────
def test_project_crud(client, auth):
    assert client.post("/api/projects", json={"name": "  "}, headers=auth).status_code == 400
    project = _project(client, auth)
    assert project["models"] == []

    listed = client.get("/api/projects", headers=auth).json()
    assert [p["id"] for p in listed] == [project["id"]]

    assert client.delete(f"/api/projects/{project['id']}", headers=auth).status_code == 204
    assert client.get(f"/api/projects/{project['id']}", headers=auth).status_code == 404


def test_projects_are_private(client, auth, other_auth):
    project = _project(client, auth)
    assert client.get(f"/api/projects/{project['id']}", headers=other_auth).status_code == 404
    assert client.get("/api/projects", headers=other_auth).json() == []


def test_invalid_ids_are_400(client, auth):
    resp = client.get("/api/projects/abc", headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid project ID"
    resp = client.post("/api/models/abc/generate-isometric", headers=auth)
    assert resp.json()["error"] == "Invalid model ID"


def test_upload_validation(client, auth):
    project = _project(client, auth)
    url = f"/api/projects/{project['id']}/upload"
    resp = client.post(url, headers=auth)
    assert resp.json()["error"] == "No file uploaded"
    resp = client.post(url, files={"file": ("notes.txt", b"hello", "text/plain")}, headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Only image and PDF files are allowed"


def test_upload_creates_model(client, auth, services):
    project = _project(client, auth)
    model = _upload(client, auth, project["id"])
    assert model["status"] == "uploaded"
    assert model["originalUrl"] in services.blob.objects
    assert "/floorplan-" in model["originalUrl"]
    assert client.get(f"/api/projects/{project['id']}", headers=auth).json()["models"][0]["id"] == model["id"]


def test_upload_blob_failure(client, auth, services):
    project = _project(client, auth)
    services.blob.fail_put = True
    resp = client.post(
        f"/api/projects/{project['id']}/upload",
        files={"file": ("plan.png", b"data", "image/png")},
        headers=auth,
    )
    assert resp.status_code == 500
    assert resp.json()["error"] == "Failed to upload file"


# ── Isometric ─────────────────────────────────────────────────────────────────
def test_isometric_happy_path(client, auth, uploaded, services, db, user):
    resp = client.post(
        f"/api/models/{uploaded['id']}/generate-isometric", json={"prompt": "scandi"}, headers=auth
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "isometric_ready"
    assert body["isometricUrl"] == "https://cdn.example/isometric.png"
    assert services.gemini.calls == [("isometric", "scandi")]
    assert get_subscription(db, user.id).generations_used == 1


def test_isometric_without_body(client, auth, uploaded):
    resp = client.post(f"/api/models/{uploaded['id']}/generate-isometric", headers=auth)
    assert resp.status_code == 200


def test_isometric_refused_while_generating(client, auth, uploaded, db):
    _set(db, uploaded["id"], status="generating_isometric")
    resp = client.post(f"/api/models/{uploaded['id']}/generate-isometric", headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Generation already in progress"


def test_isometric_rate_limited(client, auth, uploaded, services, db, user):
    services.gemini.isometric = {"success": False, "error": "429 quota", "rateLimited": True}
    resp = client.post(f"/api/models/{uploaded['id']}/generate-isometric", headers=auth)
    assert resp.status_code == 429
    assert client.get(f"/api/models/{uploaded['id']}/status", headers=auth).json()["status"] == "failed"
    assert get_subscription(db, user.id).generations_used == 0


def test_isometric_quota_exhausted(client, auth, uploaded, db, user):
    sub = get_subscription(db, user.id)
    sub.generations_used = sub.generations_limit
    db.commit()
    resp = client.post(f"/api/models/{uploaded['id']}/generate-isometric", headers=auth)
    assert resp.status_code == 403
    assert resp.json()["redirectTo"] == "/pricing"


def test_models_of_other_users_are_forbidden(client, other_auth, uploaded):
    resp = client.get(f"/api/models/{uploaded['id']}/status", headers=other_auth)
    assert resp.status_code == 403
    assert client.get("/api/models/9999/status", headers=other_auth).status_code == 404


# ── 3D ────────────────────────────────────────────────────────────────────────
def test_generate_3d_requires_isometric(client, auth, uploaded):
    resp = client.post(f"/api/models/{uploaded['id']}/generate-3d", headers=auth)
    assert resp.status_code == 400


def test_meshy_flow(client, auth, uploaded, services, db):
    _set(db, uploaded["id"], status="isometric_ready", isometric_url="https://cdn.example/iso.png")
    resp = client.post(f"/api/models/{uploaded['id']}/generate-3d", headers=auth)
    assert resp.status_code == 200
    assert resp.json()["status"] == "generating_3d"
    assert resp.json()["meshyTaskId"] == "task-3d"

    assert client.get(f"/api/models/{uploaded['id']}/status", headers=auth).json()["status"] == "generating_3d"

    services.meshy.status = {"success": True, "taskId": "task-3d", "status": "completed",
                             "modelUrl": "https://assets.meshy.ai/model.glb"}
    body = client.get(f"/api/models/{uploaded['id']}/status", headers=auth).json()
    assert body["status"] == "completed"
    assert body["model3dUrl"] == "https://assets.meshy.ai/model.glb"


def test_meshy_task_failure(client, auth, uploaded, services, db):
    _set(db, uploaded["id"], status="generating_3d", meshy_task_id="task-3d",
         isometric_url="https://cdn.example/iso.png")
    services.meshy.status = {"success": False, "taskId": "task-3d", "status": "failed", "error": "boom"}
    assert client.get(f"/api/models/{uploaded['id']}/status", headers=auth).json()["status"] == "failed"


def test_meshy_start_failure(client, auth, uploaded, services, db):
    _set(db, uploaded["id"], status="isometric_ready", isometric_url="https://cdn.example/iso.png")
    services.meshy.create = {"success": False, "error": "Meshy API error: 402"}
    resp = client.post(f"/api/models/{uploaded['id']}/generate-3d", headers=auth)
    assert resp.status_code == 500
    assert resp.json()["error"] == "Meshy API error: 402"


def test_trellis_flow(client, auth, uploaded, services, db):
    _set(db, uploaded["id"], status="isometric_ready", isometric_url="https://cdn.example/iso.png")
    resp = client.post(f"/api/models/{uploaded['id']}/generate-3d-trellis", headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "completed"
    assert body["model3dUrl"].endswith(f"models/{uploaded['id']}/trellis-model.glb")
    assert services.blob.objects[body["model3dUrl"]] == (b"glTF-binary", "model/gltf-binary")


def test_trellis_failure(client, auth, uploaded, services, db):
    _set(db, uploaded["id"], status="isometric_ready", isometric_url="https://cdn.example/iso.png")
    services.trellis.result = {"success": False, "error": "Space is sleeping"}
    resp = client.post(f"/api/models/{uploaded['id']}/generate-3d-trellis", headers=auth)
    assert resp.status_code == 500
    assert client.get(f"/api/models/{uploaded['id']}/status", headers=auth).json()["status"] == "failed"


# ── Retexture ─────────────────────────────────────────────────────────────────
@pytest.fixture
def completed(uploaded, db):
    _set(db, uploaded["id"], status="completed", isometric_url="https://cdn.example/iso.png",
         model_3d_url="https://assets.meshy.ai/base.glb")
    return uploaded


def test_retexture_once_only(client, auth, completed, services):
    url = f"/api/models/{completed['id']}/retexture"
    resp = client.post(url, json={"texturePrompt": "walnut floors"}, headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "retexturing"
    assert body["retextureUsed"] is True
    assert body["baseModel3dUrl"] == "https://assets.meshy.ai/base.glb"
    assert services.meshy.retexture_calls == [("https://assets.meshy.ai/base.glb", "walnut floors")]

    services.meshy.retexture_status = {"success": True, "taskId": "task-tex", "status": "completed",
                                       "modelUrl": "https://assets.meshy.ai/walnut.glb"}
    body = client.get(f"/api/models/{completed['id']}/retexture-status", headers=auth).json()
    assert body["status"] == "completed"
    assert body["model3dUrl"] == "https://assets.meshy.ai/walnut.glb"
    assert body["retextureTaskId"] is None

    resp = client.post(url, json={"texturePrompt": "marble"}, headers=auth)
    assert resp.status_code == 403
    assert resp.json()["error"] == "Retexturing limit reached"


def test_retexture_validation(client, auth, uploaded, completed):
    resp = client.post(f"/api/models/{completed['id']}/retexture", json={"texturePrompt": "  "}, headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Texture prompt is required"


def test_retexture_needs_a_model(client, auth, uploaded):
    resp = client.post(f"/api/models/{uploaded['id']}/retexture", json={"texturePrompt": "oak"}, headers=auth)
    assert resp.status_code == 400
    assert resp.json()["error"] == "3D model not yet generated"


def test_retexture_connector_failure_allows_retry(client, auth, completed, services, db, user):
    url = f"/api/models/{completed['id']}/retexture"
    services.meshy.retexture = {"success": False, "error": "Meshy API error: 500"}
    resp = client.post(url, json={"texturePrompt": "oak"}, headers=auth)
    assert resp.status_code == 500
    body = client.get(f"/api/models/{completed['id']}/status", headers=auth).json()
    assert body["status"] == "completed"
    assert body["retextureUsed"] is False
    assert body["texturePrompt"] is None
    assert get_subscription(db, user.id).generations_used == 0

    services.meshy.retexture = {"success": True, "taskId": "task-tex"}
    resp = client.post(url, json={"texturePrompt": "oak"}, headers=auth)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "retexturing"
    assert body["retextureUsed"] is True
    assert body["retextureTaskId"] == "task-tex"
    assert get_subscription(db, user.id).generations_used == 1


def test_retexture_failure_reverts_to_completed(client, auth, completed, services):
    client.post(f"/api/models/{completed['id']}/retexture", json={"texturePrompt": "oak"}, headers=auth)
    services.meshy.retexture_status = {"success": False, "taskId": "task-tex", "status": "failed"}
    body = client.get(f"/api/models/{completed['id']}/retexture-status", headers=auth).json()
    assert body["status"] == "completed"
    assert body["error"] == "Retexture failed"


def test_revert_texture(client, auth, completed, db):
    url = f"/api/models/{completed['id']}/revert-texture"
    assert client.post(url, headers=auth).status_code == 400

    _set(db, completed["id"], base_model_3d_url="https://assets.meshy.ai/base.glb",
         model_3d_url="https://assets.meshy.ai/walnut.glb", texture_prompt="walnut")
    body = client.post(url, headers=auth).json()
    assert body["model3dUrl"] == "https://assets.meshy.ai/base.glb"
    assert body["texturePrompt"] is None


# ── Proxy ─────────────────────────────────────────────────────────────────────
def test_proxy_model_host_check(client, services):
    assert client.get("/api/proxy-model").status_code == 400
    assert client.get("/api/proxy-model", params={"url": "https://evil.example/x.glb"}).status_code == 403
    assert client.get("/api/proxy-model", params={"url": "https://meshy.ai.evil.example/x"}).status_code == 403

    url = "https://store.public.blob.vercel-storage.com/models/1/trellis-model.glb"
    services.blob.objects[url] = (b"glb-bytes", "application/octet-stream")
    resp = client.get("/api/proxy-model", params={"url": url})
    assert resp.status_code == 200
    assert resp.content == b"glb-bytes"
    assert resp.headers["content-type"] == "model/gltf-binary"


# ── Method handling ───────────────────────────────────────────────────────────
@pytest.mark.parametrize("method,path", [
    ("put", "/api/projects"),
    ("get", "/api/models/1/retexture"),
    ("post", "/api/planning/1/status"),
])
def test_wrong_method_is_405(client, auth, method, path):
    resp = getattr(client, method)(path, headers=auth)
    assert resp.status_code == 405
    assert resp.json()["error"] == "Method not allowed"
