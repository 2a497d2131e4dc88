"""
Architect Studio - FastAPI Main Application
Floorplan to isometric to 3D pipeline, UK planning feasibility analysis,
and Stripe-backed generation quotas.
"""

import json
import logging
import re
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import (
    authenticate_user, clear_session_cookie, create_session_token, create_user,
    exchange_google_code, fetch_google_profile, google_oauth_url,
    require_auth, session_cookie, upsert_google_user,
)
from billing_service import BillingError
from blob_storage import BlobStorageError
from config import settings
from database import FloorplanModel, PlanningAnalysis, Project, get_db, init_db
from models import (
    CheckoutBody, HealthResponse, IsometricRequest, LoginBody, ProjectCreate, PurchaseBody,
    RegisterBody, RetextureRequest, SelectModificationBody, SelectOptionBody,
)
from pdr_rules import (
    EXTENSION_TIERS, PDRInput, assess_neighbour_impact, assess_party_wall,
    build_pdr_input_from_epc, calculate_pdr, estimate_costs, generate_extension_options,
    round_half_up,
)
from services import Services, build_services, get_services
from subscription import (
    can_user_generate, deduct_credit, ensure_credits, get_subscription,
    get_subscription_status, set_stripe_customer_id,
)
from trellis_service import TrellisError
from user_db import User
from workflow import ModelStatus as MS, PlanningStatus as PS, PreconditionFailed, advance, fail

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ── Rate Limiter ──────────────────────────────────────────────────────────────
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

FLOORPLAN_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp", "application/pdf"}
PROPERTY_TYPES  = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
PROXY_HOSTS     = ("meshy.ai", "public.blob.vercel-storage.com")
SQFT_PER_SQM    = 10.764

RATE_LIMITED = "AI service rate limit reached. Please try again later."
RETEXTURE_LIMIT = {
    "error": "Retexturing limit reached",
    "message": "Retexturing is limited to once per model",
}
NO_CREDITS = {
    "error": "No credits remaining. Please upgrade your plan to continue generating.",
    "code": "NO_CREDITS",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Architect Studio backend starting up...")
    # tests install their own store and connectors before startup
    if getattr(app.state, "db", None) is None:
        app.state.db = init_db(settings.database_url)
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(settings)
    yield
    app.state.db.dispose()
    logger.info("Architect Studio backend shutting down...")


# ── App ───────────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Architect Studio API",
    description="Floorplan visualization and UK planning feasibility",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error Handlers ────────────────────────────────────────────────────────────
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 405:
        content = {"error": "Method not allowed"}
    elif isinstance(exc.detail, dict):
        content = dict(exc.detail)
    else:
        content = {"error": exc.detail}
    content["status_code"] = exc.status_code
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ())]
    if loc and loc[0] == "path":
        # model_id -> "Invalid model ID"
        message = f"Invalid {loc[-1].replace('_id', ' ID').replace('_', ' ')}"
    else:
        field = loc[-1] if loc else "body"
        message = f"Invalid request: {field}: {first.get('msg', 'invalid value')}"
    return JSONResponse(status_code=400, content={"error": message, "status_code": 400})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error. Please try again.", "status_code": 500},
    )


# ── Helpers ───────────────────────────────────────────────────────────────────
def _now_ms() -> int:
    return int(time.time() * 1000)


def _ext(filename: Optional[str], content_type: str) -> str:
    if filename and "." in filename:
        return filename.rsplit(".", 1)[-1].lower()
    return content_type.split("/")[-1] or "png"


def _base_url(request: Request) -> str:
    if settings.app_url:
        return settings.app_url.rstrip("/")
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("host", request.url.netloc)
    return f"{proto}://{host}"


def _with_cookie(content: dict, cookie: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers={"Set-Cookie": cookie})


def _owned_project(db: Session, project_id: int, user: User) -> Project:
    project = db.query(Project).filter(Project.id == project_id, Project.user_id == user.id).first()
    if project is None:
        raise HTTPException(404, "Project not found")
    return project


def _owned_model(db: Session, model_id: int, user: User) -> FloorplanModel:
    model = db.get(FloorplanModel, model_id)
    if model is None:
        raise HTTPException(404, "Model not found")
    if model.project is None or model.project.user_id != user.id:
        raise HTTPException(403, "Access denied")
    return model


def _owned_analysis(db: Session, analysis_id: int, user: User) -> PlanningAnalysis:
    analysis = (
        db.query(PlanningAnalysis)
        .filter(PlanningAnalysis.id == analysis_id, PlanningAnalysis.user_id == user.id)
        .first()
    )
    if analysis is None:
        raise HTTPException(404, "Analysis not found")
    return analysis


def _save(db: Session, entity, **fields):
    for key, value in fields.items():
        setattr(entity, key, value)
    db.commit()
    db.refresh(entity)
    return entity


def _spend_credit(db: Session, user_id: str):
    if not deduct_credit(db, user_id):
        # generation already happened; the quota gate ran before it
        logger.warning(f"[SUBSCRIPTION] {user_id} finished a generation with no credit left")


# ── Health Check ──────────────────────────────────────────────────────────────
@app.get("/api/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """Health check endpoint for load balancer probes."""
    return HealthResponse(
        status="healthy",
        version="1.0.0",
        services={
            "gemini": "configured" if settings.gemini_api_key else "not_configured",
            "meshy": "configured" if settings.meshy_api_key else "not_configured",
            "perplexity": "configured" if settings.perplexity_api_key else "not_configured",
            "stripe": "configured" if settings.stripe_secret_key else "not_configured",
            "blob": "configured" if settings.blob_token else "not_configured",
        },
    )


# ════════════════════════════════════════════════════════════════════════════════
# AUTH ROUTES
# ════════════════════════════════════════════════════════════════════════════════

@app.post("/api/auth/register", tags=["Auth"])
async def register(body: RegisterBody, db: Session = Depends(get_db)):
    """Create an email/password account and start a session."""
    if not body.email or not body.password:
        raise HTTPException(400, "Email and password are required")
    if not EMAIL_RE.match(body.email.strip()):
        raise HTTPException(400, "Invalid email format")
    if len(body.password) < 8:
        raise HTTPException(400, "Password must be at least 8 characters")
    user = create_user(db, body.email, body.password, body.first_name, body.last_name)
    token = create_session_token(user.id, user.email)
    return _with_cookie(user.to_dict(), session_cookie(token), status_code=201)


@app.post("/api/auth/email-login", tags=["Auth"])
async def email_login(body: LoginBody, db: Session = Depends(get_db)):
    if not body.email or not body.password:
        raise HTTPException(400, "Email and password are required")
    user = authenticate_user(db, body.email, body.password)
    token = create_session_token(user.id, user.email)
    logger.info(f"[AUTH] email login for {user.id}")
    return _with_cookie(user.to_dict(), session_cookie(token))


def _google_redirect_uri(request: Request) -> str:
    return settings.google_redirect_uri or str(request.url_for("auth_callback"))


@app.get("/api/auth/login", tags=["Auth"])
async def google_login(request: Request):
    """Redirect to the Google consent screen."""
    return RedirectResponse(google_oauth_url(_google_redirect_uri(request)), status_code=302)


@app.get("/api/auth/callback", tags=["Auth"])
async def auth_callback(request: Request, code: Optional[str] = None, db: Session = Depends(get_db)):
    if not code:
        return RedirectResponse("/?error=no_code", status_code=302)
    try:
        tokens = await exchange_google_code(code, _google_redirect_uri(request))
        profile = await fetch_google_profile(tokens["access_token"])
        user = upsert_google_user(db, profile)
    except (httpx.HTTPError, KeyError, ValueError) as e:
        logger.error(f"[AUTH] Google callback failed: {e}")
        return RedirectResponse("/?error=auth_failed", status_code=302)
    response = RedirectResponse("/", status_code=302)
    response.headers["Set-Cookie"] = session_cookie(create_session_token(user.id, user.email))
    return response


@app.get("/api/auth/user", tags=["Auth"])
async def current_user(user: User = Depends(require_auth)):
    return user.to_dict()


@app.get("/api/auth/logout", tags=["Auth"])
async def logout():
    response = RedirectResponse("/", status_code=302)
    response.headers["Set-Cookie"] = clear_session_cookie()
    return response


# ════════════════════════════════════════════════════════════════════════════════
# PROJECT ROUTES
# ════════════════════════════════════════════════════════════════════════════════

@app.get("/api/projects", tags=["Projects"])
async def list_projects(user: User = Depends(require_auth), db: Session = Depends(get_db)):
    projects = (
        db.query(Project)
        .filter(Project.user_id == user.id)
        .order_by(Project.last_modified.desc())
        .all()
    )
    return [p.to_dict(include_models=True) for p in projects]


@app.post("/api/projects", status_code=201, tags=["Projects"])
async def create_project(body: ProjectCreate, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    name = (body.name or "").strip()
    if not name:
        raise HTTPException(400, "Project name is required")
    project = Project(user_id=user.id, name=name)
    db.add(project)
    db.commit()
    db.refresh(project)
    return project.to_dict(include_models=True)


@app.get("/api/projects/{project_id}", tags=["Projects"])
async def get_project(project_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    return _owned_project(db, project_id, user).to_dict(include_models=True)


@app.delete("/api/projects/{project_id}", status_code=204, tags=["Projects"])
async def delete_project(project_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    project = _owned_project(db, project_id, user)
    db.delete(project)
    db.commit()
    return Response(status_code=204)


@app.post("/api/projects/{project_id}/upload", status_code=201, tags=["Projects"])
async def upload_floorplan(
    project_id: int,
    file: Optional[UploadFile] = File(None),
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Store a floorplan image/PDF and create a Model in `uploaded` state."""
    project = _owned_project(db, project_id, user)
    if file is None or not file.filename:
        raise HTTPException(400, "No file uploaded")
    content_type = (file.content_type or "").lower()
    if content_type not in FLOORPLAN_TYPES:
        raise HTTPException(400, "Only image and PDF files are allowed")
    data = await file.read()
    if not data:
        raise HTTPException(400, "No file uploaded")

    name = f"floorplan-{_now_ms()}-{secrets.token_hex(4)}.{_ext(file.filename, content_type)}"
    try:
        url = await services.blob.put(name, data, content_type)
    except BlobStorageError as e:
        logger.error(f"[UPLOAD] {e}")
        raise HTTPException(500, "Failed to upload file")

    model = FloorplanModel(project_id=project.id, original_url=url, status=MS.uploaded.value)
    db.add(model)
    project.last_modified = datetime.now(timezone.utc)
    db.commit()
    db.refresh(model)
    logger.info(f"[UPLOAD] model {model.id} created in project {project.id}")
    return model.to_dict()


# ════════════════════════════════════════════════════════════════════════════════
# MODEL ROUTES  (isometric -> 3D -> retexture)
# ════════════════════════════════════════════════════════════════════════════════

@app.post("/api/models/{model_id}/generate-isometric", tags=["Models"])
@limiter.limit("10/minute")
async def generate_isometric(
    request: Request,
    model_id: int,
    body: Optional[IsometricRequest] = None,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Render the uploaded floorplan as an isometric cutaway (one generation credit)."""
    if not services.gemini.configured:
        raise HTTPException(500, "AI service not configured")
    ensure_credits(db, user.id)
    model = _owned_model(db, model_id, user)
    prompt = (body.prompt if body else None) or None

    try:
        advance(
            db, model, (MS.uploaded, MS.isometric_ready, MS.failed), MS.generating_isometric,
            isometric_prompt=prompt,
        )
    except PreconditionFailed:
        raise HTTPException(400, "Generation already in progress")

    try:
        image, mime_type = await services.blob.fetch(model.original_url)
    except BlobStorageError as e:
        logger.error(f"[ISOMETRIC] model {model.id}: {e}")
        fail(db, model)
        raise HTTPException(500, "Failed to fetch original image")

    result = await services.gemini.generate_isometric_floorplan(image, mime_type, prompt)
    if not result["success"]:
        fail(db, model)
        if result.get("rateLimited"):
            raise HTTPException(429, RATE_LIMITED)
        raise HTTPException(500, {
            "error": "Failed to generate isometric view",
            "details": result.get("error"),
        })

    _spend_credit(db, user.id)
    advance(db, model, MS.generating_isometric, MS.isometric_ready, isometric_url=result["imageUrl"])
    logger.info(f"[ISOMETRIC] model {model.id} ready")
    return model.to_dict()


@app.post("/api/models/{model_id}/generate-3d", tags=["Models"])
@limiter.limit("10/minute")
async def generate_3d(
    request: Request,
    model_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Start a Meshy image-to-3D task from the isometric render; poll /status for the result."""
    model = _owned_model(db, model_id, user)
    if not model.isometric_url:
        raise HTTPException(400, "Isometric image not yet generated")
    try:
        advance(db, model, (MS.isometric_ready, MS.completed, MS.failed), MS.generating_3d)
    except PreconditionFailed:
        raise HTTPException(400, "3D generation already in progress")

    result = await services.meshy.create_image_to_3d_task(model.isometric_url)
    if not result["success"]:
        fail(db, model)
        raise HTTPException(500, result.get("error") or "Failed to start 3D generation")

    _save(db, model, meshy_task_id=result["taskId"])
    return model.to_dict()


@app.post("/api/models/{model_id}/generate-3d-trellis", tags=["Models"])
@limiter.limit("5/minute")
async def generate_3d_trellis(
    request: Request,
    model_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Synchronous TRELLIS generation; the GLB is copied to blob storage before returning."""
    model = _owned_model(db, model_id, user)
    if not model.isometric_url:
        raise HTTPException(400, "Isometric image not yet generated")
    try:
        advance(db, model, (MS.isometric_ready, MS.completed, MS.failed), MS.generating_3d)
    except PreconditionFailed:
        raise HTTPException(400, "3D generation already in progress")

    result = await services.trellis.generate_trellis_3d(model.isometric_url)
    if not result["success"]:
        fail(db, model)
        raise HTTPException(500, result.get("error") or "Failed to generate 3D model with TRELLIS")

    try:
        glb = await services.trellis.download_glb(result["glbUrl"])
        url = await services.blob.put(f"models/{model.id}/trellis-model.glb", glb, "model/gltf-binary")
    except (TrellisError, BlobStorageError) as e:
        logger.error(f"[TRELLIS] model {model.id}: {e}")
        fail(db, model)
        raise HTTPException(500, str(e))

    advance(
        db, model, MS.generating_3d, MS.completed,
        model_3d_url=url, base_model_3d_url=None, texture_prompt=None,
    )
    return model.to_dict()


@app.get("/api/models/{model_id}/status", tags=["Models"])
async def model_status(
    model_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Poll the Meshy task while the model is generating_3d."""
    model = _owned_model(db, model_id, user)
    if model.status != MS.generating_3d.value or not model.meshy_task_id:
        return model.to_dict()

    task = await services.meshy.check_meshy_task_status(model.meshy_task_id)
    try:
        if task["status"] == "completed" and task.get("modelUrl"):
            advance(
                db, model, MS.generating_3d, MS.completed,
                model_3d_url=task["modelUrl"], base_model_3d_url=None, texture_prompt=None,
            )
        elif task["status"] == "failed":
            logger.warning(f"[MESHY] model {model.id} task failed: {task.get('error')}")
            advance(db, model, MS.generating_3d, MS.failed)
    except PreconditionFailed:
        # another poll already recorded the outcome
        pass
    return model.to_dict()


@app.post("/api/models/{model_id}/retexture", tags=["Models"])
@limiter.limit("10/minute")
async def retexture(
    request: Request,
    model_id: int,
    body: RetextureRequest,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Start the single permitted retexture for a completed model (one generation credit)."""
    texture_prompt = (body.texture_prompt or "").strip()
    if not texture_prompt:
        raise HTTPException(400, "Texture prompt is required")
    model = _owned_model(db, model_id, user)
    if not model.model_3d_url:
        raise HTTPException(400, "3D model not yet generated")
    if model.retexture_used:
        raise HTTPException(403, RETEXTURE_LIMIT)
    ensure_credits(db, user.id)

    source_url = model.model_3d_url
    try:
        advance(
            db, model, MS.completed, MS.retexturing,
            conditions=(FloorplanModel.retexture_used.is_(False),),
            texture_prompt=texture_prompt,
            base_model_3d_url=model.base_model_3d_url or model.model_3d_url,
        )
    except PreconditionFailed:
        if model.retexture_used:
            raise HTTPException(403, RETEXTURE_LIMIT)
        raise HTTPException(400, "Model must be completed before retexturing")

    result = await services.meshy.create_retexture_task(source_url, texture_prompt)
    if not result["success"]:
        # retexture_used was never set, so the user can try again
        advance(db, model, MS.retexturing, MS.completed, texture_prompt=None)
        raise HTTPException(500, result.get("error") or "Failed to start retexturing")

    _spend_credit(db, user.id)
    _save(db, model, retexture_task_id=result["taskId"], retexture_used=True)
    return model.to_dict()


@app.get("/api/models/{model_id}/retexture-status", tags=["Models"])
async def retexture_status(
    model_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    model = _owned_model(db, model_id, user)
    if model.status != MS.retexturing.value or not model.retexture_task_id:
        return model.to_dict()

    task = await services.meshy.check_retexture_task_status(model.retexture_task_id)
    try:
        if task["status"] == "completed" and task.get("modelUrl"):
            advance(
                db, model, MS.retexturing, MS.completed,
                model_3d_url=task["modelUrl"], retexture_task_id=None,
            )
        elif task["status"] == "failed":
            advance(db, model, MS.retexturing, MS.completed, retexture_task_id=None)
            return {**model.to_dict(), "error": "Retexture failed"}
    except PreconditionFailed:
        pass
    return model.to_dict()


@app.post("/api/models/{model_id}/revert-texture", tags=["Models"])
async def revert_texture(model_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    """Restore the pre-retexture model."""
    model = _owned_model(db, model_id, user)
    if not model.base_model_3d_url:
        raise HTTPException(400, "No base model to revert to")
    try:
        advance(
            db, model, MS.completed, MS.completed,
            model_3d_url=model.base_model_3d_url, texture_prompt=None,
        )
    except PreconditionFailed:
        raise HTTPException(400, "Model is busy; try again when retexturing finishes")
    return model.to_dict()


@app.get("/api/proxy-model", tags=["Models"])
async def proxy_model(url: Optional[str] = None, services: Services = Depends(get_services)):
    """Same-origin passthrough for GLB files hosted by Meshy or Vercel Blob."""
    if not url:
        raise HTTPException(400, "URL parameter required")
    try:
        host = httpx.URL(url).host or ""
    except httpx.InvalidURL:
        host = ""
    if not any(host == h or host.endswith("." + h) for h in PROXY_HOSTS):
        raise HTTPException(403, "URL not allowed")
    try:
        data, _ = await services.blob.fetch(url)
    except BlobStorageError as e:
        logger.error(f"[PROXY] {e}")
        raise HTTPException(500, "Failed to proxy model")
    return Response(
        content=data,
        media_type="model/gltf-binary",
        headers={"Cache-Control": "public, max-age=3600"},
    )


# ════════════════════════════════════════════════════════════════════════════════
# PLANNING ROUTES
# ════════════════════════════════════════════════════════════════════════════════

async def _read_upload(upload: Optional[UploadFile]) -> Optional[bytes]:
    if upload is None:
        return None
    data = await upload.read()
    return data or None


@app.post("/api/planning/upload", status_code=201, tags=["Planning"])
async def upload_planning(
    property_image: Optional[UploadFile] = File(None, alias="propertyImage"),
    floorplan: Optional[UploadFile] = File(None),
    address: str = Form(""),
    postcode: str = Form(""),
    house_number: str = Form("", alias="houseNumber"),
    workflow_mode: str = Form("classic", alias="workflowMode"),
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Create a planning analysis from a property photo and an optional floorplan."""
    mode = "extend" if workflow_mode.strip() == "extend" else "classic"
    property_bytes = await _read_upload(property_image)
    floorplan_bytes = await _read_upload(floorplan)

    if mode == "extend" and floorplan_bytes is None:
        raise HTTPException(400, "Floorplan upload is required for Smart Extension mode")
    if property_bytes is None:
        raise HTTPException(400, "Property image is required")
    property_type = property_image.content_type or "image/png"
    if property_type not in PROPERTY_TYPES:
        raise HTTPException(400, "Invalid property image type. Allowed: JPEG, PNG, WebP")
    if floorplan_bytes is not None and (floorplan.content_type or "image/png") not in PROPERTY_TYPES:
        raise HTTPException(400, "Invalid floorplan type. Allowed: JPEG, PNG, WebP")

    try:
        property_url = await services.blob.put(
            f"planning-property-{user.id}-{_now_ms()}.{_ext(property_image.filename, property_type)}",
            property_bytes, property_type,
        )
        floorplan_url = None
        if floorplan_bytes is not None:
            floorplan_type = floorplan.content_type or "image/png"
            floorplan_url = await services.blob.put(
                f"planning-floorplan-{user.id}-{_now_ms()}.{_ext(floorplan.filename, floorplan_type)}",
                floorplan_bytes, floorplan_type,
            )
    except BlobStorageError as e:
        logger.error(f"[PLANNING] upload failed for {user.id}: {e}")
        raise HTTPException(500, "Failed to upload planning files")

    analysis = PlanningAnalysis(
        user_id=user.id,
        property_image_url=property_url,
        floorplan_url=floorplan_url,
        address=address.strip() or None,
        postcode=postcode.strip() or None,
        house_number=house_number.strip() or None,
        workflow_mode=mode,
        status=PS.pending.value,
    )
    db.add(analysis)
    db.commit()
    db.refresh(analysis)
    logger.info(f"[PLANNING] analysis {analysis.id} created ({mode})")
    return analysis.to_dict()


@app.get("/api/planning", tags=["Planning"])
async def list_planning(user: User = Depends(require_auth), db: Session = Depends(get_db)):
    analyses = (
        db.query(PlanningAnalysis)
        .filter(PlanningAnalysis.user_id == user.id)
        .order_by(PlanningAnalysis.created_at.desc())
        .all()
    )
    return [a.to_dict() for a in analyses]


@app.get("/api/planning/{analysis_id}", tags=["Planning"])
async def get_planning(analysis_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    return _owned_analysis(db, analysis_id, user).to_dict()


@app.delete("/api/planning/{analysis_id}", tags=["Planning"])
async def delete_planning(analysis_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    analysis = _owned_analysis(db, analysis_id, user)
    db.delete(analysis)
    db.commit()
    logger.info(f"[PLANNING] analysis {analysis_id} deleted")
    return {"success": True}


@app.get("/api/planning/{analysis_id}/status", tags=["Planning"])
async def planning_status(analysis_id: int, user: User = Depends(require_auth), db: Session = Depends(get_db)):
    return _owned_analysis(db, analysis_id, user).to_dict()


@app.post("/api/planning/{analysis_id}/analyze", tags=["Planning"])
async def analyze_planning(
    analysis_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Classic workflow step 1: Gemini describes the property from its photo."""
    analysis = _owned_analysis(db, analysis_id, user)
    try:
        advance(db, analysis, PS.pending, PS.analyzing)
    except PreconditionFailed:
        raise HTTPException(400, "Analysis has already been started")

    try:
        image, mime_type = await services.blob.fetch(analysis.property_image_url)
    except BlobStorageError as e:
        fail(db, analysis, "Failed to fetch property image")
        logger.error(f"[PLANNING] analysis {analysis.id}: {e}")
        raise HTTPException(500, "Failed to fetch property image")

    result = await services.gemini.analyze_property_image(image, mime_type)
    if not result["success"] or not result.get("analysis"):
        error = result.get("error") or "Property analysis failed"
        fail(db, analysis, error)
        raise HTTPException(500, error)

    advance(db, analysis, PS.analyzing, PS.searching, property_analysis=json.dumps(result["analysis"]))
    return analysis.to_dict()


@app.post("/api/planning/{analysis_id}/search", tags=["Planning"])
async def search_planning(
    analysis_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Classic workflow step 2: nearby approvals for comparable modifications."""
    analysis = _owned_analysis(db, analysis_id, user)
    property_analysis = analysis.load_json("property_analysis")
    if not property_analysis:
        raise HTTPException(400, "Property must be analyzed first")
    if not analysis.address and not analysis.postcode:
        raise HTTPException(400, "Address or postcode is required for planning search")

    try:
        latitude = float(analysis.latitude or 0)
        longitude = float(analysis.longitude or 0)
    except ValueError:
        latitude = longitude = 0.0
    if not latitude or not longitude:
        geo = await services.geocoder.geocode_address(analysis.postcode or analysis.address)
        if geo:
            latitude, longitude = geo["latitude"], geo["longitude"]
            _save(db, analysis, latitude=str(latitude), longitude=str(longitude))

    try:
        advance(db, analysis, (PS.searching, PS.awaiting_selection, PS.failed), PS.searching)
    except PreconditionFailed:
        raise HTTPException(400, "Planning search is not available in the current state")

    result = await services.gemini.search_planning_approvals(
        property_analysis, analysis.address or "", analysis.postcode or "", latitude, longitude
    )
    if not result["success"] or not result.get("results"):
        error = result.get("error") or "Planning search failed"
        fail(db, analysis, error)
        raise HTTPException(500, error)

    advance(
        db, analysis, PS.searching, PS.awaiting_selection,
        approval_search_results=json.dumps(result["results"]),
    )
    return analysis.to_dict()


@app.post("/api/planning/{analysis_id}/select", tags=["Planning"])
async def select_modification(
    analysis_id: int,
    body: SelectModificationBody,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    if not body.modification_type:
        raise HTTPException(400, "Modification type is required")
    analysis = _owned_analysis(db, analysis_id, user)
    try:
        advance(
            db, analysis, PS.awaiting_selection, PS.awaiting_selection,
            selected_modification=body.modification_type,
        )
    except PreconditionFailed:
        raise HTTPException(400, "Analysis is not awaiting modification selection")
    return analysis.to_dict()


@app.post("/api/planning/{analysis_id}/extend", tags=["Planning"])
async def extend_planning(
    analysis_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Smart Extension pipeline.

    EPC lookup, heritage check, permitted development limits, real local
    approvals, then three costed extension tiers with party wall and
    neighbour impact assessed on the moderate tier.
    """
    analysis = _owned_analysis(db, analysis_id, user)
    if analysis.workflow_mode != "extend":
        raise HTTPException(400, "This analysis is not in extend mode")
    if not analysis.postcode:
        raise HTTPException(400, "Postcode is required for Smart Extension analysis")

    try:
        advance(db, analysis, (PS.pending, PS.options_ready, PS.failed), PS.epc_lookup, error_message=None)
    except PreconditionFailed:
        raise HTTPException(400, "Smart extension analysis is already running")

    postcode, address = analysis.postcode, analysis.address or ""
    try:
        # ── Step 1: EPC ──────────────────────────────────────────────────────
        epc_result = await services.epc.lookup_epc(postcode, analysis.house_number)
        epc = epc_result.get("certificate")
        if epc:
            _save(db, analysis, epc_data=json.dumps(epc))
        logger.info(f"[EXTEND] {analysis.id}: EPC {'found' if epc else 'not found'}")

        # ── Step 2: Conservation area / listed building ──────────────────────
        heritage = await services.perplexity.check_conservation_and_listing(postcode, address)
        _save(
            db, analysis,
            is_conservation_area=heritage["isConservationArea"],
            is_listed_building=heritage["isListedBuilding"],
            listed_building_grade=heritage.get("listedBuildingGrade"),
            conservation_area_name=heritage.get("conservationAreaName"),
        )

        # ── Step 3: PDR ──────────────────────────────────────────────────────
        if epc:
            pdr_input = build_pdr_input_from_epc(epc, heritage["isConservationArea"], heritage["isListedBuilding"])
        else:
            pdr_input = PDRInput(
                property_type="semi_detached",
                total_floor_area_sqm=80,
                stories=2,
                is_conservation_area=heritage["isConservationArea"],
                is_listed_building=heritage["isListedBuilding"],
            )
        pdr = calculate_pdr(pdr_input)
        advance(db, analysis, PS.epc_lookup, PS.pdr_calculating, pdr_assessment=json.dumps(pdr))

        # ── Step 4: Real local approvals ─────────────────────────────────────
        advance(db, analysis, PS.pdr_calculating, PS.searching_real)
        search = await services.perplexity.search_real_planning_approvals(
            postcode, address, (epc or {}).get("propertyType") or "Semi-Detached"
        )
        real_approvals = search.get("data") if search["success"] else None
        if real_approvals:
            _save(db, analysis, real_approval_data=json.dumps(real_approvals))

        # ── Step 5: Options, costs, party wall, neighbours ───────────────────
        options = estimate_costs(
            generate_extension_options(pdr, epc, real_approvals, analysis.orientation),
            postcode,
        )
        moderate = next((o for o in options if o["tier"] == "moderate_planning"), options[1])
        party_wall = assess_party_wall(pdr_input.property_type, moderate["extensions"])
        neighbours = assess_neighbour_impact(pdr_input.property_type, moderate["extensions"], analysis.orientation)

        advance(
            db, analysis, PS.searching_real, PS.options_ready,
            extension_options=json.dumps(options),
            cost_estimate=json.dumps({o["tier"]: o["estimatedCostGBP"] for o in options}),
            party_wall_assessment=json.dumps(party_wall),
            neighbour_impact=json.dumps(neighbours),
        )
    except Exception as e:
        logger.error(f"[EXTEND] {analysis.id} pipeline error: {e}", exc_info=True)
        db.rollback()
        fail(db, analysis, str(e) or "Smart extension analysis failed")
        raise HTTPException(500, "Smart extension analysis failed")

    logger.info(f"[EXTEND] {analysis.id}: {len(options)} options ready")
    return analysis.to_dict()


@app.post("/api/planning/{analysis_id}/select-option", tags=["Planning"])
async def select_option(
    analysis_id: int,
    body: SelectOptionBody,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
):
    if body.option_tier not in EXTENSION_TIERS:
        raise HTTPException(400, f"Invalid option tier. Must be one of: {', '.join(EXTENSION_TIERS)}")
    analysis = _owned_analysis(db, analysis_id, user)
    if analysis.workflow_mode != "extend":
        raise HTTPException(400, "This analysis is not in extend mode")
    try:
        advance(db, analysis, PS.options_ready, PS.options_ready, selected_option_tier=body.option_tier)
    except PreconditionFailed:
        raise HTTPException(400, "Extension options must be generated first")
    return analysis.to_dict()


def _extend_property_analysis(analysis: PlanningAnalysis) -> dict:
    """Stored Gemini analysis, or a stand-in derived from the EPC certificate."""
    stored = analysis.load_json("property_analysis")
    if stored:
        return stored
    epc = analysis.load_json("epc_data") or {}
    built_form = (epc.get("builtForm") or "").lower()
    return {
        "propertyType": re.sub(r"[- ]", "_", built_form) if built_form else "semi-detached",
        "architecturalStyle": "Unknown",
        "estimatedEra": epc.get("constructionAgeBand") or "Unknown",
        "materials": [],
        "existingFeatures": [],
        "stories": 2,
        "estimatedSqFt": round_half_up((epc.get("totalFloorArea") or 80) * SQFT_PER_SQM),
    }


async def _generate_extension(db: Session, analysis: PlanningAnalysis, services: Services, user: User) -> dict:
    if not analysis.selected_option_tier:
        raise HTTPException(400, "Please select an extension option first")
    options = analysis.load_json("extension_options")
    if not options:
        raise HTTPException(400, "Extension options must be generated first")
    option = next((o for o in options if o["tier"] == analysis.selected_option_tier), None)
    if option is None:
        raise HTTPException(400, "Selected option tier not found in extension options")
    if not analysis.floorplan_url:
        raise HTTPException(400, "Floorplan is required for extend mode")

    try:
        advance(db, analysis, (PS.options_ready, PS.completed, PS.failed), PS.generating)
    except PreconditionFailed:
        raise HTTPException(400, "Analysis is not ready for generation")

    summary = "; ".join(f"{e['description']} (+{e['additionalSqM']}sqm)" for e in option["extensions"])
    description = f"{option['label']}: {summary}. Total additional: {option['totalAdditionalSqM']}sqm."
    first = option["extensions"][0]["type"].replace("_", " ") if option["extensions"] else "extension"
    property_analysis = _extend_property_analysis(analysis)

    try:
        floorplan, floorplan_mime = await services.blob.fetch(analysis.floorplan_url)
    except BlobStorageError as e:
        logger.error(f"[PLANNING] analysis {analysis.id}: {e}")
        fail(db, analysis, "Failed to fetch floorplan image")
        raise HTTPException(500, "Failed to generate visualization")

    floorplan_result = await services.gemini.generate_floorplan_modification(
        floorplan, floorplan_mime, property_analysis, first,
        round_half_up(option["totalAdditionalSqM"] * SQFT_PER_SQM),
    )
    if not floorplan_result["success"]:
        logger.warning(
            f"[PLANNING] analysis {analysis.id}: floorplan modification failed ({floorplan_result.get('error')})"
        )

    exterior_result = None
    try:
        image, mime_type = await services.blob.fetch(analysis.property_image_url)
    except BlobStorageError as e:
        logger.warning(f"[PLANNING] analysis {analysis.id}: property image unavailable ({e})")
    else:
        exterior_result = await services.gemini.generate_property_visualization(
            image, mime_type, property_analysis, first, description
        )

    _spend_credit(db, user.id)
    floorplan_url = floorplan_result["imageUrl"] if floorplan_result["success"] else None
    by_tier = analysis.load_json("generated_option_floorplans") or {}
    by_tier[analysis.selected_option_tier] = floorplan_url
    advance(
        db, analysis, PS.generating, PS.completed,
        generated_floorplan_url=floorplan_url,
        generated_exterior_url=exterior_result["imageUrl"] if exterior_result and exterior_result["success"] else None,
        generated_option_floorplans=json.dumps(by_tier),
    )
    return analysis.to_dict()


async def _generate_classic(db: Session, analysis: PlanningAnalysis, services: Services, user: User) -> dict:
    if not analysis.selected_modification:
        raise HTTPException(400, "Please select a modification type first")
    property_analysis = analysis.load_json("property_analysis")
    search_results = analysis.load_json("approval_search_results")
    if not property_analysis or not search_results:
        raise HTTPException(400, "Analysis and search must be completed first")

    try:
        advance(db, analysis, (PS.awaiting_selection, PS.completed, PS.failed), PS.generating)
    except PreconditionFailed:
        raise HTTPException(400, "Analysis is not ready for generation")

    modification = analysis.selected_modification
    approval = next(
        (a for a in search_results.get("approvals") or [] if a.get("modificationType") == modification),
        None,
    )
    description = (approval or {}).get("description") or (
        f"A typical {modification.replace('_', ' ')} for a {property_analysis.get('propertyType')} property"
    )

    try:
        image, mime_type = await services.blob.fetch(analysis.property_image_url)
    except BlobStorageError as e:
        logger.error(f"[PLANNING] analysis {analysis.id}: {e}")
        fail(db, analysis, "Failed to fetch property image")
        raise HTTPException(500, "Failed to generate visualization")

    exterior = await services.gemini.generate_property_visualization(
        image, mime_type, property_analysis, modification, description
    )
    if not exterior["success"]:
        error = exterior.get("error") or "Visualization generation failed"
        fail(db, analysis, error)
        if exterior.get("rateLimited"):
            raise HTTPException(429, RATE_LIMITED)
        raise HTTPException(500, error)

    floorplan_url = None
    if analysis.floorplan_url:
        try:
            floorplan, floorplan_mime = await services.blob.fetch(analysis.floorplan_url)
        except BlobStorageError as e:
            logger.warning(f"[PLANNING] analysis {analysis.id}: floorplan unavailable ({e})")
        else:
            result = await services.gemini.generate_floorplan_modification(
                floorplan, floorplan_mime, property_analysis, modification,
                (approval or {}).get("estimatedSqFt") or 150,
            )
            if result["success"]:
                floorplan_url = result["imageUrl"]

    _spend_credit(db, user.id)
    advance(
        db, analysis, PS.generating, PS.completed,
        generated_exterior_url=exterior["imageUrl"],
        generated_floorplan_url=floorplan_url,
    )
    return analysis.to_dict()


@app.post("/api/planning/{analysis_id}/generate", tags=["Planning"])
@limiter.limit("10/minute")
async def generate_planning(
    request: Request,
    analysis_id: int,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """Render the chosen modification onto the property photo and floorplan (one credit)."""
    if not can_user_generate(db, user.id):
        raise HTTPException(403, NO_CREDITS)
    analysis = _owned_analysis(db, analysis_id, user)
    if analysis.workflow_mode == "extend":
        return await _generate_extension(db, analysis, services, user)
    return await _generate_classic(db, analysis, services, user)


# ════════════════════════════════════════════════════════════════════════════════
# SUBSCRIPTION & STRIPE ROUTES
# ════════════════════════════════════════════════════════════════════════════════

@app.get("/api/subscription", tags=["Billing"])
async def subscription_status(user: User = Depends(require_auth), db: Session = Depends(get_db)):
    return get_subscription_status(db, user.id)


def _ensure_customer(db: Session, user: User, services: Services) -> str:
    subscription = get_subscription(db, user.id)
    if subscription.stripe_customer_id:
        return subscription.stripe_customer_id
    customer_id = services.billing.create_customer(user.email, user.id)
    set_stripe_customer_id(db, user.id, customer_id)
    return customer_id


def _checkout(request: Request, db: Session, user: User, services: Services,
              price_id: Optional[str], mode: str, count: int = 1) -> dict:
    if not price_id:
        raise HTTPException(400, "Price ID required")
    try:
        customer_id = _ensure_customer(db, user, services)
        url = services.billing.create_checkout_session(
            customer_id, price_id, user.id, _base_url(request), mode=mode, count=count
        )
    except BillingError:
        raise HTTPException(500, "Failed to create checkout session")
    logger.info(f"[STRIPE] {mode} checkout for {user.id} ({price_id} x{count})")
    return {"url": url}


@app.post("/api/subscription/purchase", tags=["Billing"])
async def purchase_generations(
    request: Request,
    body: PurchaseBody,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    """One-off Checkout for pay-per-use generations."""
    return _checkout(request, db, user, services, body.price_id, "payment", body.count)


@app.post("/api/subscription/checkout", tags=["Billing"])
async def subscription_checkout(
    request: Request,
    body: CheckoutBody,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    return _checkout(request, db, user, services, body.price_id, "subscription")


@app.get("/api/stripe/products", tags=["Billing"])
async def stripe_products(services: Services = Depends(get_services)):
    if not services.billing.configured:
        raise HTTPException(500, "Stripe not configured")
    try:
        return {"products": services.billing.list_products()}
    except BillingError:
        raise HTTPException(500, "Failed to list products")


@app.get("/api/stripe/config", tags=["Billing"])
async def stripe_config(services: Services = Depends(get_services)):
    if not services.billing.publishable_key:
        raise HTTPException(500, "Stripe not configured")
    return {"publishableKey": services.billing.publishable_key}


@app.post("/api/stripe/create-portal-session", tags=["Billing"])
async def create_portal_session(
    request: Request,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db),
    services: Services = Depends(get_services),
):
    subscription = get_subscription(db, user.id)
    if not subscription.stripe_customer_id:
        raise HTTPException(400, {
            "error": "No Stripe customer found",
            "message": "You need to subscribe first before accessing the billing portal.",
        })
    try:
        url = services.billing.create_portal_session(
            subscription.stripe_customer_id, f"{_base_url(request)}/settings"
        )
    except BillingError:
        raise HTTPException(500, "Failed to create portal session")
    return {"url": url}

