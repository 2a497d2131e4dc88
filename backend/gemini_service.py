"""
Architect Studio - Gemini AI Integration
Image generation (isometric renders, planning visualizations, floorplan
modifications) over the Gemini REST API, and JSON property analysis /
planning search through the google-generativeai SDK.

Every public coroutine returns {"success": True, ...} or
{"success": False, "error": ...}; nothing is raised to the caller.
"""

import asyncio
import base64
import json
import logging
import time
from typing import Optional

import httpx

from blob_storage import BlobStorage, BlobStorageError

logger = logging.getLogger(__name__)

GEMINI_API_URL    = "https://generativelanguage.googleapis.com/v1beta/models"
ISOMETRIC_MODEL   = "gemini-2.5-flash-image"
PLANNING_IMAGE_MODEL = "gemini-3.1-flash-image-preview"
ANALYSIS_MODEL    = "gemini-2.5-flash"

DEFAULT_STYLE = "modern minimalist interior, neutral colors, clean aesthetic"


def is_rate_limit_error(message: str) -> bool:
    text = str(message or "")
    lower = text.lower()
    return "429" in text or "RATELIMIT_EXCEEDED" in text or "quota" in lower or "rate limit" in lower


class _Retryable(Exception):
    """Rate limit or text-only image response; worth another attempt."""

    def __init__(self, message: str, rate_limited: bool):
        super().__init__(message)
        self.rate_limited = rate_limited


# ── Prompts ───────────────────────────────────────────────────────────────────
def isometric_prompt(style_prompt: Optional[str]) -> str:
    user_style = style_prompt or DEFAULT_STYLE
    return f"""Transform this 2D floorplan into a photorealistic 3D architectural visualization.

PRESERVE ORIGINAL STRUCTURE (HIGHEST PRIORITY):
- WALLS: Keep ALL walls EXACTLY as shown in the original floorplan. Do NOT add, remove, or move any walls.
- DOORS: Keep ALL doors in their EXACT positions and sizes as shown in the original floorplan.
- WINDOWS: Keep ALL windows in their EXACT positions as shown in the original floorplan.
- ROOM LAYOUT: The room layout is FIXED and must match the floorplan precisely.
- Only change the structure if the user explicitly requests it in their style preferences.

Create an isometric cutaway view of this SINGLE FLOOR layout with walls cut at eye level to reveal the interior.
- Match the exact room positions, shapes, and proportions from the floorplan
- Bathrooms must be their own separate enclosed rooms with doors where shown
- Furniture scaled appropriately for each room size

USER STYLE PREFERENCES (apply to decor/furniture ONLY, NOT structure):
{user_style}

FOR 3D MODEL CONVERSION:
- SOLID PURE WHITE BACKGROUND (#FFFFFF), no gradients, no shadows on background
- Single clear architectural subject with sharply defined edges and corners
- ZERO text, watermarks, labels, or annotations anywhere
- Clean textures, sharp focus, no atmospheric effects (fog, haze, lens flare, bloom)
- Distinct solid colors for walls, floors and furniture
- Even, studio-style lighting; photorealistic materials, ultra-high resolution"""


def visualization_prompt(analysis: dict, modification_type: str, description: str) -> str:
    mod = modification_type.replace("_", " ")
    style = analysis.get("architecturalStyle", "existing")
    materials = ", ".join(analysis.get("materials") or []) or "existing materials"
    return f"""Transform this property image to show a realistic {mod}.

PROPERTY DETAILS:
- Type: {analysis.get("propertyType", "house")}
- Style: {style}
- Era: {analysis.get("estimatedEra", "unknown")}
- Materials: {materials}

MODIFICATION TO SHOW:
{description}

REQUIREMENTS:
- Maintain the existing architectural style ({style})
- Match existing materials: {materials}
- Show a realistic, professionally designed {mod} integrated with the original structure
- Keep the original property recognizable, with proper proportions and scale
- Match roof materials and style; include appropriate windows/doors
- Maintain the same lighting conditions and perspective as the original photo

Generate a photorealistic image showing this property with the {mod} added."""


def floorplan_modification_prompt(analysis: dict, modification_type: str, estimated_sq_ft: int) -> str:
    mod = modification_type.replace("_", " ")
    return f"""Modify this floor plan to incorporate a {mod}.

PROPERTY DETAILS:
- Type: {analysis.get("propertyType", "house")}
- Estimated current size: {analysis.get("estimatedSqFt", "unknown")} sq ft

MODIFICATION:
- Type: {mod}
- Additional space: approximately {estimated_sq_ft} sq ft

REQUIREMENTS:
- Add the {mod} to the appropriate location on the floor plan
- Rear extensions extend from the back; side extensions from the side; loft conversions as a new level
- Show new walls with a distinct line style or color
- Add new room labels (e.g. "New Kitchen-Diner", "Utility", "Study") and door positions
- Maintain scale and keep the existing layout unchanged where not affected
- Clean, architectural style floor plan"""


PROPERTY_ANALYSIS_PROMPT = """Analyze this property image and provide a detailed assessment. Return ONLY a valid JSON object with this exact structure:

{
  "propertyType": "terraced" | "semi-detached" | "detached" | "flat" | "bungalow" | "other",
  "architecturalStyle": "style (e.g., Victorian, Edwardian, 1930s semi, post-war, modern)",
  "estimatedEra": "approximate decade of construction",
  "materials": ["external materials visible"],
  "existingFeatures": ["existing features (e.g., garage, conservatory, bay window, dormer)"],
  "stories": number of floors,
  "estimatedSqFt": approximate square footage as a number,
  "extensionPotential": {
    "rear": "high" | "medium" | "low" | "none",
    "side": "high" | "medium" | "low" | "none",
    "loft": "high" | "medium" | "low" | "none",
    "garage": "high" | "medium" | "low" | "none"
  }
}

Assess extension potential realistically from what is visible: garden behind (rear), side access
or land (side), roof type and existing dormers (loft), convertible garage (garage)."""


def planning_search_prompt(analysis: dict, address: str, postcode: str, lat, lng) -> str:
    ptype = analysis.get("propertyType", "residential")
    return f"""You are a UK planning permission research assistant. Based on the following property details and location, generate realistic planning approval data typical for this area.

PROPERTY DETAILS:
- Type: {ptype}
- Style: {analysis.get("architecturalStyle", "unknown")}
- Era: {analysis.get("estimatedEra", "unknown")}
- Location: {address}
- Postcode: {postcode}
- Coordinates: {lat}, {lng}

Return ONLY a valid JSON object with this exact structure:

{{
  "searchRadius": 1000,
  "totalFound": number between 20-60,
  "approvals": [
    {{
      "applicationRef": "UK planning reference like 23/01234/FUL",
      "address": "nearby address in the same postcode area",
      "distance": metres (100-1000),
      "modificationType": "rear_extension" | "side_extension" | "loft_conversion" | "dormer" | "garage_conversion" | "conservatory" | "outbuilding",
      "description": "planning description",
      "decisionDate": "YYYY-MM-DD within the last 2 years",
      "estimatedSqFt": additional floor area
    }}
  ],
  "modificationSummary": {{
    "rear_extension": {{ "count": number, "avgApprovalRate": 0.85-0.95 }},
    "side_extension": {{ "count": number, "avgApprovalRate": 0.70-0.85 }},
    "loft_conversion": {{ "count": number, "avgApprovalRate": 0.90-0.98 }},
    "dormer": {{ "count": number, "avgApprovalRate": 0.75-0.90 }},
    "garage_conversion": {{ "count": number, "avgApprovalRate": 0.88-0.95 }},
    "conservatory": {{ "count": number, "avgApprovalRate": 0.92-0.98 }}
  }}
}}

Include 8-12 approvals, focusing on modifications that suit a {ptype} property in {postcode}."""


# ── Client ────────────────────────────────────────────────────────────────────
class GeminiClient:
    def __init__(
        self,
        api_key: str,
        blob: BlobStorage,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_delay: float = 2.0,
    ):
        self.api_key   = api_key
        self.blob      = blob
        self.min_delay = min_delay
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    # ── Image generation (REST) ───────────────────────────────────────────────
    async def _image_once(
        self, model: str, prompt: str, image: bytes, mime_type: str,
        aspect_ratio: str, filename_prefix: str, retry_no_image: bool,
    ) -> dict:
        body = {
            "contents": [{
                "parts": [
                    {"text": prompt},
                    {"inline_data": {"mime_type": mime_type, "data": base64.b64encode(image).decode()}},
                ]
            }],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": aspect_ratio, "imageSize": "2K"},
            },
        }
        try:
            async with httpx.AsyncClient(timeout=120.0, transport=self._transport) as client:
                resp = await client.post(
                    f"{GEMINI_API_URL}/{model}:generateContent",
                    json=body,
                    headers={"x-goog-api-key": self.api_key},
                )
        except httpx.HTTPError as e:
            if is_rate_limit_error(str(e)):
                raise _Retryable(str(e), rate_limited=True)
            return {"success": False, "error": f"Gemini request failed: {e}"}

        if resp.status_code >= 400:
            text = resp.text
            logger.error(f"[GEMINI] {model} error {resp.status_code}: {text[:300]}")
            if resp.status_code == 429 or is_rate_limit_error(text):
                raise _Retryable("Rate limit exceeded", rate_limited=True)
            return {"success": False, "error": f"API request failed with status {resp.status_code}"}

        candidates = resp.json().get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []
        inline = None
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                break
            inline = None

        if inline is None:
            if retry_no_image:
                raise _Retryable("NO_IMAGE_DATA: model returned a text-only response", rate_limited=False)
            return {"success": False, "error": "No image data in API response"}

        out_mime = inline.get("mimeType") or inline.get("mime_type") or "image/png"
        if filename_prefix == "isometric":
            ext = "png" if "png" in out_mime else "jpg"
        else:
            ext = out_mime.split("/")[-1] or "png"
        filename = f"{filename_prefix}-{int(time.time() * 1000)}.{ext}"
        try:
            url = await self.blob.put(filename, base64.b64decode(inline["data"]), out_mime)
        except BlobStorageError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "imageUrl": url}

    async def _image_with_retry(
        self, model: str, prompt: str, image: bytes, mime_type: str, *,
        aspect_ratio: str, filename_prefix: str, retries: int, max_delay: float,
        retry_no_image: bool = False,
    ) -> dict:
        if not self.configured:
            return {"success": False, "error": "GOOGLE_GEMINI_API_KEY is not configured"}
        delay = self.min_delay
        for attempt in range(1, retries + 2):
            try:
                return await self._image_once(
                    model, prompt, image, mime_type, aspect_ratio, filename_prefix, retry_no_image
                )
            except _Retryable as e:
                if attempt > retries:
                    logger.error(f"[GEMINI] {model} gave up after {attempt} attempts: {e}")
                    return {"success": False, "error": str(e), "rateLimited": e.rate_limited}
                logger.warning(f"[GEMINI] {model} attempt {attempt} failed ({e}); retrying in {delay:.0f}s")
                await asyncio.sleep(min(delay, max_delay))
                delay *= 2
        return {"success": False, "error": "Generation failed"}

    async def generate_isometric_floorplan(
        self, image: bytes, mime_type: str, style_prompt: Optional[str] = None
    ) -> dict:
        logger.info(f"[GEMINI] isometric render, {len(image) // 1024} KB {mime_type}")
        return await self._image_with_retry(
            ISOMETRIC_MODEL, isometric_prompt(style_prompt), image, mime_type,
            aspect_ratio="16:9", filename_prefix="isometric", retries=3, max_delay=30.0,
        )

    async def generate_property_visualization(
        self, image: bytes, mime_type: str, analysis: dict, modification_type: str, description: str
    ) -> dict:
        logger.info(f"[GEMINI] property visualization: {modification_type}")
        return await self._image_with_retry(
            PLANNING_IMAGE_MODEL, visualization_prompt(analysis, modification_type, description),
            image, mime_type, aspect_ratio="16:9", filename_prefix="planning-visualization",
            retries=2, max_delay=5.0, retry_no_image=True,
        )

    async def generate_floorplan_modification(
        self, image: bytes, mime_type: str, analysis: dict, modification_type: str, estimated_sq_ft: int
    ) -> dict:
        logger.info(f"[GEMINI] floorplan modification: {modification_type} +{estimated_sq_ft} sqft")
        return await self._image_with_retry(
            PLANNING_IMAGE_MODEL, floorplan_modification_prompt(analysis, modification_type, estimated_sq_ft),
            image, mime_type, aspect_ratio="4:3", filename_prefix="planning-floorplan",
            retries=2, max_delay=5.0, retry_no_image=True,
        )

    # ── JSON analysis (SDK) ───────────────────────────────────────────────────
    async def _json_with_retry(self, contents, temperature: float, label: str) -> dict:
        if not self.configured:
            return {"success": False, "error": "GOOGLE_GEMINI_API_KEY is not configured"}
        import google.generativeai as genai

        genai.configure(api_key=self.api_key)
        model = genai.GenerativeModel(
            ANALYSIS_MODEL,
            generation_config={"response_mime_type": "application/json", "temperature": temperature},
        )
        delay = self.min_delay
        attempts = 4
        for attempt in range(1, attempts + 1):
            try:
                response = await model.generate_content_async(contents)
                return {"success": True, "data": json.loads(response.text)}
            except ValueError as e:
                # covers json.JSONDecodeError and blocked/empty responses
                logger.error(f"[GEMINI] {label}: unusable response: {e}")
                return {"success": False, "error": f"Invalid {label} response"}
            except Exception as e:
                if is_rate_limit_error(str(e)) and attempt < attempts:
                    logger.warning(f"[GEMINI] {label} attempt {attempt} rate limited; retrying in {delay:.0f}s")
                    await asyncio.sleep(min(delay, 30.0))
                    delay *= 2
                    continue
                logger.error(f"[GEMINI] {label} failed: {e}")
                return {"success": False, "error": str(e) or f"{label} failed"}
        return {"success": False, "error": f"{label} failed"}

    async def analyze_property_image(self, image: bytes, mime_type: str) -> dict:
        result = await self._json_with_retry(
            [PROPERTY_ANALYSIS_PROMPT, {"mime_type": mime_type, "data": image}],
            temperature=0.2, label="property analysis",
        )
        if not result["success"]:
            return result
        return {"success": True, "analysis": result["data"]}

    async def search_planning_approvals(
        self, analysis: dict, address: str, postcode: str, lat, lng
    ) -> dict:
        result = await self._json_with_retry(
            planning_search_prompt(analysis, address, postcode, lat, lng),
            temperature=0.7, label="planning search",
        )
        if not result["success"]:
            return result
        return {"success": True, "results": result["data"]}
