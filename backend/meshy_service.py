"""
Architect Studio - Meshy Integration
Image-to-3D and retexture tasks on the Meshy API. Every call returns a result
dict; failures come back as {"success": False, "error": ...}, never raised.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

MESHY_API_URL = "https://api.meshy.ai"

ARCHITECTURAL_TEXTURE_PROMPT = (
    "Photorealistic architectural interior: warm oak hardwood floors with visible grain, "
    "smooth matte white walls, fabric upholstery with weave texture, brushed metal fixtures, "
    "marble countertops with veining, glass with reflections, detailed wood furniture grain, "
    "ceramic tiles with grout, realistic PBR materials with accurate roughness and metallic "
    "properties, 4K quality textures"
)


class MeshyClient:
    def __init__(self, api_key: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _post(self, path: str, body: dict, label: str) -> dict:
        if not self.api_key:
            return {"success": False, "error": "MESHY_API_KEY is not configured"}
        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                resp = await client.post(f"{MESHY_API_URL}{path}", json=body, headers=self._headers())
            if resp.status_code >= 400:
                logger.error(f"[MESHY] {label} error {resp.status_code}: {resp.text[:300]}")
                return {"success": False, "error": f"Meshy API error: {resp.status_code}"}
            task_id = resp.json().get("result")
            if not task_id:
                return {"success": False, "error": "Meshy API returned no task id"}
            logger.info(f"[MESHY] {label} task created: {task_id}")
            return {"success": True, "taskId": task_id}
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[MESHY] {label} request failed: {e}")
            return {"success": False, "error": str(e) or "Meshy request failed"}

    async def _status(self, path: str, task_id: str, failure_message: str) -> dict:
        if not self.api_key:
            return {"success": False, "taskId": task_id, "status": "failed",
                    "error": "MESHY_API_KEY is not configured"}
        try:
            async with httpx.AsyncClient(timeout=20.0, transport=self._transport) as client:
                resp = await client.get(f"{MESHY_API_URL}{path}/{task_id}", headers=self._headers())
            if resp.status_code >= 400:
                logger.error(f"[MESHY] status error {resp.status_code} for {task_id}")
                return {"success": False, "taskId": task_id, "status": "pending",
                        "error": f"Meshy API error: {resp.status_code}"}
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[MESHY] status request failed for {task_id}: {e}")
            return {"success": False, "taskId": task_id, "status": "pending", "error": str(e)}

        remote = (data.get("status") or "").upper()
        if remote == "SUCCEEDED":
            urls = data.get("model_urls") or {}
            return {
                "success": True,
                "taskId": task_id,
                "status": "completed",
                "modelUrl": urls.get("glb") or urls.get("obj"),
            }
        if remote in ("FAILED", "CANCELED", "EXPIRED"):
            message = (data.get("task_error") or {}).get("message") or failure_message
            return {"success": False, "taskId": task_id, "status": "failed", "error": message}
        return {"success": True, "taskId": task_id, "status": "pending", "progress": data.get("progress")}

    # ── Image to 3D ───────────────────────────────────────────────────────────
    async def create_image_to_3d_task(self, image_url: str) -> dict:
        return await self._post("/openapi/v1/image-to-3d", {
            "image_url": image_url,
            "ai_model": "latest",
            "enable_pbr": True,
            "should_remesh": True,
            "topology": "quad",
            "target_polycount": 300000,
            "texture_richness": "high",
            "art_style": "realistic",
            "texture_prompt": ARCHITECTURAL_TEXTURE_PROMPT,
        }, label="image-to-3d")

    async def check_meshy_task_status(self, task_id: str) -> dict:
        return await self._status("/openapi/v1/image-to-3d", task_id, "3D generation failed")

    # ── Retexture ─────────────────────────────────────────────────────────────
    async def create_retexture_task(self, model_url: str, texture_prompt: str) -> dict:
        return await self._post("/openapi/v1/retexture", {
            "model_url": model_url,
            "text_style_prompt": texture_prompt,
            "enable_original_uv": True,
            "enable_pbr": True,
            "ai_model": "latest",
        }, label="retexture")

    async def check_retexture_task_status(self, task_id: str) -> dict:
        return await self._status("/openapi/v1/retexture", task_id, "Retexture failed")
