"""
Architect Studio - TRELLIS 3D Generation
Image-to-GLB through the TRELLIS Gradio Space. The Space call blocks until
the mesh is ready (30-120s), so it runs in a worker thread.
"""

import asyncio
import logging
import os
import tempfile
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TRELLIS_API_NAME = "/generate_and_extract_glb"

DEFAULT_OPTIONS = {
    "seed": 0,
    "ss_guidance_strength": 7.5,
    "ss_sampling_steps": 12,
    "slat_guidance_strength": 3.0,
    "slat_sampling_steps": 12,
    "mesh_simplify": 0.95,
    "texture_size": 1024,
}


class TrellisError(Exception):
    """GLB download failed."""


def _glb_location(output) -> Optional[str]:
    # Outputs: [state, video, glb_display, glb_download]
    if isinstance(output, dict):
        return output.get("url") or output.get("path") or output.get("value")
    if isinstance(output, str) and output:
        return output
    return None


class TrellisClient:
    def __init__(
        self,
        space: str,
        hf_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.space    = space
        self.hf_token = hf_token
        self._transport = transport

    def _predict(self, image_path: str, opts: dict):
        from gradio_client import Client, handle_file

        client = Client(self.space, hf_token=self.hf_token or None)
        return client.predict(
            handle_file(image_path),
            None,            # multiimages
            False,           # is_multiimage
            opts["seed"],
            opts["ss_guidance_strength"],
            opts["ss_sampling_steps"],
            opts["slat_guidance_strength"],
            opts["slat_sampling_steps"],
            "stochastic",    # multiimage_algo
            opts["mesh_simplify"],
            opts["texture_size"],
            api_name=TRELLIS_API_NAME,
        )

    async def generate_trellis_3d(self, image_url: str, **options) -> dict:
        """Returns {"success": True, "glbUrl": ...}; the URL or path is ephemeral."""
        opts = {**DEFAULT_OPTIONS, **options}
        logger.info(f"[TRELLIS] generating on {self.space}")

        # The Space cannot fetch external blob URLs itself, so upload the bytes
        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self._transport, follow_redirects=True) as client:
                resp = await client.get(image_url)
            if resp.status_code >= 400:
                return {"success": False,
                        "error": f"Failed to fetch isometric image for TRELLIS: {resp.status_code}"}
        except httpx.HTTPError as e:
            return {"success": False, "error": f"Failed to fetch isometric image for TRELLIS: {e}"}

        fd, image_path = tempfile.mkstemp(suffix=".png")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(resp.content)
            data = await asyncio.to_thread(self._predict, image_path, opts)
        except Exception as e:
            logger.error(f"[TRELLIS] generation error: {e}")
            return {"success": False, "error": str(e) or "TRELLIS 3D generation failed"}
        finally:
            os.unlink(image_path)

        outputs = list(data) if isinstance(data, (list, tuple)) else []
        glb = _glb_location(outputs[3]) if len(outputs) > 3 else None
        if not glb:
            return {"success": False, "error": "TRELLIS did not return a GLB file URL"}
        logger.info("[TRELLIS] GLB ready")
        return {"success": True, "glbUrl": glb}

    async def download_glb(self, location: str) -> bytes:
        """Fetch the GLB from a Space URL, or read it when the client saved it locally."""
        if not location.startswith(("http://", "https://")):
            try:
                with open(location, "rb") as f:
                    return f.read()
            except OSError as e:
                raise TrellisError(f"Failed to read GLB: {e}") from e
        try:
            async with httpx.AsyncClient(timeout=120.0, transport=self._transport, follow_redirects=True) as client:
                resp = await client.get(location)
        except httpx.HTTPError as e:
            raise TrellisError(f"Failed to download GLB: {e}") from e
        if resp.status_code >= 400:
            raise TrellisError(f"Failed to download GLB: {resp.status_code}")
        return resp.content
