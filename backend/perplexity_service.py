"""
Architect Studio - Perplexity Planning Research
Real planning application search and conservation area / listed building
checks through the Perplexity sonar model.
"""

import asyncio
import json
import logging
import re
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

PERPLEXITY_API_URL = "https://api.perplexity.ai/chat/completions"
PERPLEXITY_MODEL   = "sonar"

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

CONSERVATION_FALLBACK_NOTE = (
    "Unable to confirm conservation/listing status - recommend checking with local council"
)

SEARCH_SYSTEM_PROMPT = """You are a UK planning permission research assistant. Search for real planning applications near the given address. Return ONLY valid JSON matching this exact schema:
{
  "searchSummary": "Brief description of what was found",
  "councilName": "Name of the local council/planning authority",
  "councilPlanningPortalUrl": "URL to the council's planning search portal",
  "recentApprovals": [
    {
      "applicationRef": "The planning application reference number",
      "address": "Address of the application",
      "description": "Description of the approved work",
      "decision": "Granted/Refused/Withdrawn",
      "decisionDate": "YYYY-MM-DD or approximate",
      "modificationType": "rear_extension/side_extension/loft_conversion/two_storey_extension/wraparound/garage_conversion/outbuilding",
      "source": "URL or source where this was found"
    }
  ],
  "areaCharacteristics": "Description of the local area's character and typical housing",
  "commonExtensionTypes": ["Most common types of extensions approved in this area"],
  "knownRestrictions": ["Known planning restrictions, conservation areas, Article 4 directions, TPOs etc."]
}

Focus on residential extension applications (rear, side, loft, two-storey) within 500m of the postcode. Include both approved AND refused applications. Search local council planning portals and planning registers."""

CONSERVATION_SYSTEM_PROMPT = """You are a UK property heritage checker. Determine if a property is in a conservation area or is a listed building. Return ONLY valid JSON:
{
  "isConservationArea": true/false,
  "conservationAreaName": "Name of conservation area or null",
  "isListedBuilding": true/false,
  "listedBuildingGrade": "I/II*/II or null",
  "notes": ["Relevant notes about restrictions or designations"]
}

Search Historic England, local council conservation area maps and the National Heritage List for England. If you cannot confirm, default to false."""


class PerplexityError(Exception):
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def extract_json(text: str):
    """Parse JSON from a fenced code block, or from the whole reply."""
    match = _FENCED_JSON.search(text)
    raw = match.group(1).strip() if match else text.strip()
    return json.loads(raw)


class PerplexityClient:
    def __init__(
        self,
        api_key: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_delay: float = 2.0,
    ):
        self.api_key    = api_key
        self.min_delay  = min_delay
        self._transport = transport

    async def _call_once(self, system_prompt: str, user_prompt: str) -> str:
        if not self.api_key:
            raise PerplexityError("PERPLEXITY_API_KEY is not configured")
        body = {
            "model": PERPLEXITY_MODEL,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.2,
            "max_tokens": 4000,
        }
        try:
            async with httpx.AsyncClient(timeout=60.0, transport=self._transport) as client:
                resp = await client.post(
                    PERPLEXITY_API_URL,
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise PerplexityError(f"Perplexity request failed: {e}", retryable=True) from e

        if resp.status_code == 429:
            raise PerplexityError("Perplexity rate limited", retryable=True)
        if resp.status_code in (401, 403):
            raise PerplexityError("Perplexity API authentication failed. Check PERPLEXITY_API_KEY.")
        if resp.status_code >= 400:
            raise PerplexityError(f"Perplexity API error {resp.status_code}", retryable=resp.status_code >= 500)

        choices = resp.json().get("choices") or []
        return ((choices[0].get("message") or {}).get("content") or "") if choices else ""

    async def _call(self, system_prompt: str, user_prompt: str, label: str, retries: int = 2) -> str:
        delay = self.min_delay
        for attempt in range(1, retries + 2):
            try:
                return await self._call_once(system_prompt, user_prompt)
            except PerplexityError as e:
                if not e.retryable or attempt > retries:
                    raise
                logger.warning(f"[PERPLEXITY] {label} attempt {attempt} failed: {e}")
                await asyncio.sleep(min(delay, 15.0))
                delay *= 2
        raise PerplexityError(f"{label} failed")

    # ── Planning search ───────────────────────────────────────────────────────
    async def search_real_planning_approvals(
        self, postcode: str, address: str, property_type: str, council_name: Optional[str] = None
    ) -> dict:
        logger.info(f"[PERPLEXITY] searching planning approvals near {postcode}")
        user_prompt = (
            "Search for planning permission applications for house extensions near:\n"
            f"Address: {address or 'Not specified'}\n"
            f"Postcode: {postcode}\n"
            f"Property type: {property_type}\n"
            + (f"Council: {council_name}\n" if council_name else "")
            + "\nFind recent (last 3 years) planning applications for residential extensions in this area. "
              "Include application reference numbers, addresses, descriptions of work, and decisions. "
              "Also identify the local council and any known restrictions in the area."
        )
        try:
            response = await self._call(SEARCH_SYSTEM_PROMPT, user_prompt, "planning search")
        except PerplexityError as e:
            logger.error(f"[PERPLEXITY] planning search failed: {e}")
            return {"success": False, "error": str(e)}

        try:
            data = extract_json(response)
            if not isinstance(data, dict):
                raise ValueError("expected a JSON object")
        except ValueError:
            logger.error(f"[PERPLEXITY] unparseable search response: {response[:200]}")
            data = {
                "searchSummary": response[:500],
                "councilName": "Unknown",
                "councilPlanningPortalUrl": "",
                "recentApprovals": [],
                "areaCharacteristics": "",
                "commonExtensionTypes": [],
                "knownRestrictions": [],
            }
        logger.info(f"[PERPLEXITY] found {len(data.get('recentApprovals') or [])} applications")
        return {"success": True, "data": data}

    # ── Heritage check ────────────────────────────────────────────────────────
    async def check_conservation_and_listing(self, postcode: str, address: str) -> dict:
        logger.info(f"[PERPLEXITY] checking conservation/listing for {postcode}")
        user_prompt = (
            "Check if this property is in a conservation area or is a listed building:\n"
            f"Address: {address or 'Not specified'}\n"
            f"Postcode: {postcode}\n\n"
            "Check the National Heritage List for England, the local council's conservation "
            "area designations, and any other heritage databases."
        )
        fallback = {
            "isConservationArea": False,
            "isListedBuilding": False,
            "notes": [CONSERVATION_FALLBACK_NOTE],
        }
        try:
            response = await self._call(CONSERVATION_SYSTEM_PROMPT, user_prompt, "conservation check")
            result = extract_json(response)
        except PerplexityError as e:
            logger.error(f"[PERPLEXITY] conservation check failed: {e}")
            return fallback
        except ValueError:
            logger.error("[PERPLEXITY] unparseable conservation check response")
            return fallback
        if not isinstance(result, dict):
            return fallback

        result["isConservationArea"] = bool(result.get("isConservationArea"))
        result["isListedBuilding"] = bool(result.get("isListedBuilding"))
        result.setdefault("notes", [])
        logger.info(
            f"[PERPLEXITY] conservation={result['isConservationArea']} "
            f"listed={result['isListedBuilding']} grade={result.get('listedBuildingGrade')}"
        )
        return result
