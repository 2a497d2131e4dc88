"""
Architect Studio - EPC Register Lookup
Domestic Energy Performance Certificate data from the UK open data register.
"""

import asyncio
import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

EPC_API_URL = "https://epc.opendatacommunities.org/api/v1/domestic/search"
NO_RECORDS  = "No EPC records found for this postcode"

# (output key, register field, cast)
_FIELDS = [
    ("lmkKey",                   "lmk-key",                   str),
    ("address",                  "address",                   str),
    ("postcode",                 "postcode",                  str),
    ("buildingReference",        "building-reference-number", str),
    ("propertyType",             "property-type",             str),
    ("builtForm",                "built-form",                str),
    ("totalFloorArea",           "total-floor-area",          float),
    ("numberOfHabitableRooms",   "number-habitable-rooms",    int),
    ("currentEnergyRating",      "current-energy-rating",     str),
    ("potentialEnergyRating",    "potential-energy-rating",   str),
    ("constructionAgeBand",      "construction-age-band",     str),
    ("wallsDescription",         "walls-description",         str),
    ("roofDescription",          "roof-description",          str),
    ("windowsDescription",       "windows-description",       str),
    ("mainHeatDescription",      "mainheat-description",      str),
    ("transactionType",          "transaction-type",          str),
    ("environmentImpactCurrent", "environment-impact-current", int),
    ("co2EmissionsCurrent",      "co2-emissions-current",     float),
]


class _Retry(Exception):
    pass


def _cast(value, cast):
    if cast is str:
        return "" if value is None else str(value)
    try:
        return cast(float(value)) if cast is int else cast(value)
    except (TypeError, ValueError):
        return cast(0)


def map_epc_row(row: dict) -> dict:
    return {key: _cast(row.get(field), cast) for key, field, cast in _FIELDS}


def match_house_number(certificates: list, house_number: Optional[str]) -> list:
    """Certificates whose address carries the house number; falls back to the first."""
    if not house_number or not certificates:
        return certificates
    num = house_number.strip().lower()
    matched = []
    for cert in certificates:
        addr = cert["address"].lower()
        if (addr.startswith(num + ",") or addr.startswith(num + " ")
                or f" {num}," in addr or f" {num} " in addr or f"flat {num}" in addr):
            matched.append(cert)
    if not matched:
        logger.info(f"[EPC] no match for house number '{house_number}', using most recent certificate")
        return [certificates[0]]
    return matched


class EPCClient:
    def __init__(
        self,
        api_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        min_delay: float = 2.0,
    ):
        self.api_token  = api_token
        self.min_delay  = min_delay
        self._transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Basic {self.api_token}"
        return headers

    async def _search(self, postcode: str) -> dict:
        async with httpx.AsyncClient(timeout=20.0, transport=self._transport) as client:
            resp = await client.get(
                EPC_API_URL,
                params={"postcode": postcode.strip().upper(), "size": "100"},
                headers=self._headers(),
            )
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _Retry(f"EPC API error: {resp.status_code}")
        if resp.status_code == 404:
            return {"rows": []}
        if resp.status_code >= 400:
            logger.error(f"[EPC] API error {resp.status_code}: {resp.text[:200]}")
            return {"error": f"EPC API error: {resp.status_code}"}
        # the register answers an empty 200 when nothing matches
        if not resp.content.strip():
            return {"rows": []}
        return resp.json()

    async def lookup_epc(self, postcode: str, house_number: Optional[str] = None) -> dict:
        logger.info(f"[EPC] searching postcode={postcode} house={house_number or 'any'}")
        delay = self.min_delay
        attempts = 4
        data = None
        for attempt in range(1, attempts + 1):
            try:
                data = await self._search(postcode)
                break
            except (_Retry, httpx.HTTPError, ValueError) as e:
                if attempt == attempts:
                    logger.error(f"[EPC] lookup failed after {attempt} attempts: {e}")
                    return {"success": False, "error": str(e) or "EPC lookup failed"}
                logger.warning(f"[EPC] attempt {attempt} failed: {e}")
                await asyncio.sleep(min(delay, 15.0))
                delay *= 2

        if "error" in data:
            return {"success": False, "error": data["error"]}
        rows = data.get("rows") or []
        if not rows:
            return {"success": False, "error": NO_RECORDS}

        certificates = [map_epc_row(r) for r in rows]
        matched = match_house_number(certificates, house_number)
        best = matched[0]
        logger.info(
            f"[EPC] found {best['address']} | {best['builtForm']} | "
            f"{best['totalFloorArea']}sqm | {best['constructionAgeBand']}"
        )
        result = {"success": True, "certificate": best}
        if len(matched) > 1:
            result["allCertificates"] = matched
        return result
