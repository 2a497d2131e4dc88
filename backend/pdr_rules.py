"""
Architect Studio - Permitted Development Rights Engine
=====================================================
UK householder PDR limits (GPDO 2015, Schedule 2, Part 1), extension option
tiers, regional cost estimates, Party Wall Act exposure and neighbour impact.

Pure logic: no I/O. Results are plain dicts with camelCase keys so they can
be stored as JSON and returned to the web client unchanged.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# ── Cost table (GBP per sqm, 2024/25 UK averages) ─────────────────────────────
COST_PER_SQM = {
    "rear_single_storey": {"low": 1500, "mid": 2200, "high": 3200},
    "rear_two_storey":    {"low": 1800, "mid": 2500, "high": 3500},
    "side":               {"low": 1600, "mid": 2300, "high": 3300},
    "loft":               {"low": 1200, "mid": 1800, "high": 2800},
    "wraparound":         {"low": 1800, "mid": 2600, "high": 3800},
    "basement":           {"low": 3000, "mid": 4000, "high": 6000},
    "outbuilding":        {"low": 1000, "mid": 1500, "high": 2200},
}

PLANNING_FEE = {"low": 250, "mid": 500, "high": 750}

_REGIONS = [
    ("London",     1.3,  "E EC N NW SE SW W WC"),
    ("South East", 1.15, "BN CT GU HP ME MK OX PO RG RH SL SO TN KT SM CR DA BR"),
    ("South West", 1.05, "BA BS DT EX GL PL SN SP TA TQ TR BH"),
    ("Midlands",   1.0,  "B CV DE DY LE NG NN PE ST WS WV WR"),
    ("North",      0.9,  "BD BL CH CW DH DL DN FY HD HG HU HX L LA LS M NE OL PR S SK SR TS WA WF WN YO"),
]
REGION_MULTIPLIERS = {
    prefix: {"region": region, "multiplier": mult}
    for region, mult, prefixes in _REGIONS
    for prefix in prefixes.split()
}
DEFAULT_REGION = {"region": "England Average", "multiplier": 1.0}

EXTENSION_TIERS = ("pdr_only", "moderate_planning", "maximum_extension")


@dataclass
class PDRInput:
    property_type: str            # detached | semi_detached | terraced | bungalow | flat | other
    total_floor_area_sqm: float
    stories: int
    is_conservation_area: bool
    is_listed_building: bool
    previously_extended: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════════

def round_half_up(x: float) -> int:
    """Rounds .5 upwards, unlike round() which rounds half to even."""
    return int(math.floor(x + 0.5))


def _one_dp(x: float) -> float:
    return round_half_up(x * 10) / 10


def _num(x) -> str:
    # 3.0 -> "3" in descriptions
    return str(int(x)) if float(x).is_integer() else str(x)


def get_region_info(postcode: str) -> dict:
    prefix = re.sub(r"[0-9].*", "", re.sub(r"\s", "", postcode or "")).upper()
    return REGION_MULTIPLIERS.get(prefix, DEFAULT_REGION)


def map_epc_built_form(built_form: str) -> str:
    lower = (built_form or "").lower()
    if "detach" in lower and "semi" not in lower:
        return "detached"
    if "semi" in lower:
        return "semi_detached"
    if "terrace" in lower:
        return "terraced"
    if "bungalow" in lower:
        return "bungalow"
    if "flat" in lower or "maisonette" in lower or "apartment" in lower:
        return "flat"
    return "other"


def build_pdr_input_from_epc(epc: dict, is_conservation_area: bool, is_listed_building: bool) -> PDRInput:
    stories = 1 if "bungalow" in (epc.get("propertyType") or "").lower() else 2
    return PDRInput(
        property_type=map_epc_built_form(epc.get("builtForm") or ""),
        total_floor_area_sqm=epc.get("totalFloorArea") or 0,
        stories=stories,
        is_conservation_area=is_conservation_area,
        is_listed_building=is_listed_building,
        previously_extended=False,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# PDR assessment
# ═══════════════════════════════════════════════════════════════════════════════

def _no_rights(category: str, rear_note: str, other_note: str, loft_note: str,
               conservation: list, listed: list, summary: str) -> dict:
    return {
        "propertyCategory": category,
        "rearExtension": {
            "singleStoreyMaxDepthM": 0, "singleStoreyMaxHeightM": 0, "twoStoreyMaxDepthM": 0,
            "twoStoreyMinDistFromBoundaryM": 0, "priorApprovalMaxDepthM": 0,
            "permitted": False, "notes": [rear_note],
        },
        "sideExtension": {
            "maxWidthPercentOfOriginal": 0, "singleStoreyOnly": True, "maxHeightM": 0,
            "minDistFromBoundaryM": 0, "permitted": False, "notes": [other_note],
        },
        "loftConversion": {
            "maxAdditionalVolumeM3": 0, "dormerAllowed": False, "frontDormerAllowed": False,
            "sideWindowObscuredGlazed": True, "permitted": False, "notes": [loft_note],
        },
        "outbuilding": {
            "maxCoveragePercent": 0, "maxHeightNearBoundaryM": 0, "maxHeightElsewhereM": 0,
            "permitted": False, "notes": [other_note],
        },
        "conservationAreaRestrictions": conservation,
        "listedBuildingRestrictions": listed,
        "overallPDRSummary": summary,
    }


def calculate_pdr(inp: PDRInput) -> dict:
    ptype = inp.property_type
    conservation = inp.is_conservation_area

    if inp.is_listed_building:
        return _no_rights(
            ptype,
            "Listed building: all external changes require listed building consent",
            "Listed building: not permitted",
            "Listed building: not permitted",
            [],
            [
                "All external alterations require Listed Building Consent",
                "Internal alterations may also require consent depending on grade",
                "Replacement windows, doors, and roof materials all need approval",
            ],
            "This is a listed building. No permitted development rights apply. All changes "
            "require Listed Building Consent and likely planning permission.",
        )

    if ptype == "flat":
        return _no_rights(
            "flat",
            "Flats: no extension rights under PDR",
            "Flats: not permitted",
            "Flats: not permitted under PDR",
            ["Flats in conservation areas have no extension PDR rights"] if conservation else [],
            [],
            "Flats and maisonettes have very limited permitted development rights. Most changes "
            "require planning permission from your local authority.",
        )

    detached = ptype == "detached"
    terraced = ptype == "terraced"
    bungalow = ptype == "bungalow"

    rear_depth  = 4 if detached or bungalow else 3
    prior_depth = 8 if detached or bungalow else 6
    rear_notes = []
    if conservation:
        rear_notes.append("Conservation area: single storey rear only, max 1 storey, materials must match")
    if inp.previously_extended:
        rear_notes.append("Previously extended: total extension depth includes prior extensions")

    side_ok = not terraced
    side_notes = ["Conservation area: side extensions NOT permitted under PDR"] if conservation else []

    loft_volume = 40 if terraced else 50
    loft_notes = []
    if conservation:
        loft_notes.append("Conservation area: no dormer on any roof slope facing a highway")
        loft_notes.append("Conservation area: no cladding of external walls")
    if bungalow:
        loft_notes.append("Bungalow: loft conversion may change the character significantly; "
                          "additional scrutiny likely")

    restrictions = [
        "No side extensions permitted under PDR",
        "No cladding of external walls",
        "Rear extensions limited to single storey",
        "No dormers on roof slopes facing a highway",
        "Materials must match existing in appearance",
    ] if conservation else []

    return {
        "propertyCategory": ptype,
        "rearExtension": {
            "singleStoreyMaxDepthM": rear_depth,
            "singleStoreyMaxHeightM": 4,
            "twoStoreyMaxDepthM": 0 if conservation else 3,
            "twoStoreyMinDistFromBoundaryM": 7,
            "priorApprovalMaxDepthM": rear_depth if conservation else prior_depth,
            "permitted": True,
            "notes": rear_notes,
        },
        "sideExtension": {
            "maxWidthPercentOfOriginal": 50 if side_ok else 0,
            "singleStoreyOnly": True,
            "maxHeightM": 4,
            "minDistFromBoundaryM": 1,
            "permitted": side_ok and not conservation,
            "notes": side_notes,
        },
        "loftConversion": {
            "maxAdditionalVolumeM3": loft_volume,
            "dormerAllowed": True,
            "frontDormerAllowed": False,
            "sideWindowObscuredGlazed": True,
            "permitted": not bungalow or inp.stories >= 1,
            "notes": loft_notes,
        },
        "outbuilding": {
            "maxCoveragePercent": 50,
            "maxHeightNearBoundaryM": 2.5,
            "maxHeightElsewhereM": 3 if bungalow else 4,
            "permitted": True,
            "notes": ["Must not be forward of the principal elevation facing a highway"] if conservation else [],
        },
        "conservationAreaRestrictions": restrictions,
        "listedBuildingRestrictions": [],
        "overallPDRSummary": _pdr_summary(ptype, conservation, rear_depth, loft_volume, side_ok),
    }


def _pdr_summary(ptype: str, conservation: bool, rear_depth: int, loft_volume: int, side_ok: bool) -> str:
    parts = [f"As a {ptype.replace('_', '-', 1)} property"]
    if conservation:
        parts.append("in a conservation area")
    parts.append(f"you can extend up to {rear_depth}m to the rear (single storey) under PDR")
    if side_ok and not conservation:
        parts.append("add a single-storey side extension up to 50% of original width")
    parts.append(f"and convert the loft adding up to {loft_volume}m³")
    return ", ".join(parts) + ". Two-storey rear extensions up to 3m are also possible (not in conservation areas)."


# ═══════════════════════════════════════════════════════════════════════════════
# Extension options
# ═══════════════════════════════════════════════════════════════════════════════

def _option(tier, label, description, planning, extensions, likelihood, notes, party_wall, weeks) -> dict:
    return {
        "tier": tier,
        "label": label,
        "description": description,
        "requiresPlanningPermission": planning,
        "extensions": extensions,
        "totalAdditionalSqM": sum(e["additionalSqM"] for e in extensions),
        "estimatedCostGBP": {"low": 0, "mid": 0, "high": 0},
        "approvalLikelihood": likelihood,
        "planningNotes": notes,
        "partyWallRequired": party_wall,
        "buildingRegsRequired": True,
        "timelineWeeks": {"min": weeks[0], "max": weeks[1]},
    }


def generate_extension_options(
    pdr: dict,
    epc: Optional[dict],
    real_approvals: Optional[dict],
    orientation: Optional[str] = None,
) -> list:
    """Three tiers: PDR only, moderate full planning, and maximum extension."""
    area = (epc or {}).get("totalFloorArea")
    if area is None:
        area = 80
    category = pdr["propertyCategory"]
    rear, side, loft = pdr["rearExtension"], pdr["sideExtension"], pdr["loftConversion"]
    detached_or_semi = category in ("detached", "semi_detached")
    real_approvals = real_approvals or {}

    # ── Tier 1: PDR compliant ────────────────────────────────────────────────
    pdr_exts = []
    if rear["permitted"]:
        depth = rear["singleStoreyMaxDepthM"]
        width = min(area / (2 if category == "terraced" else 2.5), 6)
        pdr_exts.append({
            "type": "rear_single_storey",
            "description": f"Single-storey rear extension ({_num(depth)}m deep)",
            "additionalSqM": round_half_up(depth * width),
            "depthM": depth,
            "widthM": _one_dp(width),
            "heightM": 3,
        })
    if loft["permitted"] and loft["maxAdditionalVolumeM3"] > 0:
        volume = loft["maxAdditionalVolumeM3"]
        pdr_exts.append({
            "type": "loft",
            "description": f"Loft conversion with rear dormer ({_num(volume)}m³ max)",
            "additionalSqM": round_half_up(volume / 2.4),
        })

    options = [_option(
        "pdr_only", "PDR-Compliant Only",
        "Extensions permitted without planning permission under current Permitted Development "
        "Rights. Fastest route with no planning risk.",
        False, pdr_exts, "very_high",
        [
            "No planning application required",
            "Building regulations approval still needed",
            "Party wall notices may be required for shared boundaries",
            "Must comply with all PDR conditions (height, depth, materials)",
        ],
        category != "detached", (8, 16),
    )]

    # ── Tier 2: moderate planning ────────────────────────────────────────────
    mod_exts = []
    if rear["permitted"]:
        depth = min(rear["priorApprovalMaxDepthM"], 6)
        width = min(area / 2, 7)
        mod_exts.append({
            "type": "rear_single_storey",
            "description": f"Single-storey rear extension ({_num(depth)}m deep, larger via planning)",
            "additionalSqM": round_half_up(depth * width),
            "depthM": depth,
            "widthM": _one_dp(width),
            "heightM": 3.5,
        })
    if side["permitted"] or detached_or_semi:
        side_depth = min(area / 10, 5)
        mod_exts.append({
            "type": "side",
            "description": "Single-storey side extension (3m wide)",
            "additionalSqM": round_half_up(3 * side_depth),
            "widthM": 3,
            "depthM": side_depth,
            "heightM": 3,
        })
    if loft["permitted"]:
        mod_exts.append({
            "type": "loft",
            "description": "Loft conversion with dormer windows",
            "additionalSqM": round_half_up((loft["maxAdditionalVolumeM3"] + 10) / 2.4),
        })

    mod_notes = ["Full planning application required", "Building regulations approval required"]
    if real_approvals.get("commonExtensionTypes"):
        mod_notes.append(f"Common approvals in area: {', '.join(real_approvals['commonExtensionTypes'])}")

    options.append(_option(
        "moderate_planning", "Full Planning (Moderate)",
        "Extends beyond PDR limits with a full planning application. Based on similar approvals "
        "in your area, these extensions have a good chance of approval.",
        True, mod_exts, "high", mod_notes, category != "detached", (16, 30),
    ))

    # ── Tier 3: maximum ──────────────────────────────────────────────────────
    max_exts = []
    if category != "flat":
        width = min(area / 2, 7)
        max_exts.append({
            "type": "rear_two_storey",
            "description": "Two-storey rear extension (4m deep)",
            "additionalSqM": round_half_up(4 * width * 2),
            "depthM": 4,
            "widthM": _one_dp(width),
            "heightM": 6,
        })
    if detached_or_semi:
        max_exts.append({
            "type": "wraparound",
            "description": "Wraparound (rear + side) ground floor extension",
            "additionalSqM": round_half_up(area * 0.25),
        })
    if category != "flat":
        max_exts.append({
            "type": "loft",
            "description": "Full loft conversion with large rear dormer and Juliet balcony",
            "additionalSqM": round_half_up(area * 0.6),
        })

    max_notes = [
        "Full planning application required",
        "Architect drawings recommended",
        "May require structural engineer involvement",
        "Higher scrutiny from planning officers expected",
    ]
    if real_approvals.get("knownRestrictions"):
        max_notes.append(f"Known local restrictions: {'; '.join(real_approvals['knownRestrictions'])}")

    options.append(_option(
        "maximum_extension", "Maximum Extension",
        "The largest feasible extension combining rear, side/wraparound, and loft. Ambitious "
        "scope that pushes planning boundaries based on what has been approved locally.",
        True, max_exts, "moderate", max_notes, True, (24, 52),
    ))
    return options


def estimate_costs(options: list, postcode: str) -> list:
    """Fills estimatedCostGBP on copies of the options."""
    multiplier = get_region_info(postcode)["multiplier"]
    costed = []
    for opt in options:
        totals = {"low": 0, "mid": 0, "high": 0}
        for ext in opt["extensions"]:
            rates = COST_PER_SQM.get(ext["type"], COST_PER_SQM["rear_single_storey"])
            for band in totals:
                totals[band] += round_half_up(ext["additionalSqM"] * rates[band] * multiplier)
        if opt["requiresPlanningPermission"]:
            for band in totals:
                totals[band] += PLANNING_FEE[band]
        costed.append({**opt, "estimatedCostGBP": totals})
    return costed


# ═══════════════════════════════════════════════════════════════════════════════
# Party wall and neighbour impact
# ═══════════════════════════════════════════════════════════════════════════════

def assess_party_wall(property_type: str, extensions: list) -> dict:
    if property_type == "detached":
        return {
            "required": False,
            "affectedBoundaries": [],
            "totalEstimatedCostGBP": 0,
            "notes": ["Detached property: Party Wall Act unlikely to apply unless digging near boundary"],
        }

    semi = property_type in ("semi_detached", "semi-detached")
    boundaries = []
    for ext in extensions:
        if ext["type"] in ("rear_single_storey", "rear_two_storey", "wraparound"):
            if semi:
                boundaries.append(_boundary("left", f"{ext['description']} - extends along shared party wall", 1200))
            else:
                for side in ("left", "right"):
                    boundaries.append(_boundary(
                        side, f"{ext['description']} - extends along shared boundary ({side})", 1200
                    ))
        if ext["type"] == "side":
            boundaries.append(_boundary("left" if semi else "right", "Side extension near boundary", 1000))
        if ext["type"] == "loft":
            boundaries.append(_boundary(
                "left", "Loft conversion may affect shared party wall at roof level", 800
            ))

    # later entries for the same side replace earlier ones
    by_side = {}
    for b in boundaries:
        by_side[b["side"]] = b
    unique = list(by_side.values())

    return {
        "required": bool(unique),
        "affectedBoundaries": unique,
        "totalEstimatedCostGBP": sum(b["estimatedSurveyorCostGBP"] for b in unique),
        "notes": [
            "Party Wall notices must be served at least 2 months before work begins",
            "Each adjoining owner can appoint their own surveyor at your expense",
            "Costs shown are estimates per boundary - actual costs vary",
        ] if unique else ["No party wall notices likely required"],
    }


def _boundary(side: str, reason: str, cost: int) -> dict:
    return {"side": side, "reason": reason, "noticeRequired": True, "estimatedSurveyorCostGBP": cost}


def assess_neighbour_impact(property_type: str, extensions: list, orientation: Optional[str]) -> dict:
    types = {e["type"] for e in extensions}
    two_storey = "rear_two_storey" in types
    has_side   = "side" in types
    has_loft   = "loft" in types
    max_depth  = max([e["depthM"] for e in extensions if e.get("depthM")] + [0])
    attached   = property_type != "detached"

    # 45-degree rule
    breaches_45 = two_storey and max_depth > 3
    affected = []
    if breaches_45 and attached:
        affected.append("Adjoining neighbour(s)")
    if has_side:
        affected.append("Side neighbour")

    # overshadowing
    shadow, direction = "none", ""
    if two_storey:
        shadow = "moderate" if max_depth > 4 else "minor"
        if orientation:
            north = orientation.upper().startswith(("N", "NE", "NW"))
            direction = "South (rear garden)" if north else "North-facing rear neighbours"
            if north:
                shadow = "minor"
    if has_side and shadow == "none":
        shadow = "minor"

    # overlooking
    overlook = "none"
    mitigations = []
    if two_storey or has_loft:
        overlook = "moderate" if attached else "low"
        mitigations.append("Use obscured glazing on side-facing windows")
        mitigations.append("Position windows to face own garden rather than neighbours")
        if has_loft:
            mitigations.append("Roof windows (Velux) have less overlooking impact than dormers")

    risk = "low"
    if breaches_45 or shadow == "moderate" or overlook == "moderate":
        risk = "moderate"
    if shadow == "significant" or overlook == "high":
        risk = "high"

    recommendations = []
    if risk != "low":
        recommendations.append("Consider discussing plans with affected neighbours before submitting")
        recommendations.append("Pre-application advice from your local council is recommended")
    if breaches_45:
        recommendations.append("Reducing the two-storey depth to 3m or less would pass the 45-degree rule")

    return {
        "fortyFiveDegreeRule": {
            "passed": not breaches_45,
            "affectedNeighbours": affected,
            "notes": (
                f"Two-storey extension at {_num(max_depth)}m depth may breach the 45-degree line drawn "
                "from the nearest ground-floor habitable window of the adjoining property."
                if breaches_45 else
                "Extension depth is within acceptable limits under the 45-degree rule."
            ),
        },
        "overshadowing": {
            "severity": shadow,
            "affectedDirection": direction,
            "notes": (
                "Minimal overshadowing expected." if shadow == "none" else
                f"{shadow.capitalize()} overshadowing possible. Planning officers will assess "
                "impact on neighbouring amenity."
            ),
        },
        "overlooking": {"risk": overlook, "mitigations": mitigations},
        "overallRisk": risk,
        "recommendations": recommendations,
    }
