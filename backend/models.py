"""
Architect Studio - Pydantic Request Models
JSON bodies use camelCase keys to match the web client.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ── Auth ──────────────────────────────────────────────────────────────────────

class RegisterBody(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")


class LoginBody(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


# ── Projects / models ─────────────────────────────────────────────────────────

class ProjectCreate(CamelModel):
    name: str = ""


class IsometricRequest(CamelModel):
    prompt: Optional[str] = None


class RetextureRequest(CamelModel):
    texture_prompt: Optional[str] = Field(default=None, alias="texturePrompt")


# ── Planning ──────────────────────────────────────────────────────────────────

class SelectModificationBody(CamelModel):
    modification_type: Optional[str] = Field(default=None, alias="modificationType")


class SelectOptionBody(CamelModel):
    option_tier: Optional[str] = Field(default=None, alias="optionTier")


# ── Billing ───────────────────────────────────────────────────────────────────

class PurchaseBody(CamelModel):
    price_id: Optional[str] = Field(default=None, alias="priceId")
    count: int = Field(default=1, ge=1, le=100)


class CheckoutBody(CamelModel):
    price_id: Optional[str] = Field(default=None, alias="priceId")


class HealthResponse(BaseModel):
    status: str
    version: str
    services: dict


