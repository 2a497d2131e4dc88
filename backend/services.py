"""
Architect Studio - Service Registry
External connectors built once at startup and injected into routes.
"""

from dataclasses import dataclass

from fastapi import HTTPException, Request

from billing_service import BillingClient
from blob_storage import BlobStorage
from config import Settings
from epc_service import EPCClient
from gemini_service import GeminiClient
from geocoding import Geocoder
from meshy_service import MeshyClient
from perplexity_service import PerplexityClient
from trellis_service import TrellisClient


@dataclass
class Services:
    blob: BlobStorage
    gemini: GeminiClient
    meshy: MeshyClient
    trellis: TrellisClient
    epc: EPCClient
    perplexity: PerplexityClient
    geocoder: Geocoder
    billing: BillingClient


def build_services(settings: Settings) -> Services:
    blob = BlobStorage(settings.blob_token)
    return Services(
        blob=blob,
        gemini=GeminiClient(settings.gemini_api_key, blob),
        meshy=MeshyClient(settings.meshy_api_key),
        trellis=TrellisClient(settings.trellis_space, settings.hf_token),
        epc=EPCClient(settings.epc_api_token),
        perplexity=PerplexityClient(settings.perplexity_api_key),
        geocoder=Geocoder(),
        billing=BillingClient(settings.stripe_secret_key, settings.stripe_publishable_key),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency: the app's connector bundle."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(503, "Services unavailable.")
    return services
