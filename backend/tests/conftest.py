import os

os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient

from auth import create_session_token
from blob_storage import BlobStorageError
from database import Database
from services import Services
from user_db import User


# ── Connector fakes ───────────────────────────────────────────────────────────
class FakeBlob:
    def __init__(self):
        self.objects = {}
        self.fail_put = False

    async def put(self, pathname, data, content_type):
        if self.fail_put:
            raise BlobStorageError("Blob upload failed with status 500")
        url = f"https://store.public.blob.vercel-storage.com/{pathname}"
        self.objects[url] = (data, content_type)
        return url

    async def fetch(self, url):
        if url not in self.objects:
            raise BlobStorageError("Download failed with status 404")
        return self.objects[url]


class FakeGemini:
    configured = True

    def __init__(self):
        self.isometric = {"success": True, "imageUrl": "https://cdn.example/isometric.png"}
        self.visualization = {"success": True, "imageUrl": "https://cdn.example/exterior.png"}
        self.floorplan = {"success": True, "imageUrl": "https://cdn.example/floorplan.png"}
        self.analysis = {"success": True, "analysis": {"propertyType": "semi-detached", "stories": 2}}
        self.search = {
            "success": True,
            "results": {"approvals": [{"modificationType": "rear_extension", "description": "Rear extension",
                                       "estimatedSqFt": 200}]},
        }
        self.calls = []

    async def generate_isometric_floorplan(self, image, mime_type, style_prompt=None):
        self.calls.append(("isometric", style_prompt))
        return self.isometric

    async def generate_property_visualization(self, image, mime_type, analysis, modification_type, description):
        self.calls.append(("visualization", modification_type, description))
        return self.visualization

    async def generate_floorplan_modification(self, image, mime_type, analysis, modification_type, sq_ft):
        self.calls.append(("floorplan", modification_type, sq_ft))
        return self.floorplan

    async def analyze_property_image(self, image, mime_type):
        return self.analysis

    async def search_planning_approvals(self, analysis, address, postcode, lat, lng):
        self.calls.append(("search", address, postcode, lat, lng))
        return self.search


class FakeMeshy:
    def __init__(self):
        self.create = {"success": True, "taskId": "task-3d"}
        self.status = {"success": True, "taskId": "task-3d", "status": "pending", "progress": 40}
        self.retexture = {"success": True, "taskId": "task-tex"}
        self.retexture_status = {"success": True, "taskId": "task-tex", "status": "pending"}
        self.retexture_calls = []

    async def create_image_to_3d_task(self, image_url):
        return self.create

    async def check_meshy_task_status(self, task_id):
        return self.status

    async def create_retexture_task(self, model_url, texture_prompt):
        self.retexture_calls.append((model_url, texture_prompt))
        return self.retexture

    async def check_retexture_task_status(self, task_id):
        return self.retexture_status


class FakeTrellis:
    def __init__(self):
        self.result = {"success": True, "glbUrl": "/tmp/gradio/model.glb"}

    async def generate_trellis_3d(self, image_url, **options):
        return self.result

    async def download_glb(self, location):
        return b"glTF-binary"


class FakeEPC:
    def __init__(self):
        self.result = {
            "success": True,
            "certificate": {
                "address": "12 Acacia Avenue",
                "propertyType": "House",
                "builtForm": "Semi-Detached",
                "totalFloorArea": 90.0,
                "constructionAgeBand": "England and Wales: 1930-1949",
            },
        }

    async def lookup_epc(self, postcode, house_number=None):
        return self.result


class FakePerplexity:
    def __init__(self):
        self.heritage = {"isConservationArea": False, "isListedBuilding": False, "notes": []}
        self.search = {
            "success": True,
            "data": {"councilName": "Leeds City Council", "recentApprovals": [], "knownRestrictions": []},
        }

    async def check_conservation_and_listing(self, postcode, address):
        return self.heritage

    async def search_real_planning_approvals(self, postcode, address, property_type, council_name=None):
        return self.search


class FakeGeocoder:
    async def geocode_address(self, query):
        return {"latitude": 53.8, "longitude": -1.55, "displayName": query, "type": "postcode"}


class FakeBilling:
    configured = True
    publishable_key = "pk_test_123"

    def __init__(self):
        self.customers = []
        self.sessions = []

    def create_customer(self, email, user_id):
        self.customers.append(user_id)
        return "cus_test"

    def create_checkout_session(self, customer_id, price_id, user_id, base_url, mode="payment", count=1):
        self.sessions.append({"customer": customer_id, "price": price_id, "mode": mode, "count": count})
        return "https://checkout.stripe.com/c/session"

    def create_portal_session(self, customer_id, return_url):
        return f"https://billing.stripe.com/p/session?return={return_url}"

    def list_products(self):
        return [{"id": "prod_1", "name": "Pro", "description": None, "metadata": {}, "prices": []}]


# ── Fixtures ──────────────────────────────────────────────────────────────────
@pytest.fixture
def database():
    store = Database("sqlite://")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def services():
    return Services(
        blob=FakeBlob(),
        gemini=FakeGemini(),
        meshy=FakeMeshy(),
        trellis=FakeTrellis(),
        epc=FakeEPC(),
        perplexity=FakePerplexity(),
        geocoder=FakeGeocoder(),
        billing=FakeBilling(),
    )


@pytest.fixture
def client(database, services):
    from main import app

    app.state.db = database
    app.state.services = services
    yield TestClient(app)
    app.state.db = None
    app.state.services = None


def make_user(db, email="ada@example.com") -> User:
    user = User(email=email, first_name="Ada", last_name="Lovelace")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def cookie_for(user) -> dict:
    return {"cookie": f"auth_session={create_session_token(user.id, user.email)}"}


@pytest.fixture
def user(db):
    return make_user(db)


@pytest.fixture
def auth(user):
    return cookie_for(user)


@pytest.fixture
def other_user(db):
    return make_user(db, email="grace@example.com")


@pytest.fixture
def other_auth(other_user):
    return cookie_for(other_user)
