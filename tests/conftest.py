"""
Shared fixtures for the Dual Power Women Hub test suite.

FakeBin stands in for the requests.Session the DocumentStore talks to, so the
real GET/PUT code path runs against an in-memory JSON document.
"""
import copy
import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.pop("DOCUMENT_STORE_URL", None)
os.environ.pop("CLOUDINARY_CLOUD_NAME", None)

import pytest
import requests

import accounts
from ai_services import AdviceReply, ValidationVerdict
from database import DocumentStore

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return copy.deepcopy(self._payload)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeBin:
    """In-memory JSONBin: GET returns {"record": ...}, PUT replaces the record."""

    def __init__(self, record=None):
        self.record = {} if record is None else record
        self.gets = 0
        self.puts = []
        self.fail_reads = False
        self.fail_writes = False
        self.get_status = 200
        self.on_get = None

    def get(self, url, headers=None, timeout=None):
        self.gets += 1
        if self.fail_reads:
            raise requests.ConnectionError("store unreachable")
        if self.on_get:
            self.on_get(self)
        if self.get_status != 200:
            return FakeResponse(self.get_status, None, "error")
        return FakeResponse(200, {"record": copy.deepcopy(self.record)})

    def put(self, url, json=None, headers=None, timeout=None):
        if self.fail_writes:
            raise requests.ConnectionError("store unreachable")
        self.record = copy.deepcopy(json)
        self.puts.append(copy.deepcopy(json))
        return FakeResponse(200, {"record": json})


class FakeAdvisor:
    def __init__(self, text="Drink water and rest.", fail=False):
        self.text = text
        self.fail = fail
        self.calls = []

    def health_advice(self, history, message, escalated):
        from ai_services import AIServiceError
        self.calls.append((message, escalated))
        if self.fail:
            raise AIServiceError("model offline")
        return AdviceReply(text=self.text)


class FakeAI(FakeAdvisor):
    """Stands in for GeminiClient in API tests."""

    def __init__(self, id_valid=True, assets_valid=True, **kwargs):
        super().__init__(**kwargs)
        self.id_valid = id_valid
        self.assets_valid = assets_valid

    def validate_id_document(self, front_image, back_image):
        return ValidationVerdict(valid=self.id_valid, reason=None if self.id_valid else "Not an ID")

    def validate_asset_images(self, images, title):
        return ValidationVerdict(valid=self.assets_valid, reason=None if self.assets_valid else "Blurry")

    def analyze_asset(self, image):
        return {"title": "Bike"}

    def edit_image(self, image, instruction):
        return "ZWRpdGVk"

    def find_local_suppliers(self, query, lat, lng):
        return {"text": "Two shops nearby.", "chunks": []}

    def generate_video(self, prompt, image=None):
        return None


@pytest.fixture
def fake_bin():
    return FakeBin()


@pytest.fixture
def store(fake_bin):
    return DocumentStore("https://bin.test/v3/b/hub", "test-key", session=fake_bin, timeout=1, max_retries=3)


@pytest.fixture
def make_user(store):
    """Register a user and optionally approve them; returns the public profile."""
    counter = {"n": 0}

    def factory(email=None, approved=True, name="Amina Wanjiru", phone=None):
        counter["n"] += 1
        email = email or f"user{counter['n']}@hub.co.ke"
        phone = phone or f"07000000{counter['n']:02d}"
        user = accounts.register(store, name, email, phone, STRONG_PASSWORD, STRONG_PASSWORD)
        if approved:
            user = accounts.approve(store, user["id"])
        return user

    return factory


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def client(store, fake_ai):
    from fastapi.testclient import TestClient
    import main

    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_ai] = lambda: fake_ai
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
