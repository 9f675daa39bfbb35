# tests/conftest.py
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from plato.main import app
from plato.db.database import Base

# Import models so metadata knows about all tables
import plato.models.client_state_slot

API_BASE_URL = "http://plato.test/api"


@pytest.fixture(scope="session")
def engine():
    """Create an in-memory SQLite database shared across tests."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def clean_db(engine):
    """Reset all tables before each test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture()
def db(engine):
    """Return a new SQLAlchemy session for each test."""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


class FakePlatoBackend:
    """
    Just enough of the Plato REST API to drive the invitation flow.

    Mounted behind httpx.MockTransport; records every request it sees.
    """

    def __init__(self):
        self.invitations = {}
        self.invite_codes = {}
        self.organizations = {}
        self.members = {}
        self.user = None
        self.auth_status = None
        self.unreachable = set()
        self.requests = []

    # ---- setup helpers ----

    def add_organization(self, organization_id="org1", company_name="Acme Corp"):
        self.organizations[organization_id] = {"id": organization_id, "companyName": company_name}
        self.members.setdefault(organization_id, set())

    def add_invitation(
        self,
        token="abc123",
        organization_id="org1",
        role="recruiter",
        status="pending",
        expires_at=None,
        invite_code=None,
    ):
        if organization_id not in self.organizations:
            self.add_organization(organization_id)
        self.invitations[token] = {
            "token": token,
            "organization_id": organization_id,
            "role": role,
            "status": status,
            "expires_at": expires_at or (datetime.now(timezone.utc) + timedelta(days=7)),
        }
        if invite_code:
            self.invite_codes[invite_code] = token

    def sign_in(self, user_id="user-1"):
        self.user = {"id": user_id, "email": f"{user_id}@example.com"}

    def calls(self, method, path):
        return [r for r in self.requests if r == (method, path)]

    # ---- transport ----

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        self.requests.append((request.method, path))

        if path in self.unreachable:
            raise httpx.ConnectError("backend unreachable", request=request)

        if request.method == "GET" and path.startswith("/invitations/public/"):
            return self._public_invitation(path.rsplit("/", 1)[-1])
        if request.method == "GET" and path == "/auth/user":
            if self.auth_status is not None:
                return httpx.Response(self.auth_status, json={"message": "Auth backend error"})
            if self.user is None:
                return httpx.Response(401, json={"message": "Unauthorized"})
            return httpx.Response(200, json=self.user)
        if request.method == "POST" and path == "/invitations/accept":
            return self._accept(json.loads(request.content).get("token"))
        if request.method == "POST" and path == "/invitations/accept-code":
            return self._accept_code(json.loads(request.content))
        if request.method == "GET" and path == "/organizations/current":
            return self._current_organization()
        if request.method == "GET" and path == "/companies/team":
            return self._team()

        return httpx.Response(404, json={"message": "Not found"})

    def _usable(self, invitation):
        return (
            invitation is not None
            and invitation["status"] == "pending"
            and invitation["expires_at"] > datetime.now(timezone.utc)
        )

    def _public_invitation(self, token):
        invitation = self.invitations.get(token)
        if not self._usable(invitation):
            return httpx.Response(404, json={"message": "Invalid or expired invitation link"})
        organization = self.organizations[invitation["organization_id"]]
        return httpx.Response(200, json={
            "invitation": {
                "token": token,
                "role": invitation["role"],
                "organization": organization,
                "expiresAt": invitation["expires_at"].isoformat(),
            }
        })

    def _join(self, invitation):
        if self.user is None:
            return httpx.Response(401, json={"message": "Unauthorized"})
        organization_id = invitation["organization_id"]
        if self.user["id"] in self.members[organization_id]:
            return httpx.Response(400, json={"message": "You are already a member of this organization"})
        if not self._usable(invitation):
            return httpx.Response(404, json={"message": "Invalid or expired invitation"})

        self.members[organization_id].add(self.user["id"])
        invitation["status"] = "accepted"
        organization = self.organizations[organization_id]
        return httpx.Response(200, json={
            "message": f"Successfully joined {organization['companyName']}'s hiring team!",
            "organization": organization,
            "role": invitation["role"],
            "newMember": True,
        })

    def _accept(self, token):
        invitation = self.invitations.get(token)
        if invitation is None:
            return httpx.Response(404, json={"message": "Invalid or expired invitation"})
        return self._join(invitation)

    def _accept_code(self, body):
        token = self.invite_codes.get(body.get("inviteCode"))
        if token is None:
            return httpx.Response(400, json={"message": "Invalid invite code"})
        invitation = self.invitations[token]
        if str(invitation["organization_id"]) != str(body.get("orgId")):
            return httpx.Response(400, json={"message": "Organization ID does not match invite code"})
        return self._join(invitation)

    def _current_organization(self):
        if self.user is None:
            return httpx.Response(401, json={"message": "Unauthorized"})
        for organization_id, members in self.members.items():
            if self.user["id"] in members:
                return httpx.Response(200, json=self.organizations[organization_id])
        return httpx.Response(404, json={"message": "No organization"})

    def _team(self):
        if self.user is None:
            return httpx.Response(401, json={"message": "Unauthorized"})
        for organization_id, members in self.members.items():
            if self.user["id"] in members:
                return httpx.Response(200, json=[{"userId": m} for m in sorted(members)])
        return httpx.Response(404, json={"message": "No organization"})


@pytest.fixture
def backend():
    """Fake Plato backend with an organization and no signed-in user."""
    fake = FakePlatoBackend()
    fake.add_organization("org1", "Acme Corp")
    return fake


@pytest.fixture
async def api_client(backend):
    """httpx client wired to the fake backend."""
    async with httpx.AsyncClient(
        base_url=API_BASE_URL,
        transport=httpx.MockTransport(backend.handle),
    ) as client:
        yield client


@pytest.fixture
def client(db, backend):
    """FastAPI test client routing DB and backend deps to test doubles."""
    from plato.db.database import get_db
    from plato.api.dependencies.client import get_api_client
    from plato.services.query_cache import QueryCacheRegistry

    def override_get_db():
        try:
            yield db
        finally:
            pass

    async def override_get_api_client():
        async with httpx.AsyncClient(
            base_url=API_BASE_URL,
            transport=httpx.MockTransport(backend.handle),
        ) as client:
            yield client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_api_client] = override_get_api_client
    app.state.query_caches = QueryCacheRegistry()

    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def anyio_backend():
    """The suite drives asyncio primitives directly, so run it on asyncio only."""
    return "asyncio"
