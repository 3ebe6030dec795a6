"""Shared test fixtures for PharmaSeal."""

import pytest
from httpx import ASGITransport, AsyncClient


SECRET_KEY = "test-secret-key-for-unit-tests"

MANUFACTURER = "0x" + "a1" * 20
DISTRIBUTOR = "0x" + "b2" * 20
DISTRIBUTOR_2 = "0x" + "b3" * 20
RETAILER = "0x" + "c3" * 20
PROVIDER = "0x" + "d4" * 20
REGULATOR = "0x" + "e5" * 20

SEED_STAKEHOLDERS = [
    (MANUFACTURER, "Acme Pharma", "MANUFACTURER"),
    (DISTRIBUTOR, "Northline Distribution", "DISTRIBUTOR"),
    (DISTRIBUTOR_2, "Southline Distribution", "DISTRIBUTOR"),
    (RETAILER, "Corner Pharmacy", "RETAILER"),
    (PROVIDER, "General Hospital", "HEALTHCARE_PROVIDER"),
    (REGULATOR, "Drug Safety Authority", "REGULATOR"),
]


@pytest.fixture
def secret_key():
    return SECRET_KEY


@pytest.fixture
def wallets():
    return {
        "manufacturer": MANUFACTURER,
        "distributor": DISTRIBUTOR,
        "distributor_2": DISTRIBUTOR_2,
        "retailer": RETAILER,
        "provider": PROVIDER,
        "regulator": REGULATOR,
    }


@pytest.fixture
def app(tmp_path, monkeypatch):
    """Create a test app backed by a throwaway SQLite file and in-memory collaborators."""
    monkeypatch.setenv("PHARMASEAL_DB_URL", f"sqlite+aiosqlite:///{tmp_path / 'pharmaseal.db'}")
    monkeypatch.setenv("PHARMASEAL_SECRET_KEY", SECRET_KEY)
    monkeypatch.setenv("PHARMASEAL_LEDGER_BACKEND", "memory")
    monkeypatch.setenv("PHARMASEAL_DOCUMENT_STORE_BACKEND", "memory")
    monkeypatch.setenv("PHARMASEAL_CONFIRMATION_TIMEOUT", "0.2")
    monkeypatch.setenv("PHARMASEAL_RETRY_BACKOFF_BASE", "0")

    # Clear caches and singletons so new env vars take effect
    from pharmaseal.common.config import get_settings
    get_settings.cache_clear()

    from pharmaseal.deps import reset_singletons
    reset_singletons()

    from pharmaseal.app import create_app
    yield create_app()

    get_settings.cache_clear()
    reset_singletons()


@pytest.fixture
async def client(app):
    # Manually init DB since ASGITransport doesn't run lifespan
    from pharmaseal.deps import get_db, get_lifecycle_manager
    db = get_db()
    await db.init()
    await db.create_all()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await get_lifecycle_manager().drain()
    await db.close()


@pytest.fixture
async def credentials(client):
    """Register one active stakeholder per seed entry; wallet -> raw credential."""
    from pharmaseal.deps import get_db, get_stakeholder_service
    svc = get_stakeholder_service()
    creds = {}
    async with get_db().get_session() as session:
        for wallet, name, role in SEED_STAKEHOLDERS:
            _, credential = await svc.register(
                session, wallet, name, role, is_active=True,
            )
            creds[wallet] = credential
    return creds


@pytest.fixture
def login_as(client, credentials):
    """Async factory: wallet -> token payload of a fresh session."""
    async def _login(wallet: str) -> dict:
        resp = await client.post("/auth/login", json={
            "wallet_address": wallet, "proof": credentials[wallet],
        })
        assert resp.status_code == 200, resp.text
        return resp.json()["data"]
    return _login


@pytest.fixture
def auth_headers(login_as):
    """Async factory: wallet -> Authorization headers for a fresh session."""
    async def _headers(wallet: str) -> dict:
        tokens = await login_as(wallet)
        return {"Authorization": f"Bearer {tokens['access_token']}"}
    return _headers
