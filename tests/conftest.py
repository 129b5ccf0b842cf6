import pytest
from fastapi.testclient import TestClient

from galatix.config import Settings
from galatix.gateway import MockPay
from galatix.helpers import new_id, now_ts
from galatix.infra.sql import make_async_engine
from galatix.model.db import Product, create_schema
from galatix.server import create_app

MOCK_SECRET = "test-secret"


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'gala.db'}"


@pytest.fixture
def settings(db_url):
    return Settings(
        database_url=db_url,
        session_secret="test-session-secret",
        base_url="http://testserver",
        mock_secret=MOCK_SECRET,
        mock_webhook_url="http://testserver/api/webhook",
        admin_email="admin@example.org",
    )


@pytest.fixture
async def sessions(db_url):
    engine, SessionAsync, _ = make_async_engine(db_url)
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SessionAsync
    await engine.dispose()


@pytest.fixture
def mockpay():
    return MockPay(secret=MOCK_SECRET, base_url="http://testserver")


@pytest.fixture
def add_product(sessions):
    async def _add(category="ticket", price_cents=7500, **kw):
        p = Product(
            id=new_id(),
            name=kw.pop("name", f"{category} {price_cents}"),
            category=category,
            price_cents=price_cents,
            quantity_sold=kw.pop("quantity_sold", 0),
            is_active=kw.pop("is_active", True),
            sort_order=kw.pop("sort_order", 0),
            created_at=now_ts(),
            **kw,
        )
        async with sessions() as db:
            async with db.begin():
                db.add(p)
        return p.id
    return _add


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_client(client):
    r = client.post("/api/auth/setup", json={
        "email": "Boss@Example.org", "password": "correct-horse",
    })
    assert r.status_code == 200, r.text
    return client
