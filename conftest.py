"""
Shared pytest fixtures: in-memory SQLite database, seeded tenant data and an
authenticated TestClient.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENVIRONMENT"] = "test"

from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from app.database.database import Base, build_engine, get_db
import app.database.models  # noqa: F401
from app.main import app as fastapi_app
from app.modules.auth.models import User, UserTenant
from app.modules.auth.utils import create_access_token
from app.modules.inventory.models import InventoryRecord
from app.modules.products.models import Product
from app.modules.stores.models import Store


@pytest.fixture
def engine():
    test_engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant_id():
    return uuid4()


def create_user(db, tenant_id, roles, email=None) -> User:
    user = User(email=email or f"{uuid4().hex[:10]}@example.com", full_name=email, is_active=True)
    db.add(user)
    db.flush()
    db.add(UserTenant(user_id=user.id, tenant_id=tenant_id, roles=list(roles), is_active=True))
    db.commit()
    return user


@pytest.fixture
def users(db_session, tenant_id):
    return SimpleNamespace(
        requester=create_user(db_session, tenant_id, ["cashier"], "cashier@example.com"),
        manager=create_user(db_session, tenant_id, ["manager"], "manager@example.com"),
        second_manager=create_user(db_session, tenant_id, ["manager"], "manager2@example.com"),
        finance=create_user(db_session, tenant_id, ["finance"], "finance@example.com"),
        admin=create_user(db_session, tenant_id, ["admin"], "admin@example.com"),
        viewer=create_user(db_session, tenant_id, ["viewer"], "viewer@example.com"),
    )


@pytest.fixture
def stores(db_session, tenant_id):
    source = Store(tenant_id=tenant_id, name="Main Store", code="MAIN")
    destination = Store(tenant_id=tenant_id, name="North Branch", code="NORTH")
    other = Store(tenant_id=tenant_id, name="South Branch", code="SOUTH")
    db_session.add_all([source, destination, other])
    db_session.commit()
    return SimpleNamespace(source=source, destination=destination, other=other)


@pytest.fixture
def product(db_session, tenant_id):
    item = Product(tenant_id=tenant_id, name="Arroz Premium 1kg", sku="ARZ-001", price_base=Decimal("10.00"))
    db_session.add(item)
    db_session.commit()
    return item


@pytest.fixture
def source_inventory(db_session, tenant_id, stores, product):
    """100 units at 10.00 in the source store."""
    record = InventoryRecord(
        tenant_id=tenant_id,
        store_id=stores.source.id,
        product_id=product.id,
        quantity_on_hand=Decimal("100"),
        quantity_reserved=Decimal("0"),
        unit_cost=Decimal("10.00")
    )
    db_session.add(record)
    db_session.commit()
    return record


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as test_client:
        yield test_client
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(tenant_id):
    def build(user, store_id=None):
        headers = {
            "Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}",
            "X-Tenant-ID": str(tenant_id),
        }
        if store_id:
            headers["X-Store-ID"] = str(store_id)
        return headers
    return build


@pytest.fixture
def user_factory(db_session):
    """Create a member of any tenant: user_factory(tenant_id, roles)."""
    def build(tenant, roles, email=None):
        return create_user(db_session, tenant, roles, email)
    return build
