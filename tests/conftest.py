"""Pytest configuration and fixtures."""

import os

# Keep the application engine off the on-disk database while tests import the app
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")

from decimal import Decimal
from typing import Generator

import bcrypt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from erp_core.app.config import Settings, get_settings
from erp_core.app.db import Base
from erp_core.app.main import app
from erp_core.app import models, models_inventory, models_commercial  # noqa: F401
from erp_core.app.models import PartyType, User, UserRole
from erp_core.app.models_inventory import ItemType
from erp_core.app.security import RequestContext, create_access_token, get_db
from erp_core.app.services.inventory_service import InventoryService
from erp_core.app.services.party_service import PartyService
from erp_core.app.services.treasury_service import TreasuryService

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

TEST_PASSWORD = "testpass123"
# Low work factor keeps per-test user creation fast
TEST_PASSWORD_HASH = bcrypt.hashpw(TEST_PASSWORD.encode("utf-8"), bcrypt.gensalt(rounds=4)).decode("utf-8")


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings() -> Settings:
    return Settings(allow_negative_stock=False)


@pytest.fixture(scope="function")
def client(db_session: Session, settings: Settings) -> Generator[TestClient, None, None]:
    """Create a test client with database and settings overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    test_client = TestClient(app, raise_server_exceptions=False)
    yield test_client
    app.dependency_overrides.clear()


# =============================================================================
# USERS AND CONTEXTS
# =============================================================================

def _make_user(db_session: Session, role: UserRole, is_active: bool = True) -> User:
    user = User(
        full_name=f"Test {role.value}",
        email=f"{role.value}@example.com",
        username=role.value,
        password_hash=TEST_PASSWORD_HASH,
        role=role.value,
        is_active=is_active,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def admin_user(db_session: Session) -> User:
    return _make_user(db_session, UserRole.ADMIN)


@pytest.fixture
def viewer_user(db_session: Session) -> User:
    return _make_user(db_session, UserRole.VIEWER)


@pytest.fixture
def production_user(db_session: Session) -> User:
    return _make_user(db_session, UserRole.PRODUCTION_OFFICER)


@pytest.fixture
def accountant_user(db_session: Session) -> User:
    return _make_user(db_session, UserRole.ACCOUNTANT)


@pytest.fixture
def ctx(admin_user: User) -> RequestContext:
    """Admin request context for service-level tests."""
    return RequestContext.for_user(admin_user)


def headers_for(user: User) -> dict:
    token = create_access_token(data={"sub": user.username, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers(admin_user: User) -> dict:
    return headers_for(admin_user)


@pytest.fixture
def viewer_headers(viewer_user: User) -> dict:
    return headers_for(viewer_user)


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_item(db_session: Session, ctx: RequestContext):
    """Create a catalogue item and commit it."""
    def _make(item_type: ItemType, name: str, quantity=0, unit_cost=0, **kwargs):
        item = InventoryService.create_item(
            db_session, ctx, item_type, name,
            quantity=quantity, unit_cost=unit_cost, **kwargs
        )
        db_session.commit()
        return item
    return _make


@pytest.fixture
def customer(db_session: Session, ctx: RequestContext):
    party = PartyService.create_party(db_session, ctx, "Customer C", PartyType.CUSTOMER)
    db_session.commit()
    return party


@pytest.fixture
def supplier(db_session: Session, ctx: RequestContext):
    party = PartyService.create_party(db_session, ctx, "Supplier S", PartyType.SUPPLIER)
    db_session.commit()
    return party


@pytest.fixture
def cashbox(db_session: Session, ctx: RequestContext):
    treasury = TreasuryService.create_treasury(db_session, ctx, "Main Cash", opening_balance=Decimal("1000"))
    db_session.commit()
    return treasury


@pytest.fixture
def packaging_setup(make_item):
    """
    Finished product needing 2 kg of base and 1 box per unit.
    Base stock 100 kg at 10.00, box stock 50 at 1.50.
    """
    base = make_item(ItemType.SEMI_FINISHED, "Cream Base", quantity=100, unit_cost=10, unit="kg",
                     recipe_batch_size=100)
    box = make_item(ItemType.PACKAGING_MATERIAL, "Box", quantity=50, unit_cost="1.5")
    product = make_item(
        ItemType.FINISHED_PRODUCT, "Face Cream 50ml", code="FP-001",
        semi_finished_id=base.id, semi_finished_quantity=2,
        bom=[(box.id, 1)],
    )
    return base, box, product
