"""Pytest configuration and fixtures."""

import os

# Keep the app's own engine off the filesystem; tests use their own engine below
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_db
from app.main import app
# Import all models to ensure they're registered with Base.metadata
from app.models import *
from app.models.customer import Customer, CustomerAddress, CustomerNit, CustomerType
from app.models.menu import Combo, ComboItem, Product, ProductVariant, Section, SectionOption
from app.models.restaurant import Driver, Restaurant, Zone

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

# Restaurant R from the geofence example: 0.02 degree square around (14.6349, -90.5069)
CAPITAL_CENTER = (14.6349, -90.5069)
INTERIOR_CENTER = (14.8347, -91.5180)
OUTSIDE_POINT = (15.5000, -90.2000)


def square_kml(lat: float, lng: float, half: float = 0.01) -> str:
    """KML <coordinates> text for a closed square ring centered on (lat, lng)."""
    ring = [
        (lng - half, lat - half),
        (lng + half, lat - half),
        (lng + half, lat + half),
        (lng - half, lat + half),
        (lng - half, lat - half),
    ]
    return " ".join(f"{x:.6f},{y:.6f},0" for x, y in ring)


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


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    from app.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


# ============== Factories ==============

@pytest.fixture
def make_restaurant(db_session: Session):
    """Build restaurants; by default a delivery-capable one with a square geofence."""
    def _make(
        name="Zona 10",
        center=CAPITAL_CENTER,
        zone=Zone.CAPITAL,
        geofence=True,
        **kwargs,
    ) -> Restaurant:
        values = dict(
            name=name,
            address=f"{name} address",
            latitude=center[0],
            longitude=center[1],
            zone=zone,
            geofence_kml=square_kml(*center) if geofence else None,
            is_active=True,
            delivery_active=True,
            pickup_active=True,
        )
        values.update(kwargs)
        restaurant = Restaurant(**values)
        db_session.add(restaurant)
        db_session.commit()
        db_session.refresh(restaurant)
        return restaurant
    return _make


@pytest.fixture
def make_product(db_session: Session):
    """Build a product priced (pickup capital, delivery capital, pickup interior, delivery interior)."""
    def _make(name="Pollo frito", prices=("50.00", "55.00", "58.00", "60.00"), **kwargs) -> Product:
        product = Product(
            name=name,
            price_pickup_capital=Decimal(prices[0]) if prices[0] is not None else None,
            price_delivery_capital=Decimal(prices[1]) if prices[1] is not None else None,
            price_pickup_interior=Decimal(prices[2]) if prices[2] is not None else None,
            price_delivery_interior=Decimal(prices[3]) if prices[3] is not None else None,
            **kwargs,
        )
        db_session.add(product)
        db_session.commit()
        db_session.refresh(product)
        return product
    return _make


@pytest.fixture
def make_variant(db_session: Session):
    def _make(product: Product, name="Grande", prices=("65.00", "70.00", "72.00", "75.00"), **kwargs):
        product.has_variants = True
        variant = ProductVariant(
            product_id=product.id,
            name=name,
            price_pickup_capital=Decimal(prices[0]),
            price_delivery_capital=Decimal(prices[1]),
            price_pickup_interior=Decimal(prices[2]),
            price_delivery_interior=Decimal(prices[3]),
            **kwargs,
        )
        db_session.add(variant)
        db_session.commit()
        db_session.refresh(variant)
        return variant
    return _make


@pytest.fixture
def make_combo(db_session: Session):
    def _make(products, name="Combo familiar", prices=("99.00", "109.00", "104.00", "114.00")) -> Combo:
        combo = Combo(
            name=name,
            price_pickup_capital=Decimal(prices[0]),
            price_delivery_capital=Decimal(prices[1]),
            price_pickup_interior=Decimal(prices[2]),
            price_delivery_interior=Decimal(prices[3]),
        )
        combo.items = [ComboItem(product_id=p.id, quantity=1) for p in products]
        db_session.add(combo)
        db_session.commit()
        db_session.refresh(combo)
        return combo
    return _make


@pytest.fixture
def make_option(db_session: Session):
    def _make(name="Extra queso", price="5.00", section_title="Extras", is_active=True) -> SectionOption:
        section = Section(title=section_title)
        option = SectionOption(name=name, price_modifier=Decimal(price), is_active=is_active)
        section.options.append(option)
        db_session.add(section)
        db_session.commit()
        db_session.refresh(option)
        return option
    return _make


@pytest.fixture
def make_customer(db_session: Session):
    def _make(name="Ana", points=0, email=None, customer_type=None) -> Customer:
        customer = Customer(
            name=name,
            email=email,
            points=points,
            customer_type_id=customer_type.id if customer_type else None,
        )
        db_session.add(customer)
        db_session.commit()
        db_session.refresh(customer)
        return customer
    return _make


@pytest.fixture
def make_address(db_session: Session):
    def _make(customer: Customer, point=CAPITAL_CENTER, label="Casa") -> CustomerAddress:
        address = CustomerAddress(
            customer_id=customer.id,
            label=label,
            address_line=f"{label} {point[0]:.4f},{point[1]:.4f}",
            latitude=point[0],
            longitude=point[1],
        )
        db_session.add(address)
        db_session.commit()
        db_session.refresh(address)
        return address
    return _make


@pytest.fixture
def make_nit(db_session: Session):
    def _make(customer: Customer, nit="1234567-8", business_name=None) -> CustomerNit:
        row = CustomerNit(customer_id=customer.id, nit=nit, business_name=business_name)
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row
    return _make


@pytest.fixture
def make_driver(db_session: Session):
    def _make(restaurant: Restaurant, name="Luis", is_active=True) -> Driver:
        driver = Driver(restaurant_id=restaurant.id, name=name, phone="5555-0000", is_active=is_active)
        db_session.add(driver)
        db_session.commit()
        db_session.refresh(driver)
        return driver
    return _make


@pytest.fixture
def tiers(db_session: Session):
    """Bronze (0, x1), Silver (500, x1.5) and Gold (2000, x2)."""
    rows = [
        CustomerType(name="Bronce", points_required=0, multiplier=Decimal("1.00")),
        CustomerType(name="Plata", points_required=500, multiplier=Decimal("1.50")),
        CustomerType(name="Oro", points_required=2000, multiplier=Decimal("2.00")),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return {row.name: row for row in rows}


# ============== Auth ==============

@pytest.fixture
def customer(make_customer) -> Customer:
    return make_customer(name="Test Customer", email="customer@example.com")


@pytest.fixture
def auth_headers(customer: Customer) -> dict:
    """Authorization headers for the default test customer."""
    token = create_access_token(data={"sub": str(customer.id), "actor": "customer"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers_for():
    """Authorization headers for any principal."""
    def _headers(principal_id: int, actor: str = "customer") -> dict:
        token = create_access_token(data={"sub": str(principal_id), "actor": actor})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def staff_headers(headers_for) -> dict:
    return headers_for(900, "staff")
