import os

# La aplicación no debe intentar conectarse a MySQL durante las pruebas
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DEBUG"] = "false"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from conduz.main import app
from conduz.core.db import get_session
from conduz.core.dependencies.admin_auth import get_current_admin
from conduz.core.init_data import init_default_configs
from conduz.models.driver import AdminFeeMode, Driver, DriverType


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        init_default_configs(session)
        yield session


@pytest.fixture(name="client")
def client_fixture(session: Session):
    def get_session_override():
        return session

    def get_admin_override():
        return {"sub": "admin@conduz.test", "role": "admin"}

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_current_admin] = get_admin_override
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="make_driver")
def make_driver_fixture(session: Session):
    def make_driver(full_name="Conductor", driver_type=DriverType.AFFILIATE, commit=True, **keys):
        driver = Driver(full_name=full_name, type=driver_type, **keys)
        if commit:
            session.add(driver)
            session.commit()
            session.refresh(driver)
        return driver
    return make_driver


@pytest.fixture(name="renter")
def renter_fixture(make_driver):
    return make_driver(
        full_name="Ana Arrendataria",
        driver_type=DriverType.RENTER,
        uber_driver_id="uber-ana",
        myprio_card="700100",
        viaverde_tag="VV-ANA",
        vehicle_plate="AA-00-BB",
        rental_fee=15000,
    )


@pytest.fixture(name="affiliate")
def affiliate_fixture(make_driver):
    return make_driver(
        full_name="Bruno Afiliado",
        driver_type=DriverType.AFFILIATE,
        bolt_email="bruno@example.com",
        vehicle_plate="CC-11-DD",
    )


@pytest.fixture(name="percent_override_driver")
def percent_override_driver_fixture(make_driver):
    return make_driver(
        full_name="Carla Override",
        driver_type=DriverType.AFFILIATE,
        uber_driver_id="uber-carla",
        admin_fee_mode=AdminFeeMode.PERCENT,
        admin_fee_value=Decimal("10"),
    )
