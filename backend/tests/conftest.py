# backend/tests/conftest.py
"""
Shared fixtures for the scheduling engine test suite.

Every test gets a fresh in-memory SQLite database with the full schema, a
tenant with one studio (two rooms, two coaches, two clients) and a fixed
clock. Redis resource locks are disabled; lock behaviour is covered by unit
tests with a fake client.
"""

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RESOURCE_LOCK_ENABLED"] = "false"

from datetime import date, datetime, timedelta, timezone  # noqa: E402
from typing import Any, Callable, Optional  # noqa: E402

from fastapi.testclient import TestClient  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from studioops.api.dependencies.database import get_db  # noqa: E402
from studioops.core.enums import SessionKind, TimeOffStatus  # noqa: E402
from studioops.database import Base, build_engine  # noqa: E402
from studioops.main import app  # noqa: E402
from studioops.models import (  # noqa: E402
    Client,
    ClientPackage,
    Coach,
    CoachTimeOff,
    EmsDevice,
    Room,
    Studio,
    Tenant,
)
from studioops.schemas.session import SessionCreate  # noqa: E402
from studioops.services.booking_service import BookingService  # noqa: E402
from studioops.services.credit_ledger import CreditLedgerService  # noqa: E402

FIXED_NOW = datetime(2030, 1, 1, 0, 0, tzinfo=timezone.utc)
# Monday 7 January 2030
BASE_DAY = date(2030, 1, 7)


def at(day: date, hour: int, minute: int = 0) -> datetime:
    """Aware UTC datetime on ``day`` at ``hour:minute``."""
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


class StudioFactory:
    """Builds directory rows and credit packages for one test database."""

    def __init__(self, db: Session):
        self.db = db

    def tenant(self, name: str = "Tenant") -> Tenant:
        tenant = Tenant(name=name)
        self.db.add(tenant)
        self.db.flush()
        return tenant

    def studio(
        self,
        tenant: Tenant,
        name: str = "Downtown",
        timezone_name: str = "UTC",
        opening_hours: Optional[dict] = None,
        allow_cross_studio_staff: Optional[bool] = None,
    ) -> Studio:
        studio = Studio(
            tenant_id=tenant.id,
            name=name,
            timezone=timezone_name,
            opening_hours=opening_hours,
            allow_cross_studio_staff=allow_cross_studio_staff,
        )
        self.db.add(studio)
        self.db.flush()
        return studio

    def room(self, studio: Studio, name: str = "Room A", capacity: int = 10) -> Room:
        room = Room(tenant_id=studio.tenant_id, studio_id=studio.id, name=name, capacity=capacity)
        self.db.add(room)
        self.db.flush()
        return room

    def device(self, studio: Studio, name: str = "EMS 1") -> EmsDevice:
        device = EmsDevice(tenant_id=studio.tenant_id, studio_id=studio.id, name=name)
        self.db.add(device)
        self.db.flush()
        return device

    def coach(
        self, studio: Studio, name: str = "Coach A", preferred_client_gender: Optional[str] = None
    ) -> Coach:
        coach = Coach(
            tenant_id=studio.tenant_id,
            studio_id=studio.id,
            name=name,
            preferred_client_gender=preferred_client_gender,
        )
        self.db.add(coach)
        self.db.flush()
        return coach

    def client(self, studio: Studio, name: str = "Client A", gender: Optional[str] = None) -> Client:
        client = Client(tenant_id=studio.tenant_id, studio_id=studio.id, name=name, gender=gender)
        self.db.add(client)
        self.db.flush()
        return client

    def package(
        self,
        client: Client,
        total: int = 10,
        remaining: Optional[int] = None,
        expiry_date: Optional[date] = None,
        status: str = "active",
    ) -> ClientPackage:
        remaining = total if remaining is None else remaining
        package = ClientPackage(
            tenant_id=client.tenant_id,
            client_id=client.id,
            package_name=f"{total}-pack",
            sessions_total=total,
            sessions_remaining=remaining,
            sessions_used=total - remaining,
            status=status,
            expiry_date=expiry_date,
        )
        self.db.add(package)
        self.db.flush()
        return package

    def time_off(
        self,
        coach: Coach,
        start: datetime,
        end: datetime,
        status: str = TimeOffStatus.APPROVED.value,
    ) -> CoachTimeOff:
        entry = CoachTimeOff(
            tenant_id=coach.tenant_id, coach_id=coach.id, start_time=start, end_time=end, status=status
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def commit(self) -> None:
        self.db.commit()


@pytest.fixture(scope="function")
def db():
    """Fresh in-memory database and session per test."""
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    TestSessionLocal = sessionmaker(
        autocommit=False, autoflush=False, bind=engine, expire_on_commit=False
    )
    session = TestSessionLocal()

    yield session

    session.rollback()
    session.close()
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def factory(db: Session) -> StudioFactory:
    return StudioFactory(db)


@pytest.fixture
def tenant(factory: StudioFactory) -> Tenant:
    return factory.tenant()


@pytest.fixture
def studio(factory: StudioFactory, tenant: Tenant) -> Studio:
    return factory.studio(tenant)


@pytest.fixture
def room(factory: StudioFactory, studio: Studio) -> Room:
    return factory.room(studio, "Room A")


@pytest.fixture
def room_b(factory: StudioFactory, studio: Studio) -> Room:
    return factory.room(studio, "Room B")


@pytest.fixture
def coach(factory: StudioFactory, studio: Studio) -> Coach:
    return factory.coach(studio, "Coach A")


@pytest.fixture
def coach_b(factory: StudioFactory, studio: Studio) -> Coach:
    return factory.coach(studio, "Coach B")


@pytest.fixture
def client_a(factory: StudioFactory, studio: Studio) -> Client:
    return factory.client(studio, "Client A")


@pytest.fixture
def client_b(factory: StudioFactory, studio: Studio) -> Client:
    return factory.client(studio, "Client B")


@pytest.fixture
def package_a(factory: StudioFactory, client_a: Client) -> ClientPackage:
    package = factory.package(client_a, total=10)
    factory.commit()
    return package


@pytest.fixture
def package_b(factory: StudioFactory, client_b: Client) -> ClientPackage:
    package = factory.package(client_b, total=10)
    factory.commit()
    return package


@pytest.fixture
def booking_service(db: Session, clock) -> BookingService:
    return BookingService(db, clock=clock)


@pytest.fixture
def credit_ledger(db: Session, clock) -> CreditLedgerService:
    return CreditLedgerService(db, clock=clock)


@pytest.fixture
def make_session_payload(studio: Studio, room: Room, coach: Coach) -> Callable[..., SessionCreate]:
    """Build a SessionCreate for the default studio, room and coach."""

    def _make(
        start: datetime,
        minutes: int = 60,
        client: Optional[Client] = None,
        **overrides: Any,
    ) -> SessionCreate:
        fields: dict[str, Any] = {
            "studio_id": studio.id,
            "room_id": room.id,
            "coach_id": coach.id,
            "client_id": client.id if client is not None else None,
            "start_time": start,
            "end_time": start + timedelta(minutes=minutes),
        }
        if overrides.get("kind") == SessionKind.GROUP:
            fields["client_id"] = None
        fields.update(overrides)
        return SessionCreate(**fields)

    return _make


@pytest.fixture
def client(db: Session):
    """Create a test client bound to the test database."""

    def override_get_db():
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    test_client = TestClient(app)

    yield test_client

    app.dependency_overrides.clear()
    test_client.close()


@pytest.fixture
def tenant_headers(tenant: Tenant) -> dict:
    return {"X-Tenant-ID": tenant.id}
