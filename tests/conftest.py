"""
Shared pytest fixtures for the inspection workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - engine / config_service / escalation_service: services from app.extensions
    - dispatcher: Recording notification dispatcher swapped into the engine
    - clock: Frozen clock swapped into the engine
    - shop / other_shop: Tenants with one active user per workflow role
    - make_inspection: ORM factory for inspections with items
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from app import create_app
from app.models import db as _db
from app.models.auth import Tenant, User
from app.models.inspection import Inspection, InspectionItem
from app.services.workflow_conditions import AuthorizationContext
from app.services.workflow_rules import Role


T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

_refs = count(1)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Tenant ids are reused across tests; resolved configs must not leak.
        app.extensions["workflow_config"].cache.clear()
        yield
        app.extensions["workflow_config"].cache.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def engine(app):
    return app.extensions["workflow_engine"]


@pytest.fixture()
def config_service(app):
    return app.extensions["workflow_config"]


@pytest.fixture()
def escalation_service(app):
    return app.extensions["escalation_service"]


# ── Collaborator doubles ─────────────────────────────────────────────────


class RecordingDispatcher:
    """Keeps every dispatch call instead of delivering it."""

    def __init__(self):
        self.sent = []

    def dispatch(self, event, recipients, channels, template, context):
        self.sent.append({
            "event": event,
            "recipients": recipients,
            "channels": channels,
            "template": template,
            "context": context,
        })

    def events(self):
        return [s["event"] for s in self.sent]

    def for_event(self, event):
        return [s for s in self.sent if s["event"] == event]


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def dispatcher(engine, monkeypatch):
    d = RecordingDispatcher()
    monkeypatch.setattr(engine.notifier, "dispatcher", d)
    return d


@pytest.fixture()
def clock(engine, monkeypatch):
    c = FrozenClock(T0)
    monkeypatch.setattr(engine, "clock", c)
    return c


# ── ORM helpers ──────────────────────────────────────────────────────────


def _make_tenant(slug: str = "northside-auto", name: str = "Northside Auto") -> Tenant:
    """Create a shop."""
    t = Tenant(name=name, slug=slug)
    _db.session.add(t)
    _db.session.flush()
    return t


def _make_user(tenant_id: int, role: str, email: str | None = None, status: str = "active") -> User:
    """Create a shop user holding *role*."""
    u = User(
        tenant_id=tenant_id,
        email=email or f"{role}-{tenant_id}@example.com",
        full_name=role.replace("_", " ").title(),
        role=role,
        status=status,
    )
    _db.session.add(u)
    _db.session.flush()
    return u


DEFAULT_ITEMS = (
    {"category": "Brakes", "component": "Front pads", "condition": "good"},
    {"category": "Brakes", "component": "Rear pads", "condition": "fair"},
    {"category": "Tires", "component": "Front left tread", "condition": "good"},
    {"category": "Tires", "component": "Rear right tread", "condition": "good"},
    {"category": "Lights", "component": "Headlights", "condition": "good", "photo_count": 1},
)

CRITICAL_ITEM = {
    "category": "Brakes",
    "component": "Brake lines",
    "condition": "needs_immediate",
    "notes": "Fluid leak at rear left line",
    "photo_count": 2,
}


def _make_inspection(
    tenant_id: int,
    *,
    status: str = "in_progress",
    technician_id: int | None = None,
    items=DEFAULT_ITEMS,
    entered_at: datetime | None = None,
    **fields,
) -> Inspection:
    """Create an inspection already sitting in *status* with the given items."""
    fields.setdefault("customer_name", "Dana Reyes")
    fields.setdefault("customer_phone", "+1-555-0100")
    fields.setdefault("vehicle_description", "2019 Subaru Outback")
    insp = Inspection(
        tenant_id=tenant_id,
        reference_number=f"INS-{next(_refs):05d}",
        status=status,
        assigned_technician_id=technician_id,
        created_by=technician_id,
        state_entered_at=entered_at or T0,
        **fields,
    )
    _db.session.add(insp)
    _db.session.flush()
    for item in items:
        _db.session.add(InspectionItem(inspection_id=insp.id, **item))
    _db.session.flush()
    return insp


@dataclass
class Shop:
    tenant: Tenant
    mechanic: User
    manager: User
    senior_manager: User
    owner: User
    admin: User

    @property
    def id(self) -> int:
        return self.tenant.id

    def principal(self, user: User) -> AuthorizationContext:
        return AuthorizationContext(user_id=user.id, role=Role(user.role), tenant_id=self.tenant.id)

    @property
    def system(self) -> AuthorizationContext:
        return AuthorizationContext.system(self.tenant.id)


def _make_shop(slug: str = "northside-auto") -> Shop:
    tenant = _make_tenant(slug=slug, name=slug.replace("-", " ").title())
    shop = Shop(
        tenant=tenant,
        mechanic=_make_user(tenant.id, "mechanic"),
        manager=_make_user(tenant.id, "shop_manager"),
        senior_manager=_make_user(tenant.id, "senior_manager"),
        owner=_make_user(tenant.id, "owner"),
        admin=_make_user(tenant.id, "admin"),
    )
    _db.session.commit()
    return shop


@pytest.fixture()
def shop():
    """A shop with one active user per role."""
    return _make_shop()


@pytest.fixture()
def make_inspection(shop):
    """Factory: committed inspection in *status* for the ``shop`` fixture.

    ``critical=True`` adds a documented needs_immediate brake item.
    """
    def factory(critical: bool = False, **kwargs):
        if critical:
            kwargs["items"] = tuple(kwargs.get("items", DEFAULT_ITEMS)) + (CRITICAL_ITEM,)
        kwargs.setdefault("technician_id", shop.mechanic.id)
        tenant_id = kwargs.pop("tenant_id", shop.id)
        insp = _make_inspection(tenant_id, **kwargs)
        _db.session.commit()
        return insp
    return factory


@pytest.fixture()
def other_shop(shop):
    """A second shop, for tenant isolation checks."""
    return _make_shop("eastgate-garage")
