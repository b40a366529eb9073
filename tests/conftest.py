"""
Shared pytest fixtures for the EquipTrack test suite.

Provides:
    - app: Flask application (session-scoped, in-memory SQLite)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_personnel / make_equipment / make_request / make_inspection:
      ORM factories that commit, so service rollbacks never discard them
"""

from datetime import date
from decimal import Decimal

import pytest

from equiptrack import create_app
from equiptrack.models import db as _db
from equiptrack.models.clearance import (
    ClearanceInventoryItem,
    ClearanceRequest,
    ClearanceStatus,
    ClearanceType,
)
from equiptrack.models.inspection import Inspection, InspectionStatus
from equiptrack.models.inventory import EquipmentCondition, EquipmentItem
from equiptrack.models.personnel import Personnel
from equiptrack.services import cache_service


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
        # ids are reused once tables are recreated; cached lookups keyed by
        # equipment id would leak between tests
        cache_service.clear_all()
        yield _db.session
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ═════════════════════════════════════════════════════════════════════════════
# ORM Helper Factories
# ═════════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def make_personnel():
    """Create a Personnel row; names are numbered to stay unique."""
    counter = {"n": 0}

    def _make(first_name="Juan", last_name=None, rank="Police Officer I", **kwargs):
        counter["n"] += 1
        p = Personnel(
            first_name=first_name,
            last_name=last_name or f"Tester{counter['n']}",
            rank=rank,
            badge_number=kwargs.pop("badge_number", f"B-{counter['n']:04d}"),
            **kwargs,
        )
        _db.session.add(p)
        _db.session.commit()
        return p

    return _make


@pytest.fixture()
def make_equipment():
    """Create an EquipmentItem, optionally assigned to a person."""
    counter = {"n": 0}

    def _make(holder=None, value="1000.00", current_value=None,
              condition=EquipmentCondition.GOOD.value, **kwargs):
        counter["n"] += 1
        eq = EquipmentItem(
            item_code=kwargs.pop("item_code", f"EQ-{counter['n']:04d}"),
            item_name=kwargs.pop("item_name", f"Test Item {counter['n']}"),
            category=kwargs.pop("category", "Communication"),
            condition_status=condition,
            value=Decimal(value),
            current_value=Decimal(current_value) if current_value is not None else None,
            assigned_personnel_id=holder.id if holder else None,
            assigned_to=holder.full_name if holder else None,
            assigned_date=date(2025, 1, 15) if holder else None,
            **kwargs,
        )
        _db.session.add(eq)
        _db.session.commit()
        return eq

    return _make


@pytest.fixture()
def make_request():
    """Create a ClearanceRequest at an arbitrary status (bypasses guards).

    ``items`` maps equipment → item status.
    """

    def _make(person, ctype=ClearanceType.RETIREMENT.value,
              status=ClearanceStatus.PENDING.value, items=None):
        req = ClearanceRequest(personnel_id=person.id, type=ctype, status=status)
        _db.session.add(req)
        _db.session.flush()
        for eq, item_status in (items or {}).items():
            _db.session.add(ClearanceInventoryItem(
                clearance_request_id=req.id,
                inventory_id=eq.id,
                personnel_id=person.id,
                status=getattr(item_status, "value", item_status),
            ))
        _db.session.commit()
        return req

    return _make


@pytest.fixture()
def make_inspection():
    """Create a PENDING inspection for an equipment item."""

    def _make(equipment, inspector=None, clearance_request=None,
              status=InspectionStatus.PENDING.value):
        insp = Inspection(
            equipment_id=equipment.id,
            inspector_id=inspector.id if inspector else None,
            inspector_name=inspector.full_name if inspector else None,
            personnel_id=equipment.assigned_personnel_id,
            clearance_request_id=clearance_request.id if clearance_request else None,
            scheduled_date=date.today(),
            status=status,
        )
        _db.session.add(insp)
        _db.session.commit()
        return insp

    return _make
