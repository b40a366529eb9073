"""
Demo data for local development (``flask seed-demo``, scripts/seed_demo_data.py).

Builds a small unit: three officers with assigned equipment, one routine
loss found during a spot inspection, a retirement clearance that picks
that loss up, and an equipment-completion clearance whose inspections are
still pending.  Everything after the directory rows goes through the
services, so the ledger, summaries and audit trail look exactly like real
usage.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal

from equiptrack.models import db
from equiptrack.models.clearance import ClearanceType
from equiptrack.models.inventory import EquipmentCondition, EquipmentItem
from equiptrack.models.personnel import Personnel
from equiptrack.services import clearance_lifecycle, inspection_service

logger = logging.getLogger(__name__)

DEMO_ACTOR = "demo-seed"

_PERSONNEL = [
    # username, first, middle, last, rank, badge
    ("mreyes", "Maria", "Lopez", "Reyes", "Police Captain", "PC-1021"),
    ("jdelacruz", "Juan", None, "Dela Cruz", "Police Staff Sergeant", "PSSg-2210"),
    ("asantos", "Ana", "Cruz", "Santos", "Police Officer III", "PO3-3307"),
]

_EQUIPMENT = [
    # code, name, category, value, current_value, assignee username
    ("FA-0001", "Service Pistol 9mm", "Firearm", "1000.00", None, "mreyes"),
    ("CM-0001", "Handheld Radio", "Communication", "500.00", None, "mreyes"),
    ("PG-0001", "Ballistic Vest", "Protective Gear", "800.00", "640.00", "mreyes"),
    ("FA-0002", "Service Pistol 9mm", "Firearm", "1000.00", None, "jdelacruz"),
    ("CM-0002", "Handheld Radio", "Communication", "500.00", None, "jdelacruz"),
    ("VH-0001", "Patrol Motorcycle", "Vehicle", "85000.00", "70000.00", "asantos"),
]


def _create_directory():
    people = {}
    for username, first, middle, last, rank, badge in _PERSONNEL:
        p = Personnel(
            username=username, first_name=first, middle_name=middle,
            last_name=last, rank=rank, badge_number=badge,
        )
        db.session.add(p)
        people[username] = p
    db.session.flush()

    assigned_on = date.today() - timedelta(days=365)
    equipment = {}
    for code, name, category, value, current, username in _EQUIPMENT:
        holder = people[username]
        eq = EquipmentItem(
            item_code=code,
            item_name=name,
            category=category,
            condition_status=EquipmentCondition.GOOD.value,
            value=Decimal(value),
            current_value=Decimal(current) if current else None,
            assigned_personnel_id=holder.id,
            assigned_to=holder.full_name,
            assigned_date=assigned_on,
            current_location="Station 1",
        )
        db.session.add(eq)
        equipment[code] = eq
    db.session.commit()
    return people, equipment


def seed_demo() -> dict:
    """Seed the demo unit.  Returns counts of what was created.

    Does nothing (and returns zero counts) when the demo personnel already
    exist.
    """
    if Personnel.query.filter_by(username=_PERSONNEL[0][0]).first() is not None:
        logger.info("Demo data already present, skipping")
        return {"personnel": 0, "equipment": 0, "inspections": 0, "clearances": 0}

    people, equipment = _create_directory()
    today = date.today()
    inspections = 0

    # Routine spot check: Sgt. Dela Cruz's radio is missing
    spot = inspection_service.schedule_inspection(
        [equipment["CM-0002"].id], people["mreyes"].id, today - timedelta(days=14), actor=DEMO_ACTOR,
    )[0]
    inspection_service.record_inspection_outcome(
        spot.id, equipment["CM-0002"].id, EquipmentCondition.LOST.value,
        "Radio not presented at spot inspection; reported left at checkpoint.",
        actor=DEMO_ACTOR,
    )
    inspections += 1

    # Retirement picks up the routine loss above
    retirement = clearance_lifecycle.create_clearance_request(
        people["jdelacruz"].id, ClearanceType.RETIREMENT.value,
        reason="Compulsory retirement", actor=DEMO_ACTOR,
    )

    # Pistol inspected and cleared, so the request moves to In Progress
    pistol = inspection_service.schedule_inspection(
        [equipment["FA-0002"].id], people["mreyes"].id, today, actor=DEMO_ACTOR,
    )[0]
    inspection_service.record_inspection_outcome(
        pistol.id, equipment["FA-0002"].id, EquipmentCondition.GOOD.value,
        "Serviceable, all parts accounted for.", actor=DEMO_ACTOR,
    )
    inspections += 1

    # Capt. Reyes has an equipment-completion clearance with inspections pending
    completion = clearance_lifecycle.create_clearance_request(
        people["mreyes"].id, ClearanceType.EQUIPMENT_COMPLETION.value,
        reason="Reassignment to regional office", actor=DEMO_ACTOR,
    )
    scheduled = inspection_service.schedule_inspection(
        [equipment["FA-0001"].id, equipment["CM-0001"].id, equipment["PG-0001"].id],
        people["jdelacruz"].id, today + timedelta(days=3),
        clearance_request_id=completion.id, actor=DEMO_ACTOR,
    )
    inspections += len(scheduled)

    counts = {
        "personnel": len(people),
        "equipment": len(equipment),
        "inspections": inspections,
        "clearances": 2,
        "retirement_status": retirement.status,
    }
    logger.info("Demo data seeded: %s", counts, extra={"event_type": "demo_seeded"})
    return counts
