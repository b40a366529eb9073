#!/usr/bin/env python3
"""
EquipTrack: Demo Seed.

Creates a small unit with assigned equipment, a routine loss, an open
retirement clearance and pending inspections, all through the services.

Usage:
    python scripts/seed_demo_data.py              # Reset DB + seed
    python scripts/seed_demo_data.py --no-reset   # Seed into the existing DB
    APP_ENV=production python scripts/seed_demo_data.py --no-reset
"""

import argparse
import sys

sys.path.insert(0, ".")

from equiptrack import create_app
from equiptrack.models import db
from equiptrack.models.accountability import PersonnelAccountabilitySummary
from equiptrack.models.clearance import ClearanceRequest
from equiptrack.services.demo_seed import seed_demo


# ═══════════════════════════════════════════════════════════════════════════
# REPORT
# ═══════════════════════════════════════════════════════════════════════════

def print_report(counts):
    print("  ✅ Seed complete")
    for key, value in counts.items():
        print(f"     {key:<18} {value}")

    print("\n  📋 Clearance requests")
    for req in ClearanceRequest.query.order_by(ClearanceRequest.id).all():
        print(f"     #{req.id:<3} {req.type:<22} {req.status:<22} {req.personnel.full_name}")

    print("\n  💰 Outstanding accountability")
    rows = (
        PersonnelAccountabilitySummary.query
        .order_by(PersonnelAccountabilitySummary.personnel_id)
        .all()
    )
    for s in rows:
        key = f"clearance #{s.clearance_request_id}" if s.clearance_request_id else "routine"
        print(f"     {s.personnel_name:<28} {key:<14} {s.total_outstanding_amount:>10} "
              f"{s.accountability_status}")


# ═══════════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════════

def main():
    parser = argparse.ArgumentParser(description="EquipTrack demo seed")
    parser.add_argument("--no-reset", action="store_true",
                        help="Don't clear existing data")
    args = parser.parse_args()

    app = create_app()
    print(f"  🎯 DB: {app.config['SQLALCHEMY_DATABASE_URI']}\n")

    with app.app_context():
        if not args.no_reset:
            db.drop_all()
            db.create_all()
            print("  ♻️  Database reset complete\n")

        counts = seed_demo()
        print_report(counts)


if __name__ == "__main__":
    main()
