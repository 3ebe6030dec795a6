#!/usr/bin/env python3
"""Seed a development database with one active stakeholder per role.

Usage:
    python scripts/seed_stakeholders.py

Prints each stakeholder's one-time credential for use with POST /auth/login.
"""

import asyncio
import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from pharmaseal.common.config import get_settings
from pharmaseal.common.database import DatabaseManager
from pharmaseal.stakeholders.service import StakeholderService

STAKEHOLDER_SEEDS = [
    {"wallet": "0x" + "1" * 40, "name": "Acme Pharma Manufacturing", "role": "MANUFACTURER"},
    {"wallet": "0x" + "2" * 40, "name": "Northline Distribution", "role": "DISTRIBUTOR"},
    {"wallet": "0x" + "3" * 40, "name": "Corner Pharmacy", "role": "RETAILER"},
    {"wallet": "0x" + "4" * 40, "name": "General Hospital", "role": "HEALTHCARE_PROVIDER"},
    {"wallet": "0x" + "5" * 40, "name": "Drug Safety Authority", "role": "REGULATOR"},
]


async def seed_stakeholders() -> None:
    settings = get_settings()
    db = DatabaseManager(settings)
    await db.init()
    await db.create_all()

    svc = StakeholderService()

    async with db.get_session() as session:
        for seed in STAKEHOLDER_SEEDS:
            existing = await svc.get_by_wallet(session, seed["wallet"])
            if existing:
                print(f"  [skip] {seed['wallet']} ({seed['name']}) already exists")
                continue

            _, credential = await svc.register(
                session, seed["wallet"], seed["name"], seed["role"],
                license_number=f"LIC-{seed['role'][:3]}-001",
                is_active=True,
            )
            print(f"  [created] {seed['wallet']} {seed['role']:<20} {credential}")

    await db.close()
    print(f"\nDone. {len(STAKEHOLDER_SEEDS)} stakeholders seeded.")


if __name__ == "__main__":
    asyncio.run(seed_stakeholders())
