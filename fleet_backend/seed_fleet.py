"""
Database seeding script for a development fleet.

Onboards a handful of trucks around Nairobi and prints bearer tokens for an
operator, a customer and a driver so the API can be exercised right away.
Run this script after the database is set up but before first use.
"""

import asyncio

from sqlalchemy import select

from fleet_backend.app.db.session import AsyncSessionLocal, engine, Base
from fleet_backend.app.core.jwt import create_access_token
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.schemas.truck import TruckCreate
from fleet_backend.app.services.truck_registry import TruckRegistry
import fleet_backend.app.main  # noqa: F401  registers every model with Base

SEED_TRUCKS = [
    TruckCreate(truck_code="TRK-001", driver_name="Achieng Otieno", driver_phone="+254700000001",
                driver_user_id=301, license_plate="KCA 001A", make="Isuzu", model="FRR",
                latitude=-1.29, longitude=36.82, address="Nairobi CBD"),
    TruckCreate(truck_code="TRK-002", driver_name="Brian Mwangi", driver_phone="+254700000002",
                driver_user_id=302, license_plate="KCB 002B", make="Mitsubishi", model="Canter",
                latitude=-1.35, longitude=36.90, address="Embakasi"),
    TruckCreate(truck_code="TRK-003", driver_name="Wanjiru Kamau", driver_phone="+254700000003",
                driver_user_id=303, license_plate="KCC 003C", make="Hino", model="300",
                latitude=-1.26, longitude=36.78, address="Westlands"),
]


async def seed_fleet():
    """
    Seed the development fleet.

    Creates:
    - 3 AVAILABLE trucks with an initial position
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncSessionLocal() as db:
        print("🌱 Starting fleet seeding...")

        result = await db.execute(select(Truck).where(Truck.truck_code == SEED_TRUCKS[0].truck_code))
        if result.scalar_one_or_none():
            print("ℹ️  Fleet already seeded, skipping")
            return

        registry = TruckRegistry(db)
        for truck_data in SEED_TRUCKS:
            truck = await registry.onboard(truck_data)
            print(f"✅ Onboarded {truck.truck_code} ({truck.license_plate}) driven by {truck.driver_name}")

        await db.commit()

    print("\n🔑 Development tokens:")
    for username, user_id, role in (
        ("dispatcher", 1, UserRole.OPERATOR),
        ("customer", 101, UserRole.CUSTOMER),
        ("driver", 301, UserRole.DRIVER),
    ):
        token = create_access_token({"sub": username, "user_id": user_id, "role": role.value})
        print(f"  {role.value:<9} {token}")

    print("\n🎉 Fleet seeding completed!")


if __name__ == "__main__":
    asyncio.run(seed_fleet())
