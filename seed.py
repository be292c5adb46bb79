"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 3 vehicle types
  - 6 drivers, each with an active vehicle and a waiting driver request
  - 4 passengers (shippers) and 1 admin
  - 5 waiting passenger requests, ready for the matching engine
"""

import asyncio
from datetime import date, timedelta

from sqlalchemy import text

from journeys.domain.enums import ActorRole, JourneyStatus
from journeys.infrastructure.database import async_session_factory, engine
from journeys.infrastructure.models import (
    DriverRequestModel,
    PassengerRequestModel,
    UserModel,
    VehicleDriverModel,
    VehicleModel,
    VehicleTypeModel,
)

# Mumbai airport cargo terminal (approx)
DEPOT_LAT, DEPOT_LNG = 19.0896, 72.8656

VEHICLE_TYPES = ["Pickup", "Box Truck", "Flatbed"]

DRIVERS = [
    {"name": "Aarav Sharma", "phone": "919820000001", "type": 0, "plate": "MH01AB1001"},
    {"name": "Rohan Mehta", "phone": "919820000002", "type": 0, "plate": "MH01AB1002"},
    {"name": "Vikram Singh", "phone": "919820000003", "type": 1, "plate": "MH01AB1003"},
    {"name": "Karan Joshi", "phone": "919820000004", "type": 1, "plate": "MH01AB1004"},
    {"name": "Arjun Kumar", "phone": "919820000005", "type": 2, "plate": "MH01AB1005"},
    {"name": "Meera Nair", "phone": "919820000006", "type": 0, "plate": "MH01AB1006"},
]

PASSENGERS = [
    {"name": "Priya Patel", "phone": "919830000001"},
    {"name": "Sneha Gupta", "phone": "919830000002"},
    {"name": "Ananya Reddy", "phone": "919830000003"},
    {"name": "Diya Iyer", "phone": "919830000004"},
]

REQUESTS = [
    # (passenger index, vehicle type index, destination, lat, lng, item)
    (0, 0, "Andheri", 19.0760, 72.8777, "Electronics"),
    (1, 0, "Powai", 19.1176, 72.9060, "Furniture"),
    (2, 1, "Bandra", 19.0540, 72.8400, "Textiles"),
    (3, 1, "Dadar", 19.0200, 72.8500, "Pharma"),
    (0, 2, "Thane", 19.2183, 72.9781, "Steel coils"),
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Vehicle types ─────────────────────────────────────────────
        types = [VehicleTypeModel(name=name) for name in VEHICLE_TYPES]
        session.add_all(types)
        await session.flush()
        print(f"  Created {len(types)} vehicle types")

        # ── Drivers, vehicles and availability ────────────────────────
        for i, d in enumerate(DRIVERS):
            driver = UserModel(
                full_name=d["name"], phone_number=d["phone"], role=ActorRole.DRIVER
            )
            vehicle = VehicleModel(
                vehicle_type_id=types[d["type"]].id, license_plate=d["plate"]
            )
            session.add_all([driver, vehicle])
            await session.flush()
            session.add(VehicleDriverModel(vehicle_id=vehicle.id, driver_user_id=driver.id))
            session.add(
                DriverRequestModel(
                    user_id=driver.id,
                    origin_lat=DEPOT_LAT + 0.001 * i,
                    origin_lng=DEPOT_LNG - 0.001 * i,
                    origin_place="Cargo terminal",
                    status=int(JourneyStatus.WAITING),
                    created_by=driver.id,
                )
            )
        await session.flush()
        print(f"  Created {len(DRIVERS)} drivers with vehicles and waiting requests")

        # ── Passengers ────────────────────────────────────────────────
        passengers = [
            UserModel(full_name=p["name"], phone_number=p["phone"], role=ActorRole.PASSENGER)
            for p in PASSENGERS
        ]
        session.add_all(passengers)
        session.add(
            UserModel(
                full_name="Operations Admin",
                phone_number="919840000001",
                email="ops@example.com",
                role=ActorRole.ADMIN,
            )
        )
        await session.flush()
        print(f"  Created {len(passengers)} passengers and 1 admin")

        # ── Waiting passenger requests ────────────────────────────────
        ship_on = date.today() + timedelta(days=1)
        for n, (p, t, place, lat, lng, item) in enumerate(REQUESTS, start=1):
            session.add(
                PassengerRequestModel(
                    user_id=passengers[p].id,
                    batch_id=f"seed-batch-{n}",
                    vehicle_type_id=types[t].id,
                    origin_lat=DEPOT_LAT,
                    origin_lng=DEPOT_LNG,
                    origin_place="Cargo terminal",
                    destination_lat=lat,
                    destination_lng=lng,
                    destination_place=place,
                    shippable_item_name=item,
                    shippable_item_qty=1,
                    shipping_date=ship_on,
                    delivery_date=ship_on,
                    shipping_cost=1500.0,
                    status=int(JourneyStatus.WAITING),
                    created_by=passengers[p].id,
                )
            )
        await session.flush()
        print(f"  Created {len(REQUESTS)} waiting passenger requests")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
