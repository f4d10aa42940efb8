"""Populate the database with demo courses and art products asynchronously."""

import asyncio
import logging
from datetime import datetime, timedelta

from sqlalchemy import delete

from checkout.config import Settings, configure_logging
from checkout.db.session import build_engine, build_session_factory, create_all
from checkout.models import CourseInstance, Product

COURSES = [
    ("Drejning för nybörjare", "Sex kvällar vid drejskivan.", 3500_00, 8, "Studio Clay, Norrtullsgatan 65"),
    ("Handbyggnad helgkurs", "Tumma, ringla och plattbygg.", 2200_00, 10, "Studio Clay, Norrtullsgatan 65"),
    ("Prova-på drejning", "Två timmar, lera och bränning ingår.", 695_00, 6, "Studio Clay, Norrtullsgatan 65"),
]

PRODUCTS = [
    ("Kopp, ljusblå glasyr", "Handdrejad kopp, 3 dl.", 450_00, 6),
    ("Skål, stengods", "Serveringsskål, 20 cm.", 850_00, 3),
    ("Vas, raku", "Unik rakubränd vas.", 1900_00, 1),
]


async def seed(session_factory) -> None:
    start = datetime.utcnow().replace(hour=18, minute=0, second=0, microsecond=0)
    async with session_factory() as session:
        logging.info("Clearing demo tables")
        await session.execute(delete(CourseInstance))
        await session.execute(delete(Product))

        for i, (title, description, price, max_participants, location) in enumerate(COURSES):
            session.add(
                CourseInstance(
                    title=title,
                    description=description,
                    start_date=start + timedelta(weeks=i + 1),
                    location=location,
                    price=price,
                    max_participants=max_participants,
                )
            )
        for title, description, price, stock in PRODUCTS:
            session.add(
                Product(
                    title=title,
                    description=description,
                    price=price,
                    stock_quantity=stock,
                    in_stock=stock > 0,
                )
            )
        await session.commit()
    logging.info("Seeded %s courses and %s products", len(COURSES), len(PRODUCTS))


async def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logging.info("Using database %s", settings.database_url)
    engine = build_engine(settings.database_url)
    try:
        await create_all(engine)
        await seed(build_session_factory(engine))
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
