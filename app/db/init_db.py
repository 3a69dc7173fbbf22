"""
Initialize database tables
Run this once to create tables and seed the default email templates
"""

import asyncio

from app.config import configure_logging, load_config
from app.db.database import async_session_factory, init_db
from app.notifications.templates import seed_default_templates


async def main():
    await init_db()
    async with async_session_factory() as session:
        await seed_default_templates(session)


if __name__ == "__main__":
    configure_logging(load_config().log_level)
    print("Creating database tables...")
    asyncio.run(main())
    print("✅ Database tables created")
