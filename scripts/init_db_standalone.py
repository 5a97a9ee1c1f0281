import asyncio
import logging
import os
import sys

# Add project root to sys.path to allow imports from scriptvault
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv

load_dotenv()

from scriptvault.db.engine import init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL not found in environment.")
        return

    db_type = "SQLite" if "sqlite" in database_url else "PostgreSQL"
    logger.info("Initializing %s database...", db_type)
    logger.info("   URL: %s", database_url.split("@")[-1] if "@" in database_url else "local")

    try:
        await init_db()
        logger.info("Database schema initialized successfully.")
    except Exception as exc:
        logger.error("Failed to initialize database: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Operation cancelled.")
