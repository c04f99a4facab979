"""
Create (or promote) the initial admin account.

Run once per deployment:
    INITIAL_ADMIN_EMAIL=... INITIAL_ADMIN_PASSWORD=... python seed_admin.py
"""
import logging
import sys

from accounts import seed_initial_admin
from config import INITIAL_ADMIN_NAME, INITIAL_ADMIN_EMAIL, INITIAL_ADMIN_PHONE, INITIAL_ADMIN_PASSWORD, LOG_LEVEL
from database import db
from errors import DomainError

logger = logging.getLogger("seed_admin")


def main() -> int:
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    if db is None:
        logger.error("DOCUMENT_STORE_URL not set")
        return 1
    try:
        admin = seed_initial_admin(db, INITIAL_ADMIN_NAME, INITIAL_ADMIN_EMAIL, INITIAL_ADMIN_PHONE, INITIAL_ADMIN_PASSWORD)
    except DomainError as e:
        logger.error("Admin seeding failed: %s", e.message)
        return 1
    logger.info("Admin ready: %s", admin["email"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
