#!/usr/bin/env python3
"""
Set up the Cricket Pool database.

    python scripts/init_db.py            create any missing tables
    python scripts/init_db.py --seed     ... and the first admin profile
    python scripts/init_db.py --audit    compare wallets / pools with the ledger
    python scripts/init_db.py --check    connection test only
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Load .env file
from dotenv import load_dotenv
load_dotenv()

from backend.models import Base, engine, SessionLocal, Profile
from backend.auth import generate_api_key, hash_api_key
from backend.services.financials import reconcile
import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_tables(drop_existing: bool = False) -> bool:
    """
    Create every table in the ORM metadata.

    With ``drop_existing`` the schema is dropped first after an interactive
    confirmation, which wipes every wallet, bet and ledger entry.
    """
    if drop_existing:
        logger.warning("⚠️  Dropping the Cricket Pool schema!")
        answer = input("Every wallet, bet and ledger entry will be lost. Type 'yes' to confirm: ")
        if answer.strip().lower() != "yes":
            logger.info("Aborted.")
            return False
        Base.metadata.drop_all(bind=engine)

    Base.metadata.create_all(bind=engine)

    present = set(inspect(engine).get_table_names())
    missing = sorted(set(Base.metadata.tables) - present)
    if missing:
        logger.error("Tables still missing after create_all: %s", ", ".join(missing))
        return False

    logger.info("✅ Schema ready: %s", ", ".join(sorted(Base.metadata.tables)))
    return True


def seed_admin():
    """
    Create the first admin profile.

    Uses BOOTSTRAP_ADMIN_KEY when set, otherwise generates a key and prints
    it once. Only the hash is stored. Does nothing if an admin already exists.
    """
    db = SessionLocal()

    try:
        if db.query(Profile).filter(Profile.role == "admin").first():
            logger.info("Admin profile already exists; skipping seed")
            return

        api_key = os.getenv("BOOTSTRAP_ADMIN_KEY") or generate_api_key()
        admin = Profile(
            display_name="admin",
            role="admin",
            api_key_hash=hash_api_key(api_key),
        )
        db.add(admin)
        db.commit()

        logger.info("🌱 Admin profile created (id=%d)", admin.id)
        if not os.getenv("BOOTSTRAP_ADMIN_KEY"):
            print(f"Admin API key (store it now, it is not shown again): {api_key}")

    except SQLAlchemyError as e:
        logger.error(f"❌ Error seeding admin: {e}")
        db.rollback()
        raise

    finally:
        db.close()


def audit() -> bool:
    """Log every wallet or pool that disagrees with the records behind it."""
    db = SessionLocal()
    try:
        report = reconcile(db)
    finally:
        db.close()

    for row in report["wallet_mismatches"]:
        logger.warning(
            "Wallet drift: user %d balance ₹%s, ledger ₹%s",
            row["user_id"], row["wallet_balance"], row["ledger_sum"],
        )
    for row in report["pool_mismatches"]:
        logger.warning(
            "Pool drift: option %d pool ₹%s, stakes ₹%s",
            row["bet_option_id"], row["total_amount_bet"], row["stake_sum"],
        )
    if report["ok"]:
        logger.info("✅ Ledger audit clean")
    return report["ok"]


def check_connection() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"❌ Cannot reach {engine.url.render_as_string(hide_password=True)}: {e}")
        return False
    logger.info("✅ Connected to %s", engine.url.render_as_string(hide_password=True))
    return True


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Set up the Cricket Pool database")
    parser.add_argument("--drop", action="store_true", help="Drop the schema first (DANGER!)")
    parser.add_argument("--seed", action="store_true", help="Create the bootstrap admin profile")
    parser.add_argument("--audit", action="store_true", help="Reconcile wallets and pools with the ledger")
    parser.add_argument("--check", action="store_true", help="Only check connection")

    args = parser.parse_args()

    if not check_connection():
        sys.exit(1)
    if args.check:
        sys.exit(0)

    if args.audit:
        sys.exit(0 if audit() else 2)

    if not create_tables(drop_existing=args.drop):
        sys.exit(1)
    if args.seed:
        seed_admin()
