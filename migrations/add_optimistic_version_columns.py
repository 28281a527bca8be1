"""
Migration: Add version counters to affiliates and affiliate_commissions.

Commission approvals and payouts compare-and-set on these columns, so a
second admin acting on a stale copy gets a conflict instead of overwriting
the first admin's change. Also creates the commission event log table.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/vbms"
)

VERSIONED_TABLES = ["affiliates", "affiliate_commissions"]


def run_migration():
    """Add version columns and the affiliate_commission_events table."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        for table in VERSIONED_TABLES:
            result = conn.execute(text("""
                SELECT column_name
                FROM information_schema.columns
                WHERE table_name = :table AND column_name = 'version'
            """), {"table": table})

            if result.fetchone():
                print(f"{table}.version already exists")
            else:
                conn.execute(text(f"""
                    ALTER TABLE {table}
                    ADD COLUMN version INTEGER NOT NULL DEFAULT 1
                """))
                print(f"Added version column to {table}")

        conn.execute(text("""
            CREATE TABLE IF NOT EXISTS affiliate_commission_events (
                id VARCHAR(36) PRIMARY KEY,
                affiliate_id VARCHAR(36) NOT NULL REFERENCES affiliates(id) ON DELETE CASCADE,
                commission_id VARCHAR(36) REFERENCES affiliate_commissions(id) ON DELETE CASCADE,
                from_status VARCHAR(20),
                to_status VARCHAR(20) NOT NULL,
                actor_id VARCHAR(36),
                amount DOUBLE PRECISION NOT NULL,
                event_metadata JSON,
                created_at TIMESTAMP DEFAULT NOW()
            )
        """))
        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_affiliate_commission_events_affiliate_id
            ON affiliate_commission_events (affiliate_id)
        """))
        conn.execute(text("""
            CREATE INDEX IF NOT EXISTS ix_affiliate_commission_events_commission_id
            ON affiliate_commission_events (commission_id)
        """))
        print("Ensured affiliate_commission_events table")

        conn.commit()

if __name__ == "__main__":
    run_migration()
