"""Quick DB health check — verifies all tables exist and reports row counts."""

from tradearena.database import Database

TABLES = [
    "orders", "portfolios", "positions", "trades", "ticks",
    "profiles", "engine_events", "scheduler_runs",
]


def main():
    db = Database()
    print("=" * 50)
    print("  TRADE ARENA - DB HEALTH CHECK")
    print("=" * 50)
    all_ok = True
    for table in TABLES:
        try:
            count = db.fetchone(f"SELECT COUNT(*) FROM {table}")[0]
            print(f"  {table:25s}  OK      {count:>6} rows")
        except Exception as e:
            print(f"  {table:25s}  FAIL    {e}")
            all_ok = False

    open_orders = db.fetchone("SELECT COUNT(*) FROM orders WHERE status = 'open'")[0]
    print("=" * 50)
    print(f"  Open orders waiting: {open_orders}")
    if all_ok:
        print(f"  All {len(TABLES)} tables exist and are accessible.")
    else:
        print("  SOME TABLES FAILED - see above.")
    print()
    db.close()


if __name__ == "__main__":
    main()
