#!/usr/bin/env python3
# backend/init_db.py
"""
Database initialization script.

Creates the asset and price tables ahead of the first deployment, the same
step the API runs at startup. Optionally registers a starter set of assets.

This script can be run from any directory:
    python backend/init_db.py
    python backend/init_db.py --seed PETR4:Petrobras PN:BRL:B3 AAPL:Apple Inc.:USD:NASDAQ
"""
import argparse
import sys
from pathlib import Path

# Add the backend directory to Python path so 'marketsync' is importable
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))

from marketsync.database import SessionLocal, init_database
from marketsync.services.registry import AssetRegistry


def seed_assets(entries: list[str]) -> None:
    """Register TICKER:NAME:CURRENCY:MARKET entries; existing tickers are left as they are."""
    registry = AssetRegistry()
    with SessionLocal() as db:
        for entry in entries:
            ticker, name, currency, market = entry.split(":", 3)
            _, created = registry.upsert_asset(db, ticker=ticker, name=name, currency=currency, market=market)
            print(f"{'Created' if created else 'Exists '}  {ticker}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create database tables")
    parser.add_argument("--seed", nargs="*", default=[], metavar="TICKER:NAME:CURRENCY:MARKET")
    args = parser.parse_args()

    print("Creating database tables...")
    init_database()
    print("Tables created successfully!")

    if args.seed:
        seed_assets(args.seed)


if __name__ == "__main__":
    main()
