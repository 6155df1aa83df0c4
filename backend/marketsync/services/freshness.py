# backend/marketsync/services/freshness.py
"""
Update-status report: how current is the stored history of each asset.

Status by days since the latest stored price:
    current    - 0 days
    recent     - 1 day
    outdated   - more than 1 day
    no-history - no stored price at all
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any

from sqlalchemy.orm import Session

from marketsync.services.constants import FRESHNESS_CURRENT_DAYS, FRESHNESS_RECENT_DAYS
from marketsync.services.price_store import HistoricalPriceStore
from marketsync.services.registry import AssetRegistry


class FreshnessStatus(str, Enum):
    CURRENT = "current"
    RECENT = "recent"
    OUTDATED = "outdated"
    NO_HISTORY = "no-history"


@dataclass(frozen=True)
class AssetFreshness:
    ticker: str
    name: str
    currency: str
    market: str
    last_update: date | None
    days_ago: int | None
    status: FreshnessStatus


@dataclass
class FreshnessReport:
    today: date
    assets: list[AssetFreshness] = field(default_factory=list)

    def _count(self, status: FreshnessStatus) -> int:
        return sum(1 for a in self.assets if a.status == status)

    def totals(self) -> dict[str, Any]:
        by_currency: dict[str, dict[str, int]] = defaultdict(lambda: {"total": 0, "with_history": 0})
        for asset in self.assets:
            by_currency[asset.currency]["total"] += 1
            if asset.status != FreshnessStatus.NO_HISTORY:
                by_currency[asset.currency]["with_history"] += 1

        no_history = self._count(FreshnessStatus.NO_HISTORY)
        return {
            "total_assets": len(self.assets),
            "current": self._count(FreshnessStatus.CURRENT),
            "recent": self._count(FreshnessStatus.RECENT),
            "outdated": self._count(FreshnessStatus.OUTDATED),
            "no_history": no_history,
            "assets_with_history": len(self.assets) - no_history,
            "by_currency": dict(sorted(by_currency.items())),
        }


def classify(last_update: date | None, today: date) -> tuple[int | None, FreshnessStatus]:
    """Return (days_ago, status) for one asset."""
    if last_update is None:
        return None, FreshnessStatus.NO_HISTORY

    days_ago = (today - last_update).days
    if days_ago <= FRESHNESS_CURRENT_DAYS:
        return days_ago, FreshnessStatus.CURRENT
    if days_ago <= FRESHNESS_RECENT_DAYS:
        return days_ago, FreshnessStatus.RECENT
    return days_ago, FreshnessStatus.OUTDATED


class FreshnessService:
    def __init__(
            self,
            registry: AssetRegistry | None = None,
            store: HistoricalPriceStore | None = None,
    ) -> None:
        self._registry = registry or AssetRegistry()
        self._store = store or HistoricalPriceStore()

    def report(self, db: Session, today: date | None = None) -> FreshnessReport:
        """
        Build the report for every active asset.

        Assets without history come first, then the stalest first.
        """
        today = today or date.today()
        latest = self._store.latest_dates(db)
        report = FreshnessReport(today=today)

        for asset in self._registry.list_assets(db, active_only=True):
            last_update = latest.get(asset.id)
            days_ago, status = classify(last_update, today)
            report.assets.append(AssetFreshness(
                ticker=asset.ticker,
                name=asset.name,
                currency=asset.currency,
                market=asset.market,
                last_update=last_update,
                days_ago=days_ago,
                status=status,
            ))

        report.assets.sort(key=lambda a: (
            a.status != FreshnessStatus.NO_HISTORY,
            -(a.days_ago or 0),
            a.ticker,
        ))
        return report
