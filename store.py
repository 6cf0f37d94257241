"""Snapshot store: append-only JSON log of daily reports."""

import json
import logging
import os
import tempfile
import threading
from typing import Dict, List, Optional

from config import REPORTS_FILE
from errors import PersistenceFailure
from portfolio import PortfolioSnapshot, Position, canonical_code, compute_roi

logger = logging.getLogger(__name__)


def write_json_atomic(path: str, payload):
    """Write JSON to a temp file beside path, then swap it into place."""
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            'w', dir=directory, suffix='.tmp', delete=False, encoding='utf-8'
        ) as tmp:
            tmp_path = tmp.name
            json.dump(payload, tmp, indent=2, ensure_ascii=False)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_path, path)
    except (OSError, TypeError, ValueError):
        if tmp_path and os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class ReportStore:
    """Append-only history of PortfolioSnapshot records in a JSON file.

    Writers are the rebalance run (append), the price refresh and the
    manual entry-price correction (in-place updates of one record). Every
    write replaces the file atomically, so a failed write leaves the prior
    history intact.
    """

    def __init__(self, path: str = None):
        self.path = path or REPORTS_FILE
        self._lock = threading.RLock()
        self._latest: Optional[PortfolioSnapshot] = None
        self._latest_loaded = False

    def _read_raw(self) -> Dict:
        if not os.path.exists(self.path):
            return {"next_id": 1, "reports": []}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceFailure(f"Cannot read report store {self.path}: {e}") from e

        if not isinstance(raw, dict) or not isinstance(raw.get("reports"), list):
            raise PersistenceFailure(f"Report store {self.path} has an unexpected layout")
        raw.setdefault("next_id", len(raw["reports"]) + 1)
        return raw

    def _write_raw(self, raw: Dict):
        try:
            write_json_atomic(self.path, raw)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"Cannot write report store {self.path}: {e}") from e
        finally:
            self.invalidate()

    def _parse(self, records: List[Dict]) -> List[PortfolioSnapshot]:
        snapshots = []
        for record in records:
            try:
                snapshots.append(PortfolioSnapshot.from_record(record))
            except (ValueError, TypeError, AttributeError) as e:
                rid = record.get("id") if isinstance(record, dict) else None
                logger.warning("[Report %s] Corrupted record skipped: %s", rid, e)
        return snapshots

    def invalidate(self):
        """Drop the cached latest snapshot."""
        self._latest = None
        self._latest_loaded = False

    def all(self) -> List[PortfolioSnapshot]:
        """Every valid snapshot, most recent first."""
        with self._lock:
            snapshots = self._parse(self._read_raw()["reports"])
        return sorted(snapshots, key=lambda s: s.timestamp, reverse=True)

    def latest(self) -> Optional[PortfolioSnapshot]:
        """The current portfolio: the snapshot with the highest timestamp."""
        with self._lock:
            if not self._latest_loaded:
                snapshots = self.all()
                self._latest = snapshots[0] if snapshots else None
                self._latest_loaded = True
            return self._latest

    def get(self, report_id: int) -> Optional[PortfolioSnapshot]:
        for snapshot in self.all():
            if snapshot.id == report_id:
                return snapshot
        return None

    def append(self, snapshot: PortfolioSnapshot) -> int:
        """Append a snapshot and return its id."""
        with self._lock:
            raw = self._read_raw()
            timestamps = [r.get("timestamp") for r in raw["reports"] if isinstance(r, dict)]
            last = max((t for t in timestamps if isinstance(t, (int, float))), default=None)
            if last is not None and snapshot.timestamp <= last:
                raise PersistenceFailure(
                    f"Snapshot timestamp {snapshot.timestamp} is not after the latest ({last})"
                )

            report_id = int(raw["next_id"])
            record = snapshot.to_record()
            record["id"] = report_id
            raw["reports"].append(record)
            raw["next_id"] = report_id + 1
            self._write_raw(raw)

        snapshot.id = report_id
        logger.info("Saved report %s (%s)", report_id, snapshot.date)
        return report_id

    def _update_record(self, report_id: Optional[int], mutate) -> bool:
        """Apply mutate(snapshot) -> bool to one record and persist it in place."""
        with self._lock:
            raw = self._read_raw()
            if report_id is None:
                latest = self.latest()
                if latest is None:
                    return False
                report_id = latest.id

            for i, record in enumerate(raw["reports"]):
                if not isinstance(record, dict) or record.get("id") != report_id:
                    continue
                snapshot = PortfolioSnapshot.from_record(record)
                snapshot.id = report_id
                if not mutate(snapshot):
                    return False
                raw["reports"][i] = snapshot.to_record()
                self._write_raw(raw)
                return True
        return False

    def set_entry_price(self, code: str, price: float, report_id: Optional[int] = None) -> bool:
        """Manually correct an open position's entry price.

        Recomputes that position's ROI against its existing current price.
        Returns False when the report or the code is not found.
        """
        price = float(price)
        if price <= 0:
            raise ValueError("Entry price must be positive")
        code = canonical_code(code)

        def _mutate(snapshot: PortfolioSnapshot) -> bool:
            position = snapshot.find(code)
            if position is None:
                return False
            position.entry_price = price
            position.roi = compute_roi(price, position.current_price)
            return True

        updated = self._update_record(report_id, _mutate)
        if updated:
            logger.info("Updated entry price for %s to %s", code, price)
        return updated

    def update_prices(self, report_id: int, finalists: List[Position]) -> bool:
        """Replace a report's finalists after a price refresh."""

        def _mutate(snapshot: PortfolioSnapshot) -> bool:
            snapshot.finalists = list(finalists)
            return True

        return self._update_record(report_id, _mutate)

    def clear(self):
        """Delete the whole history (admin reset)."""
        with self._lock:
            self._write_raw({"next_id": 1, "reports": []})
        logger.warning("Report history cleared")
