"""
=============================================================================
LOCAL STORE - JSON Lines file storage
=============================================================================
Used when DynamoDB is not enabled (local development, tests, offline demos).

Files (one JSON object per line):
- readings.jsonl: meter readings, one row per reading
- tokens.jsonl:   token purchases

Organic readings use the slot id "slot#<day>#<period>" as their reading_id,
so the one-reading-per-slot rule is the same uniqueness check the DynamoDB
table enforces with a conditional put. A threading lock makes the
check-and-append atomic within one process only: this store is for a single
process (the development server, tests, run_local). Multi-worker deployments
such as Elastic Beanstalk must run with USE_DYNAMODB=true.
=============================================================================
"""
import json
import logging
import threading
import uuid
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Dict, List, Optional

from backend.lib.prepaid_core.errors import ConflictError, UpstreamUnavailable, ValidationError
from backend.lib.prepaid_core.models import (
    ORGANIC, MeterReading, TokenPurchase,
    reading_from_record, reading_to_record, slot_id, token_from_record, token_to_record,
)
from backend.lib.prepaid_core.periods import local_date, period_for

logger = logging.getLogger("prepaid.store")


class LocalReadingStore:
    """
    Usage:
        store = LocalReadingStore(Path("backend/data"), tz)
        store.insert_reading("user-1", reading)
        readings = store.list_readings("user-1")
    """

    def __init__(self, data_dir: Path, tz: Optional[tzinfo] = None):
        self.data_dir = Path(data_dir)
        self.tz = tz
        self.readings_file = self.data_dir / "readings.jsonl"
        self.tokens_file = self.data_dir / "tokens.jsonl"
        self._lock = threading.Lock()
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise UpstreamUnavailable(f"Cannot create data directory {self.data_dir}: {e}") from e

    # -------------------------------------------------------------------------
    # file helpers
    # -------------------------------------------------------------------------

    def _load(self, path: Path) -> List[Dict]:
        if not path.exists():
            return []
        try:
            with path.open("r", encoding="utf-8") as f:
                return [json.loads(line) for line in f if line.strip()]
        except (OSError, json.JSONDecodeError) as e:
            raise UpstreamUnavailable(f"Cannot read {path.name}: {e}") from e

    def _append(self, path: Path, record: Dict):
        try:
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            raise UpstreamUnavailable(f"Cannot write {path.name}: {e}") from e

    def _rewrite(self, path: Path, records: List[Dict]):
        tmp = path.with_suffix(".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                for record in records:
                    f.write(json.dumps(record) + "\n")
            tmp.replace(path)
        except OSError as e:
            raise UpstreamUnavailable(f"Cannot write {path.name}: {e}") from e

    def _slot_for(self, reading: MeterReading) -> str:
        return slot_id(local_date(reading.timestamp, self.tz), reading.period)

    # -------------------------------------------------------------------------
    # readings
    # -------------------------------------------------------------------------

    def list_readings(self, user_id: str) -> List[MeterReading]:
        return [reading_from_record(r) for r in self._load(self.readings_file)
                if r.get("user_id") == user_id]

    def find_slot_reading(self, user_id: str, day: str, period: str) -> Optional[MeterReading]:
        wanted = slot_id(day, period)
        for r in self._load(self.readings_file):
            if r.get("user_id") == user_id and r.get("reading_id") == wanted:
                return reading_from_record(r)
        return None

    def latest_reading(self, user_id: str) -> Optional[MeterReading]:
        readings = self.list_readings(user_id)
        if not readings:
            return None
        return max(readings, key=lambda r: r.timestamp)

    def insert_reading(self, user_id: str, reading: MeterReading) -> MeterReading:
        """
        Organic readings get the slot id and raise ConflictError when the slot
        is already taken. Token readings get a fresh id and are never rejected.
        """
        if reading.kind == ORGANIC:
            reading_id = self._slot_for(reading)
        else:
            reading_id = f"token-reading-{uuid.uuid4().hex}"
        stored = MeterReading(id=reading_id, timestamp=reading.timestamp, value=reading.value,
                              period=reading.period, kind=reading.kind)

        with self._lock:
            if reading.kind == ORGANIC:
                for r in self._load(self.readings_file):
                    if r.get("user_id") == user_id and r.get("reading_id") == reading_id:
                        raise ConflictError(reading_from_record(r))
            self._append(self.readings_file, reading_to_record(user_id, stored))
        return stored

    def update_reading(self, user_id: str, reading_id: str, value: float,
                       timestamp: datetime) -> MeterReading:
        """Replace value and timestamp of an existing reading, keeping its id."""
        with self._lock:
            records = self._load(self.readings_file)
            for i, r in enumerate(records):
                if r.get("user_id") != user_id or r.get("reading_id") != reading_id:
                    continue
                current = reading_from_record(r)
                updated = MeterReading(id=reading_id, timestamp=timestamp, value=value,
                                       period=period_for(timestamp, self.tz), kind=current.kind)
                if current.kind == ORGANIC and self._slot_for(updated) != reading_id:
                    raise ValidationError("New timestamp falls outside the reading's day and period")
                records[i] = reading_to_record(user_id, updated)
                self._rewrite(self.readings_file, records)
                return updated
        raise ValidationError(f"No reading {reading_id} for user {user_id}")

    # -------------------------------------------------------------------------
    # token purchases
    # -------------------------------------------------------------------------

    def list_token_purchases(self, user_id: str) -> List[TokenPurchase]:
        return [token_from_record(t) for t in self._load(self.tokens_file)
                if t.get("user_id") == user_id]

    def insert_token_purchase(self, user_id: str, token: TokenPurchase) -> TokenPurchase:
        stored = TokenPurchase(id=f"token-{uuid.uuid4().hex}", timestamp=token.timestamp,
                               units=token.units, resulting_reading=token.resulting_reading,
                               cost=token.cost)
        with self._lock:
            self._append(self.tokens_file, token_to_record(user_id, stored))
        return stored

    def delete_token_purchase(self, user_id: str, token_id: str):
        """Remove a purchase whose companion reading could not be stored."""
        with self._lock:
            records = self._load(self.tokens_file)
            kept = [t for t in records
                    if not (t.get("user_id") == user_id and t.get("token_id") == token_id)]
            if len(kept) != len(records):
                self._rewrite(self.tokens_file, kept)
