"""
Reading submission and token purchase flows.

Both work against a store object that provides list_readings, find_slot_reading,
insert_reading, update_reading, insert_token_purchase, delete_token_purchase
and latest_reading
(see backend/lib/local_store.py and backend/lib/dynamodb_service.py).

Submitting a reading walks this state machine:

    IDLE -> VALIDATING -> CHECKING_DUPLICATE -> WRITING_NEW -> DONE
                                             -> AWAITING_USER_DECISION
    AWAITING_USER_DECISION -> WRITING_UPDATE -> DONE   (confirm / override)
    AWAITING_USER_DECISION -> IDLE                      (cancel)

A failed validation returns to IDLE. WRITING_NEW can also land in
AWAITING_USER_DECISION when the store's uniqueness check rejects the insert,
which happens when another submission took the slot after our duplicate check.
"""
import logging
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .errors import ConflictError, ValidationError
from .io import check_period, parse_number, parse_timestamp
from .models import ORGANIC, TOKEN, MeterReading, TokenPurchase
from .periods import local_date, period_for, to_local

logger = logging.getLogger("prepaid.submission")


class SubmissionState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    CHECKING_DUPLICATE = "checking_duplicate"
    WRITING_NEW = "writing_new"
    AWAITING_USER_DECISION = "awaiting_user_decision"
    WRITING_UPDATE = "writing_update"
    DONE = "done"


TRANSITIONS = {
    SubmissionState.IDLE: {SubmissionState.VALIDATING},
    SubmissionState.VALIDATING: {SubmissionState.CHECKING_DUPLICATE, SubmissionState.IDLE},
    SubmissionState.CHECKING_DUPLICATE: {
        SubmissionState.WRITING_NEW, SubmissionState.AWAITING_USER_DECISION,
    },
    SubmissionState.WRITING_NEW: {
        SubmissionState.DONE, SubmissionState.AWAITING_USER_DECISION,
    },
    SubmissionState.AWAITING_USER_DECISION: {
        SubmissionState.WRITING_UPDATE, SubmissionState.IDLE,
    },
    SubmissionState.WRITING_UPDATE: {SubmissionState.DONE},
    SubmissionState.DONE: set(),
}


class InvalidTransition(RuntimeError):
    pass


class ReadingSubmission:
    """
    One attempt to record an organic reading for a user.

    Usage:
        flow = ReadingSubmission(store, "user-1", tz)
        try:
            reading = flow.submit("812.5")
        except ConflictError as e:
            # show e.existing, then either
            reading = flow.confirm()
            # or
            flow.cancel()
    """

    def __init__(self, store, user_id: str, tz: Optional[tzinfo] = None):
        self.store = store
        self.user_id = user_id
        self.tz = tz
        self.state = SubmissionState.IDLE
        self.pending: Optional[MeterReading] = None
        self.existing: Optional[MeterReading] = None
        self.result: Optional[MeterReading] = None
        self.updated = False

    def _move(self, new_state: SubmissionState):
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {new_state.value}")
        logger.debug("submission %s: %s -> %s", self.user_id, self.state.value, new_state.value)
        self.state = new_state

    def submit(self, raw_value, timestamp=None, period: Optional[str] = None,
               override: bool = False, now: Optional[datetime] = None) -> MeterReading:
        """
        Validate and store a reading. Without a timestamp the reading is taken
        "now"; with one it is a backdated reading.

        Raises ValidationError on bad input and ConflictError when the
        (day, period) slot is taken and override is False. With override the
        stored reading is overwritten in place.
        """
        self._move(SubmissionState.VALIDATING)
        try:
            value = parse_number(raw_value, "reading")
            if timestamp is None:
                ts = to_local(now or datetime.now(timezone.utc), self.tz)
            else:
                ts = parse_timestamp(timestamp, self.tz)
            canonical = check_period(period, ts, self.tz)
        except ValidationError:
            self._move(SubmissionState.IDLE)
            raise
        self.pending = MeterReading(id="", timestamp=ts, value=value,
                                    period=canonical, kind=ORGANIC)

        self._move(SubmissionState.CHECKING_DUPLICATE)
        day = local_date(ts, self.tz)
        existing = self.store.find_slot_reading(self.user_id, day, canonical)

        if existing is None:
            self._move(SubmissionState.WRITING_NEW)
            try:
                self.result = self.store.insert_reading(self.user_id, self.pending)
            except ConflictError as e:
                logger.info("Slot %s/%s taken during insert for %s", day, canonical, self.user_id)
                existing = e.existing
            else:
                self._move(SubmissionState.DONE)
                return self.result

        self.existing = existing
        self._move(SubmissionState.AWAITING_USER_DECISION)
        if override:
            return self.confirm()
        raise ConflictError(existing)

    def confirm(self) -> MeterReading:
        """Overwrite the existing slot reading with the pending value and timestamp."""
        self._move(SubmissionState.WRITING_UPDATE)
        self.result = self.store.update_reading(
            self.user_id, self.existing.id, self.pending.value, self.pending.timestamp)
        self.updated = True
        logger.info("Reading %s for %s overwritten with %.2f",
                    self.existing.id, self.user_id, self.pending.value)
        self._move(SubmissionState.DONE)
        return self.result

    def cancel(self) -> MeterReading:
        """Keep the stored reading; the pending value is dropped."""
        self._move(SubmissionState.IDLE)
        self.pending = None
        return self.existing


def _store_token(store, user_id: str, token: TokenPurchase,
                 tz: Optional[tzinfo]) -> Tuple[TokenPurchase, MeterReading]:
    """
    Write a purchase and its companion reading as a pair. If the reading
    cannot be stored the purchase is deleted again; a purchase is never left
    stored without its reading.
    """
    token = store.insert_token_purchase(user_id, token)
    try:
        reading = store.insert_reading(user_id, MeterReading(
            id="", timestamp=token.timestamp, value=token.resulting_reading,
            period=period_for(token.timestamp, tz), kind=TOKEN,
        ))
    except Exception:
        logger.error("Reading for token %s of %s not stored; removing the purchase",
                     token.id, user_id)
        store.delete_token_purchase(user_id, token.id)
        raise
    return token, reading


def record_token_purchase(store, user_id: str, units, cost=None,
                          now: Optional[datetime] = None,
                          tz: Optional[tzinfo] = None) -> Tuple[TokenPurchase, MeterReading]:
    """
    Store a token purchase and the meter reading it produces.

    resulting_reading = latest reading (0 if none yet) + units. The companion
    reading shares the purchase timestamp and is exempt from the one
    reading per (day, period) rule.
    """
    units = parse_number(units, "units", allow_zero=False)
    cost = parse_number(cost, "cost") if cost not in (None, "") else None
    ts = to_local(now or datetime.now(timezone.utc), tz)

    latest = store.latest_reading(user_id)
    base = latest.value if latest else 0.0

    token, reading = _store_token(store, user_id, TokenPurchase(
        id="", timestamp=ts, units=units,
        resulting_reading=round(base + units, 4), cost=cost,
    ), tz)
    logger.info("Token purchase of %.2f units for %s, meter now %.2f",
                units, user_id, token.resulting_reading)
    return token, reading


def import_history(store, user_id: str, readings: Iterable[MeterReading] = (),
                   tokens: Iterable[TokenPurchase] = (),
                   tz: Optional[tzinfo] = None) -> Dict[str, int]:
    """
    Bulk-load previously recorded data (e.g. an offline CSV export).

    Organic readings whose slot is already filled are skipped, never
    overwritten. Each token purchase brings its companion reading along.
    """
    counts = {"readings": 0, "tokens": 0, "skipped": 0}
    for reading in readings:
        try:
            store.insert_reading(user_id, reading)
            counts["readings"] += 1
        except ConflictError:
            counts["skipped"] += 1

    for token in tokens:
        _store_token(store, user_id, token, tz)
        counts["tokens"] += 1

    if counts["skipped"]:
        logger.info("Import for %s skipped %d readings with an occupied slot",
                    user_id, counts["skipped"])
    return counts
