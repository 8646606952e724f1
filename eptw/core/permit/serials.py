"""Permit serial numbers: ``<PREFIX>-<YYYY>-<NNNN>``, unique and never reused."""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eptw.db.models import SerialCounter

from .locks import serial_lock

logger = logging.getLogger(__name__)

MAX_COUNTER_CREATE_ATTEMPTS = 3


def format_serial(prefix: str, year: int, value: int) -> str:
    return f"{prefix}-{year}-{value:04d}"


def next_serial(db: Session, prefix: str, year: int) -> str:
    """
    Reserve the next serial for ``year`` in the caller's transaction.

    The counter is bumped with a single UPDATE, which write-locks the row
    until the caller commits, so concurrent creators queue behind it. Two
    processes creating the first permit of a year can both try to insert
    the counter row; the loser retries against the winner's row.
    """
    with serial_lock:
        for attempt in range(MAX_COUNTER_CREATE_ATTEMPTS):
            updated = db.query(SerialCounter).filter(
                SerialCounter.year == year
            ).update(
                {SerialCounter.last_value: SerialCounter.last_value + 1},
                synchronize_session=False,
            )

            if updated:
                value = db.query(SerialCounter.last_value).filter(
                    SerialCounter.year == year
                ).scalar()
                return format_serial(prefix, year, value)

            try:
                with db.begin_nested():
                    db.add(SerialCounter(year=year, last_value=1))
            except IntegrityError:
                logger.info(f"Serial counter for {year} created concurrently, retrying")
                continue
            return format_serial(prefix, year, 1)

    raise RuntimeError(f"Could not reserve a serial number for {year}")
