"""
Centralized id generation for ledger rows and rebalance events.

Ids carry a millisecond timestamp prefix so they sort roughly by creation
time, followed by random uuid4 bits for uniqueness.
"""

from __future__ import annotations

import time
from uuid import uuid4


def _time_prefixed_uuid() -> str:
    ts_ms = int(time.time() * 1000)
    return f"{ts_ms:013x}-{str(uuid4())[13:]}"


def generate_event_id() -> str:
    """Id for rebalance events."""
    return _time_prefixed_uuid()


def generate_transaction_id() -> str:
    """Id for ledger transactions."""
    return _time_prefixed_uuid()


def generate_snapshot_id() -> str:
    """Id for portfolio performance snapshots."""
    return _time_prefixed_uuid()
