"""
Execution Engine - ROI Table.

============================================================
PURPOSE
============================================================
Time-decaying minimum-profit exits.

A table maps trade age in minutes to the profit fraction at
which the position should be closed:

    {0: 0.06, 60: 0.04, 240: 0.02, 480: 0.01, 1440: 0.0}

The threshold in force is the one under the largest key not
greater than the trade's age. Trades younger than the smallest
key have no ROI exit.

============================================================
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Mapping, Optional, Union

from database.models import utc_now


logger = logging.getLogger(__name__)


RoiTable = Dict[float, float]


@dataclass
class RoiDecision:
    """Outcome of an ROI check."""

    should_exit: bool
    threshold: Optional[float]
    trade_minutes: float


def parse_roi_table(raw: Union[str, Mapping, None]) -> RoiTable:
    """
    Parse an ROI table from a JSON object string or a mapping.

    Invalid input yields an empty table (no ROI exits) with a warning.
    """
    if raw is None:
        return {}

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse ROI table JSON, using empty table: {raw!r}")
            return {}

    if not isinstance(raw, Mapping):
        logger.warning(f"ROI table is not an object, using empty table: {raw!r}")
        return {}

    table: RoiTable = {}
    for key, value in raw.items():
        try:
            table[float(key)] = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring invalid ROI table entry {key!r}: {value!r}")
    return dict(sorted(table.items()))


def get_roi_threshold(table: RoiTable, trade_minutes: float) -> Optional[float]:
    """Threshold for a trade of the given age, or None if none applies."""
    threshold = None
    for minutes in sorted(table):
        if minutes > trade_minutes:
            break
        threshold = table[minutes]
    return threshold


def should_exit_by_roi(
    table: RoiTable,
    entry_time: datetime,
    pnl_pct: float,
    now: Optional[datetime] = None,
) -> RoiDecision:
    """Exit when the current profit fraction reaches the threshold for the trade's age."""
    now = now or utc_now()
    trade_minutes = (now - entry_time).total_seconds() / 60

    threshold = get_roi_threshold(table, trade_minutes)
    if threshold is None:
        return RoiDecision(False, None, trade_minutes)

    return RoiDecision(pnl_pct >= threshold, threshold, trade_minutes)


__all__ = [
    "RoiTable",
    "RoiDecision",
    "parse_roi_table",
    "get_roi_threshold",
    "should_exit_by_roi",
]
