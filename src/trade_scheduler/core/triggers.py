"""
Trigger evaluation - pure functions.

Given an instruction, the current market snapshot and the current time,
decide whether the instruction's trigger holds. No I/O and no state, so
re-evaluating the same inputs always gives the same verdict.

Rules:
    date              now >= at
    price_range       low <= price <= high (inclusive); low > high never matches
    price_percentage  percent > 0: price >= base * (1 + percent/100)
                      percent < 0: price <= base * (1 + percent/100)

A missing or unusable snapshot is a non-match, not an error.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from trade_scheduler.storage.models import (
    DateTrigger,
    MarketSnapshot,
    PricePercentageTrigger,
    PriceRangeTrigger,
    ScheduledInstruction,
)


@dataclass(frozen=True)
class TriggerVerdict:
    """Result of one evaluation."""

    matched: bool
    reason: str

    def __bool__(self) -> bool:
        return self.matched


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def evaluate_date(trigger: DateTrigger, now: datetime) -> TriggerVerdict:
    at = _as_utc(trigger.at)
    now = _as_utc(now)
    if now >= at:
        return TriggerVerdict(True, f"scheduled time {at.isoformat()} reached")
    return TriggerVerdict(False, f"waiting until {at.isoformat()}")


def evaluate_price_range(
    trigger: PriceRangeTrigger, snapshot: Optional[MarketSnapshot]
) -> TriggerVerdict:
    if trigger.low > trigger.high:
        return TriggerVerdict(False, f"inverted range {trigger.low}-{trigger.high} never matches")
    if snapshot is None or not snapshot.is_usable:
        return TriggerVerdict(False, "no market price available")

    price = snapshot.last_price
    if trigger.low <= price <= trigger.high:
        return TriggerVerdict(True, f"price {price} inside {trigger.low}-{trigger.high}")
    return TriggerVerdict(False, f"price {price} outside {trigger.low}-{trigger.high}")


def evaluate_price_percentage(
    trigger: PricePercentageTrigger, snapshot: Optional[MarketSnapshot]
) -> TriggerVerdict:
    if trigger.percent == 0 or trigger.base_price <= 0:
        return TriggerVerdict(False, "zero percentage or non-positive base never matches")
    if snapshot is None or not snapshot.is_usable:
        return TriggerVerdict(False, "no market price available")

    price = snapshot.last_price
    target = trigger.target_price
    if trigger.percent > 0:
        matched = price >= target
        relation = ">=" if matched else "<"
    else:
        matched = price <= target
        relation = "<=" if matched else ">"
    return TriggerVerdict(
        matched,
        f"price {price} {relation} target {target} ({trigger.percent:+}% from {trigger.base_price})",
    )


def evaluate(
    instruction: ScheduledInstruction,
    snapshot: Optional[MarketSnapshot],
    now: datetime,
) -> TriggerVerdict:
    """Evaluate an instruction's trigger against a snapshot at time ``now``."""
    trigger = instruction.trigger
    if isinstance(trigger, DateTrigger):
        return evaluate_date(trigger, now)
    if isinstance(trigger, PriceRangeTrigger):
        return evaluate_price_range(trigger, snapshot)
    if isinstance(trigger, PricePercentageTrigger):
        return evaluate_price_percentage(trigger, snapshot)
    return TriggerVerdict(False, f"unknown trigger kind {getattr(trigger, 'kind', None)!r}")
