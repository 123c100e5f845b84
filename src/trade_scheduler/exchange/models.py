"""
Wire-level data models for the LN Markets v2 REST API.

The exchange speaks in one-letter codes ('m'/'l', 'b'/'s'), millisecond
timestamps and independent boolean status flags. These frozen dataclasses
translate between that and the storage enums.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from trade_scheduler.storage.models import (
    DEFAULT_SYMBOL,
    OrderKind,
    OrderTemplate,
    TradeSide,
    TradeType,
)

_SIDE_CODES = {TradeSide.BUY: "b", TradeSide.SELL: "s"}
_KIND_CODES = {OrderKind.MARKET: "m", OrderKind.LIMIT: "l"}


def to_decimal(value: Any) -> Optional[Decimal]:
    """Decimal from an API number/string; None for null or garbage."""
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _optional_level(value: Any) -> Optional[Decimal]:
    """Take-profit / stop-loss of 0 means "not set" on LN Markets."""
    level = to_decimal(value)
    if level is None or level == 0:
        return None
    return level


def from_millis(value: Any) -> Optional[datetime]:
    if value in (None, 0, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def _json_number(value: Decimal):
    """JSON-safe number: int when integral, else float."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


# =============================================================================
# Orders
# =============================================================================


@dataclass(frozen=True)
class OrderRequest:
    """A new-trade request, built from an instruction's order template."""

    trade_type: TradeType
    side: TradeSide
    order_kind: OrderKind = OrderKind.MARKET
    margin: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    instrument_name: Optional[str] = None
    settlement: Optional[str] = None

    @classmethod
    def from_template(cls, template: OrderTemplate) -> "OrderRequest":
        return cls(
            trade_type=template.trade_type,
            side=template.side,
            order_kind=template.order_kind,
            margin=template.margin,
            leverage=template.leverage,
            quantity=template.quantity,
            price=template.price,
            take_profit=template.take_profit,
            stop_loss=template.stop_loss,
            instrument_name=template.instrument_name,
            settlement=template.settlement,
        )

    @property
    def is_options(self) -> bool:
        return self.trade_type is TradeType.OPTIONS

    def to_payload(self) -> dict[str, Any]:
        """JSON body for POST /futures or POST /options."""
        if self.is_options:
            return {
                "side": "b",
                "quantity": _json_number(self.quantity),
                "settlement": self.settlement,
                "instrument_name": self.instrument_name,
            }

        payload: dict[str, Any] = {
            "type": _KIND_CODES[self.order_kind],
            "side": _SIDE_CODES[self.side],
            "leverage": _json_number(self.leverage),
        }
        # LN Markets takes either margin or quantity, not both
        if self.margin is not None:
            payload["margin"] = _json_number(self.margin)
        else:
            payload["quantity"] = _json_number(self.quantity)
        if self.order_kind is OrderKind.LIMIT:
            payload["price"] = _json_number(self.price)
        if self.take_profit is not None:
            payload["takeprofit"] = _json_number(self.take_profit)
        if self.stop_loss is not None:
            payload["stoploss"] = _json_number(self.stop_loss)
        return payload


@dataclass(frozen=True)
class OrderAck:
    """The exchange's acknowledgement of a new trade."""

    external_id: str
    entry_price: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, data: dict) -> Optional["OrderAck"]:
        """None if the response carries no trade id."""
        external_id = str(data.get("id") or "").strip()
        if not external_id:
            return None
        entry = data.get("entry_price")
        if entry is None and data.get("type") == "m":
            entry = data.get("price")
        return cls(
            external_id=external_id,
            entry_price=to_decimal(entry),
            liquidation_price=to_decimal(data.get("liquidation")),
            margin=to_decimal(data.get("margin")),
            quantity=to_decimal(data.get("quantity")),
            fee=to_decimal(data.get("opening_fee")),
            raw=data,
        )


# =============================================================================
# Trades
# =============================================================================


@dataclass(frozen=True)
class ExchangeTrade:
    """
    A trade as the exchange reports it.

    Status is carried as the exchange's own independent flags; mapping them
    onto the canonical lifecycle is the reconciler's job.
    """

    external_id: str
    trade_type: TradeType
    side: TradeSide
    order_kind: OrderKind
    open: bool = False
    running: bool = False
    closed: bool = False
    canceled: bool = False
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    pnl: Optional[Decimal] = None
    fee: Optional[Decimal] = None
    liquidation_price: Optional[Decimal] = None
    instrument_name: Optional[str] = None
    settlement: Optional[str] = None
    created_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @classmethod
    def from_futures(cls, data: dict) -> "ExchangeTrade":
        """
        Parse a futures trade.

        fee = opening_fee + closing_fee + sum_carry_fees
        """
        external_id = str(data.get("id") or "").strip()
        if not external_id:
            raise ValueError("futures trade without id")

        fee_parts = [
            to_decimal(data.get(k)) for k in ("opening_fee", "closing_fee", "sum_carry_fees")
        ]
        fees = [f for f in fee_parts if f is not None]

        return cls(
            external_id=external_id,
            trade_type=TradeType.FUTURES,
            side=TradeSide.SELL if data.get("side") == "s" else TradeSide.BUY,
            order_kind=OrderKind.LIMIT if data.get("type") == "l" else OrderKind.MARKET,
            open=bool(data.get("open")),
            running=bool(data.get("running")),
            closed=bool(data.get("closed")),
            canceled=bool(data.get("canceled")),
            entry_price=to_decimal(data.get("entry_price")),
            exit_price=to_decimal(data.get("exit_price")),
            limit_price=to_decimal(data.get("price")) if data.get("type") == "l" else None,
            margin=to_decimal(data.get("margin")),
            leverage=to_decimal(data.get("leverage")),
            quantity=to_decimal(data.get("quantity")),
            take_profit=_optional_level(data.get("takeprofit")),
            stop_loss=_optional_level(data.get("stoploss")),
            pnl=to_decimal(data.get("pl")),
            fee=sum(fees, Decimal("0")) if fees else None,
            liquidation_price=to_decimal(data.get("liquidation")),
            instrument_name=DEFAULT_SYMBOL,
            created_at=from_millis(data.get("creation_ts")),
            closed_at=from_millis(data.get("closed_ts")),
        )

    @classmethod
    def from_options(cls, data: dict) -> "ExchangeTrade":
        """
        Parse an options trade.

        Options are filled on purchase, so a live one is reported as
        running; closed or expired ones as closed.
        """
        external_id = str(data.get("id") or "").strip()
        if not external_id:
            raise ValueError("options trade without id")

        closed = bool(data.get("closed")) or bool(data.get("expired"))
        fee_parts = [to_decimal(data.get(k)) for k in ("opening_fee", "closing_fee")]
        fees = [f for f in fee_parts if f is not None]

        return cls(
            external_id=external_id,
            trade_type=TradeType.OPTIONS,
            side=TradeSide.BUY,
            order_kind=OrderKind.MARKET,
            running=not closed,
            closed=closed,
            entry_price=to_decimal(data.get("forward") or data.get("strike")),
            exit_price=to_decimal(data.get("exit_price")),
            margin=to_decimal(data.get("margin")),
            quantity=to_decimal(data.get("quantity")),
            pnl=to_decimal(data.get("pl")),
            fee=sum(fees, Decimal("0")) if fees else None,
            instrument_name=data.get("instrument_name") or data.get("type"),
            settlement=data.get("settlement"),
            created_at=from_millis(data.get("creation_ts")),
            closed_at=from_millis(data.get("closed_ts")),
        )


# =============================================================================
# Market data
# =============================================================================


@dataclass(frozen=True)
class Ticker:
    """Public futures ticker (GET /futures/ticker)."""

    last_price: Optional[Decimal]
    index_price: Optional[Decimal] = None
    bid_price: Optional[Decimal] = None
    ask_price: Optional[Decimal] = None
    carry_fee_rate: Optional[Decimal] = None
    carry_fee_time: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: dict) -> "Ticker":
        return cls(
            last_price=to_decimal(data.get("lastPrice")),
            index_price=to_decimal(data.get("index")),
            bid_price=to_decimal(data.get("bidPrice")),
            ask_price=to_decimal(data.get("askPrice")),
            carry_fee_rate=to_decimal(data.get("carryFeeRate")),
            carry_fee_time=from_millis(data.get("carryFeeTimestamp")),
        )
