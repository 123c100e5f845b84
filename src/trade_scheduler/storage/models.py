"""
Pydantic models matching the PostgreSQL schema in schema.sql.

Table names and field names match the database, with two exceptions:
scheduled instructions keep their trigger and order template as nested
models (flattened to columns by the repository), and every status column
is a closed enum rather than a free-form string.

IMPORTANT: All monetary fields (prices, margin, PnL, fees) use Decimal.
Margin and balances are denominated in satoshis, prices in USD.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_SYMBOL = "BTC/USD"


# =============================================================================
# ENUMS
# =============================================================================


class InstructionStatus(str, Enum):
    """Lifecycle of a scheduled instruction. Only PENDING is non-terminal."""

    PENDING = "pending"
    TRIGGERED = "triggered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not InstructionStatus.PENDING


class TradeStatus(str, Enum):
    """
    Canonical trade lifecycle.

    OPEN is a resting order not yet filled, RUNNING a filled position.
    CLOSED and CANCELLED are terminal.
    """

    OPEN = "open"
    RUNNING = "running"
    CLOSED = "closed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.CLOSED, TradeStatus.CANCELLED)


ACTIVE_TRADE_STATUSES = (TradeStatus.OPEN, TradeStatus.RUNNING)


class TradeType(str, Enum):
    FUTURES = "futures"
    OPTIONS = "options"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderKind(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


class TriggerKind(str, Enum):
    DATE = "date"
    PRICE_RANGE = "price_range"
    PRICE_PERCENTAGE = "price_percentage"


class TradeScope(str, Enum):
    """Which exchange-side trades a reconciliation pass covers."""

    OPEN = "open"
    RUNNING = "running"
    CLOSED = "closed"
    ALL = "all"


# =============================================================================
# TRIGGERS
# =============================================================================


class DateTrigger(BaseModel):
    """Fires once the wall clock reaches ``at``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["date"] = "date"
    at: datetime


class PriceRangeTrigger(BaseModel):
    """Fires while the last price is inside [low, high], both inclusive."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["price_range"] = "price_range"
    low: Decimal
    high: Decimal


class PricePercentageTrigger(BaseModel):
    """
    Fires when price has moved ``percent`` from ``base_price``.

    base_price is captured once when the instruction is created and is
    never refreshed afterwards.
    """

    model_config = ConfigDict(frozen=True)

    kind: Literal["price_percentage"] = "price_percentage"
    percent: Decimal
    base_price: Decimal

    @property
    def target_price(self) -> Decimal:
        return self.base_price * (1 + self.percent / 100)


Trigger = Annotated[
    Union[DateTrigger, PriceRangeTrigger, PricePercentageTrigger],
    Field(discriminator="kind"),
]


# =============================================================================
# ORDER TEMPLATE
# =============================================================================


class OrderTemplate(BaseModel):
    """
    What to submit to the exchange when an instruction fires.

    Futures need leverage plus margin or quantity; limit orders need a
    price. Options on LN Markets are buy-only and need quantity,
    instrument and settlement.
    """

    model_config = ConfigDict(frozen=True)

    trade_type: TradeType = TradeType.FUTURES
    side: TradeSide
    order_kind: OrderKind = OrderKind.MARKET
    margin: Optional[Decimal] = None  # sats
    leverage: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None  # limit price
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    instrument_name: Optional[str] = None
    settlement: Optional[str] = None  # 'physical' or 'cash'

    @model_validator(mode="after")
    def _check_required_fields(self) -> "OrderTemplate":
        for name in ("margin", "leverage", "quantity", "price", "take_profit", "stop_loss"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive")

        if self.trade_type is TradeType.OPTIONS:
            if self.side is not TradeSide.BUY:
                raise ValueError("options trades can only be bought")
            missing = [
                name for name in ("quantity", "instrument_name", "settlement")
                if getattr(self, name) in (None, "")
            ]
            if missing:
                raise ValueError(f"options trade requires {', '.join(missing)}")
            return self

        if self.leverage is None:
            raise ValueError("futures trade requires leverage")
        if self.margin is None and self.quantity is None:
            raise ValueError("futures trade requires margin or quantity")
        if self.order_kind is OrderKind.LIMIT and self.price is None:
            raise ValueError("limit order requires a price")
        return self


# =============================================================================
# SCHEDULED INSTRUCTIONS
# =============================================================================


class ScheduledInstruction(BaseModel):
    """A stored conditional trade (table: scheduled_trades)."""

    id: Optional[int] = None
    user_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    symbol: str = DEFAULT_SYMBOL
    trigger: Trigger
    template: OrderTemplate
    status: InstructionStatus = InstructionStatus.PENDING
    executed_trade_id: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status is InstructionStatus.PENDING


def _validate_trigger(trigger: Any) -> None:
    if isinstance(trigger, PriceRangeTrigger):
        if trigger.low <= 0:
            raise ValueError("price range bounds must be positive")
        if trigger.low > trigger.high:
            raise ValueError("price range low must not exceed high")
    elif isinstance(trigger, PricePercentageTrigger):
        if trigger.percent == 0:
            raise ValueError("percentage must be non-zero")
        if trigger.percent <= -100:
            raise ValueError("percentage must be greater than -100")
        if trigger.base_price <= 0:
            raise ValueError("base price must be positive")


class PricePercentageRequest(BaseModel):
    """Percentage trigger as submitted by a user; base price may be omitted."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["price_percentage"] = "price_percentage"
    percent: Decimal
    base_price: Optional[Decimal] = None


TriggerRequest = Annotated[
    Union[DateTrigger, PriceRangeTrigger, PricePercentageRequest],
    Field(discriminator="kind"),
]


class ScheduledInstructionCreate(BaseModel):
    """
    Validated input for creating a scheduled instruction.

    Malformed triggers are rejected here so they never enter PENDING.
    A percentage trigger without base_price is completed by the service
    from the current market snapshot.
    """

    user_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    symbol: str = DEFAULT_SYMBOL
    trigger: TriggerRequest
    template: OrderTemplate

    @model_validator(mode="after")
    def _check_trigger(self) -> "ScheduledInstructionCreate":
        trigger = self.trigger
        if isinstance(trigger, PricePercentageRequest):
            if trigger.percent == 0:
                raise ValueError("percentage must be non-zero")
            if trigger.percent <= -100:
                raise ValueError("percentage must be greater than -100")
            if trigger.base_price is not None and trigger.base_price <= 0:
                raise ValueError("base price must be positive")
        else:
            _validate_trigger(trigger)
        return self


class ScheduledInstructionUpdate(BaseModel):
    """Edits allowed while an instruction is still pending."""

    name: Optional[str] = None
    description: Optional[str] = None
    trigger: Optional[Trigger] = None
    template: Optional[OrderTemplate] = None

    @model_validator(mode="after")
    def _check_trigger(self) -> "ScheduledInstructionUpdate":
        if self.trigger is not None:
            _validate_trigger(self.trigger)
        return self


# =============================================================================
# TRADES
# =============================================================================


class Trade(BaseModel):
    """Local record of an exchange trade (table: trades)."""

    id: Optional[int] = None
    user_id: str
    external_id: Optional[str] = None  # LN Markets trade id
    scheduled_trade_id: Optional[int] = None
    trade_type: TradeType = TradeType.FUTURES
    side: TradeSide
    order_kind: OrderKind = OrderKind.MARKET
    status: TradeStatus = TradeStatus.OPEN
    entry_price: Optional[Decimal] = None
    exit_price: Optional[Decimal] = None
    limit_price: Optional[Decimal] = None
    margin: Optional[Decimal] = None
    leverage: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    pnl: Optional[Decimal] = None  # sats
    fee: Optional[Decimal] = None  # sats
    liquidation_price: Optional[Decimal] = None
    instrument_name: Optional[str] = None
    settlement: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_TRADE_STATUSES


# =============================================================================
# MARKET DATA / USERS
# =============================================================================


class MarketSnapshot(BaseModel):
    """Latest ticker fields for one symbol (table: market_data)."""

    symbol: str = DEFAULT_SYMBOL
    last_price: Optional[Decimal] = None
    index_price: Optional[Decimal] = None
    bid_price: Optional[Decimal] = None
    ask_price: Optional[Decimal] = None
    funding_rate: Optional[Decimal] = None
    next_funding_time: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_usable(self) -> bool:
        """A snapshot without a positive last price cannot drive price triggers."""
        return self.last_price is not None and self.last_price > 0


class UserCredentials(BaseModel):
    """LN Markets API key material stored per user (table: users)."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    api_key: str
    api_secret: str
    api_passphrase: str
