import json
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple

QUOTE_COIN = "USDT"


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    CONNECTING = "CONNECTING"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class MonitorPhase(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    MONITORING = "MONITORING"
    ERROR = "ERROR"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class PortfolioConfig:
    """
    Target allocation set by the user.
    targets: coin -> target percentage (0-100). Only enabled coins are present.
    """
    targets: Dict[str, Decimal] = field(default_factory=dict)
    threshold: Decimal = Decimal("1.0")
    is_active: bool = True
    # Optional per-portfolio overrides of the global settings
    min_trade_usdt: Optional[Decimal] = None
    check_interval_seconds: Optional[int] = None

    @property
    def total_target(self) -> Decimal:
        return sum(self.targets.values(), Decimal("0"))

    def symbols(self, quote_coin: str = QUOTE_COIN) -> list:
        return [f"{coin}{quote_coin}" for coin in self.targets if coin != quote_coin]


@dataclass(frozen=True)
class CoinBalance:
    """Wallet balance of one coin as reported by the exchange."""
    coin: str
    wallet_balance: Decimal
    available_to_withdraw: Decimal = Decimal("0")
    usd_value: Decimal = Decimal("0")


@dataclass(frozen=True)
class InstrumentInfo:
    """
    Trading constraints of one spot pair.
    base_precision: number of decimal places allowed for base quantity.
    """
    symbol: str
    base_coin: str
    quote_coin: str
    status: str
    base_precision: int
    quote_precision: int = 8
    min_order_qty: Decimal = Decimal("0")
    max_order_qty: Decimal = Decimal("0")
    min_order_amt: Decimal = Decimal("0")
    max_order_amt: Decimal = Decimal("0")
    tick_size: Decimal = Decimal("0")


@dataclass(frozen=True)
class CoinHolding:
    coin: str
    balance: Decimal
    usdt_value: Decimal
    current_percentage: Decimal
    target_percentage: Decimal
    deviation: Decimal  # current_percentage - target_percentage
    price_usdt: Decimal

    def to_dict(self) -> dict:
        return {
            "coin": self.coin,
            "balance": str(self.balance),
            "usdtValue": str(self.usdt_value),
            "currentPercentage": str(self.current_percentage),
            "targetPercentage": str(self.target_percentage),
            "deviation": str(self.deviation),
            "priceUsdt": str(self.price_usdt),
        }


@dataclass(frozen=True)
class PortfolioState:
    holdings: Tuple[CoinHolding, ...]
    total_value_usdt: Decimal
    timestamp: datetime = field(default_factory=datetime.now, compare=False)

    @property
    def is_degenerate(self) -> bool:
        return self.total_value_usdt <= 0

    def holding(self, coin: str) -> Optional[CoinHolding]:
        for h in self.holdings:
            if h.coin == coin:
                return h
        return None

    def to_json(self) -> str:
        return json.dumps({
            "timestamp": self.timestamp.isoformat(),
            "totalValueUsdt": str(self.total_value_usdt),
            "coins": [h.to_dict() for h in self.holdings],
        })

    @classmethod
    def empty(cls) -> "PortfolioState":
        return cls(holdings=(), total_value_usdt=Decimal("0"))


@dataclass(frozen=True)
class RebalanceTrade:
    """A planned, not yet executed market order."""
    coin: str
    symbol: str
    action: TradeAction
    quantity: Decimal
    estimated_usdt_amount: Decimal
    current_price: Decimal


@dataclass(frozen=True)
class TradeLog:
    """
    Record of an attempted trade. Created when the order is submitted and
    replaced once with its confirmed status.
    """
    action: str
    symbol: str
    coin: str
    quantity: Decimal
    price: Decimal
    usdt_amount: Decimal
    portfolio_before: str
    portfolio_after: str
    status: str
    order_id: Optional[str] = None
    order_link_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action,
            "symbol": self.symbol,
            "coin": self.coin,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "usdtAmount": str(self.usdt_amount),
            "orderId": self.order_id,
            "orderLinkId": self.order_link_id,
            "status": self.status,
            "portfolioBefore": self.portfolio_before,
            "portfolioAfter": self.portfolio_after,
        }


@dataclass(frozen=True)
class AppLog:
    timestamp: datetime
    level: str  # DEBUG, INFO, WARNING, ERROR
    tag: str
    message: str
    details: Optional[str] = None


@dataclass(frozen=True)
class LogStats:
    total_logs: int
    error_count: int
    total_trades: int
    successful_trades: int
    failed_trades: int


@dataclass(frozen=True)
class ServiceState:
    """Status of the monitoring loop as seen by readers. Replaced, never mutated."""
    is_running: bool = False
    phase: MonitorPhase = MonitorPhase.IDLE
    connection_status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_check_time: Optional[datetime] = None
    last_rebalance_time: Optional[datetime] = None
    error_message: Optional[str] = None
