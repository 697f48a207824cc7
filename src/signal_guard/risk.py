"""ATR-based position sizing with Fibonacci take-profit ladders.

 • risk amount   = balance x max risk % x tolerance/100
 • stop distance = ATR x multiplier (optionally rescaled by current/historical ATR)
 • size          = risk amount / stop distance
 • TP1/TP2/TP3   = entry +/- 1.618 / 2.618 / 4.236 stop distances, 50/30/20 split
TP1 is widened if needed so reward/risk never drops below the floor; the
stop itself is never tightened to reach it.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from .models import PositionType
from .settings import settings


FIB_MULTIPLES = (1.618, 2.618, 4.236)
TP_ALLOCATIONS = (50, 30, 20)


class RiskInputError(ValueError):
    pass


@dataclass(frozen=True)
class RiskInput:
    account_balance: float
    risk_tolerance: float          # 0-100, share of the max per-trade risk to use
    entry_price: float
    atr: float
    position_type: PositionType
    historical_atr: float | None = None
    bollinger_upper: float | None = None
    bollinger_lower: float | None = None


@dataclass(frozen=True)
class TakeProfitLevel:
    price: float
    allocation_pct: int


@dataclass(frozen=True)
class RiskPlan:
    position_type: PositionType
    entry_price: float
    position_size: float
    stop_loss: float
    take_profits: tuple[TakeProfitLevel, TakeProfitLevel, TakeProfitLevel]
    risk_reward: float
    risk_amount: float
    max_loss: float
    max_loss_pct: float
    potential_profit: float

    @property
    def tp1(self) -> TakeProfitLevel:
        return self.take_profits[0]

    @property
    def tp2(self) -> TakeProfitLevel:
        return self.take_profits[1]

    @property
    def tp3(self) -> TakeProfitLevel:
        return self.take_profits[2]


def adjust_stop_loss_for_volatility(
    base_stop: float,
    current_atr: float,
    historical_atr: float,
    entry_price: float,
    position_type: PositionType,
) -> float:
    """Scale the stop distance by current/historical ATR.

    Above 1 widens the stop, below 1 tightens it, exactly 1 leaves it alone.
    """
    if historical_atr <= 0 or current_atr <= 0:
        raise RiskInputError("ATR must be positive")
    ratio = current_atr / historical_atr
    distance = abs(entry_price - base_stop) * ratio
    if position_type is PositionType.SHORT:
        stop = entry_price + distance
    else:
        stop = entry_price - distance
    if stop <= 0:
        raise RiskInputError(f"Volatility-adjusted stop {stop:.4f} is not a valid price")
    return stop


class RiskCalculator:
    def __init__(
        self,
        max_risk_pct: float | None = None,
        atr_stop_multiplier: float | None = None,
        min_risk_reward: float | None = None,
        max_loss_pct_cap: float | None = None,
    ) -> None:
        self.max_risk_pct = max_risk_pct if max_risk_pct is not None else settings.max_risk_per_trade_pct
        self.atr_stop_multiplier = (
            atr_stop_multiplier if atr_stop_multiplier is not None else settings.atr_stop_multiplier
        )
        self.min_risk_reward = min_risk_reward if min_risk_reward is not None else settings.min_risk_reward
        self.max_loss_pct_cap = max_loss_pct_cap if max_loss_pct_cap is not None else settings.max_loss_pct_cap
        if self.max_risk_pct > self.max_loss_pct_cap:
            raise ValueError(f"Max risk per trade {self.max_risk_pct}% exceeds loss cap {self.max_loss_pct_cap}%")

    def calculate(self, params: RiskInput) -> RiskPlan:
        self._validate(params)
        side = 1 if params.position_type is PositionType.LONG else -1
        entry = params.entry_price

        # ── stop ──
        stop_distance = params.atr * self.atr_stop_multiplier
        stop_loss = entry - side * stop_distance
        if params.historical_atr:
            stop_loss = adjust_stop_loss_for_volatility(
                stop_loss, params.atr, params.historical_atr, entry, params.position_type
            )
            stop_distance = abs(entry - stop_loss)
        if stop_loss <= 0:
            raise RiskInputError(
                f"Stop loss {stop_loss:.4f} is not a valid price; ATR too large for entry {entry}"
            )

        # ── size ──
        risk_pct = self.max_risk_pct * params.risk_tolerance / 100
        risk_amount = params.account_balance * risk_pct / 100
        position_size = risk_amount / stop_distance

        # ── take profits ──
        distances = [stop_distance * m for m in FIB_MULTIPLES]
        floor_distance = stop_distance * self.min_risk_reward
        if distances[0] < floor_distance:
            distances[0] = floor_distance
        if side == 1 and params.bollinger_upper is not None:
            distances[2] = max(distances[2], params.bollinger_upper - entry)
        if side == -1 and params.bollinger_lower is not None:
            distances[2] = max(distances[2], entry - params.bollinger_lower)
        # keep the ladder strictly ordered
        for i in (1, 2):
            if distances[i] <= distances[i - 1]:
                distances[i] = distances[i - 1] * FIB_MULTIPLES[i] / FIB_MULTIPLES[i - 1]
        if side == -1 and entry - distances[2] <= 0:
            # a short's TP ladder cannot go through zero
            raise RiskInputError(
                f"Take-profit ladder for SHORT at {entry} would cross zero; ATR too large"
            )

        take_profits = tuple(
            TakeProfitLevel(price=entry + side * d, allocation_pct=alloc)
            for d, alloc in zip(distances, TP_ALLOCATIONS)
        )
        risk_reward = distances[0] / stop_distance
        potential_profit = sum(position_size * d * alloc / 100 for d, alloc in zip(distances, TP_ALLOCATIONS))
        max_loss_pct = risk_amount / params.account_balance * 100

        plan = RiskPlan(
            position_type=params.position_type,
            entry_price=entry,
            position_size=position_size,
            stop_loss=stop_loss,
            take_profits=take_profits,
            risk_reward=risk_reward,
            risk_amount=risk_amount,
            max_loss=risk_amount,
            max_loss_pct=min(max_loss_pct, self.max_loss_pct_cap),
            potential_profit=potential_profit,
        )
        logger.info(
            "{} plan: entry {:.2f} stop {:.2f} tp {} size {:.6f} R:R {:.2f}",
            params.position_type.value,
            entry,
            stop_loss,
            [round(tp.price, 2) for tp in take_profits],
            position_size,
            risk_reward,
        )
        return plan

    def _validate(self, params: RiskInput) -> None:
        if params.position_type is PositionType.NO_TRADE:
            raise RiskInputError("Cannot calculate risk for NO_TRADE position")
        if not params.account_balance > 0:
            raise RiskInputError("Account balance must be positive")
        if not 0 <= params.risk_tolerance <= 100:
            raise RiskInputError("Risk tolerance must be between 0 and 100")
        if params.risk_tolerance == 0:
            raise RiskInputError("Risk tolerance must be greater than 0 to size a position")
        if not params.entry_price > 0:
            raise RiskInputError("Entry price must be positive")
        if not params.atr > 0:
            raise RiskInputError("ATR must be positive")
        if params.historical_atr is not None and not params.historical_atr > 0:
            raise RiskInputError("Historical ATR must be positive")
