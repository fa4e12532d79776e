"""Order planning from target weights and sequential, paced submission.

plan_orders() diffs target weights against current holdings:
- buy target, not held: buy the full target weight
- held symbol: trade the difference only when it exceeds the rebalance
  threshold; a sell target means a target weight of 0 (full exit)
- sell target, not held: nothing (no short selling)
- hold target: nothing

OrderExecutor submits the planned orders strictly one after another, sleeping
between submissions to respect venue pacing, and re-checks the kill switch
before each one. A failed order is recorded and the rest continue.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, Sequence

import structlog

from agentfund.core.enums import Side
from agentfund.core.schemas import Order, OrderSpec, Position
from agentfund.portfolio.portfolio_constructor import TargetWeight

log = structlog.get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------
def current_weights(positions: Sequence[Position]) -> dict[str, float]:
    """Symbol -> |qty * avg_price| / total gross value of all positions."""
    values = {p.symbol: abs(p.quantity * p.avg_price) for p in positions}
    total = sum(values.values())
    if total <= 0:
        return {symbol: 0.0 for symbol in values}
    return {symbol: value / total for symbol, value in values.items()}


def plan_orders(
    target_weights: Sequence[TargetWeight],
    current_positions: Sequence[Position],
    rebalance_threshold: float = 0.05,
) -> list[OrderSpec]:
    """Translate target weights into the orders needed to reach them.

    Args:
        target_weights: Targets from the portfolio constructor.
        current_positions: Positions currently held at the venue.
        rebalance_threshold: Minimum |target - current| weight to trade a
            held symbol.

    Returns:
        OrderSpec list in target order.
    """
    held = current_weights([p for p in current_positions if p.quantity != 0])
    plans: list[OrderSpec] = []

    for target in target_weights:
        if target.side == Side.HOLD:
            continue

        if target.symbol not in held:
            if target.side == Side.SELL:
                log.info("sell_target_not_held", symbol=target.symbol)
                continue
            if target.weight <= 0:
                continue
            plans.append(
                OrderSpec(
                    symbol=target.symbol,
                    side=Side.BUY,
                    weight=min(target.weight, 1.0),
                    target_weight=min(target.weight, 1.0),
                )
            )
            continue

        goal = 0.0 if target.side == Side.SELL else target.weight
        diff = goal - held[target.symbol]
        if abs(diff) <= rebalance_threshold:
            continue
        plans.append(
            OrderSpec(
                symbol=target.symbol,
                side=Side.BUY if diff > 0 else Side.SELL,
                weight=min(abs(diff), 1.0),
                target_weight=min(goal, 1.0),
            )
        )

    log.info(
        "orders_planned",
        n_targets=len(target_weights),
        n_held=len(held),
        n_orders=len(plans),
    )
    return plans


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------
class OrderExecutor:
    """Submits planned orders sequentially through the execution adapter.

    Args:
        execution: Adapter exposing ``async place_order(spec) -> str``.
        pacing_seconds: Delay between consecutive submissions.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        execution: Any,
        pacing_seconds: float = 1.0,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.execution = execution
        self.pacing_seconds = pacing_seconds
        self._sleep = sleep or asyncio.sleep

    async def submit(
        self,
        plans: Sequence[OrderSpec],
        kill_switch: Any = None,
        logger: Any = None,
    ) -> list[Order]:
        """Submit orders one at a time; never in parallel.

        Args:
            plans: Orders to submit, in submission order.
            kill_switch: Object with ``is_active``; checked before each order.
            logger: Optional bound logger (e.g. carrying the round id).

        Returns:
            One Order record per plan (submitted, failed or skipped).
        """
        logger = logger or log
        orders: list[Order] = []

        for i, spec in enumerate(plans):
            if kill_switch is not None and kill_switch.is_active:
                logger.warning(
                    "order_submission_halted",
                    remaining=len(plans) - i,
                    reason="kill_switch_active",
                )
                orders.extend(
                    Order(
                        id=None,
                        symbol=p.symbol,
                        side=p.side,
                        weight=p.weight,
                        status="skipped",
                        error="kill switch active",
                    )
                    for p in plans[i:]
                )
                break

            if i > 0 and self.pacing_seconds > 0:
                await self._sleep(self.pacing_seconds)

            try:
                order_id = await self.execution.place_order(spec)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "order_failed",
                    symbol=spec.symbol,
                    side=spec.side.value,
                    weight=spec.weight,
                    error=str(exc),
                )
                orders.append(
                    Order(
                        id=None,
                        symbol=spec.symbol,
                        side=spec.side,
                        weight=spec.weight,
                        status="failed",
                        error=str(exc),
                    )
                )
                continue

            logger.info(
                "order_submitted",
                order_id=order_id,
                symbol=spec.symbol,
                side=spec.side.value,
                weight=round(spec.weight, 6),
            )
            orders.append(
                Order(
                    id=str(order_id),
                    symbol=spec.symbol,
                    side=spec.side,
                    weight=spec.weight,
                    status="submitted",
                )
            )

        return orders
