"""Order planning and sequential submission.

- plan_orders: Diff target weights against holdings into OrderSpecs
- OrderExecutor: Paced, strictly sequential submission with kill-switch checks
"""

from agentfund.execution.orders import OrderExecutor, current_weights, plan_orders

__all__ = ["OrderExecutor", "current_weights", "plan_orders"]
