# backend/icm/plugins/bonus.py
from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal

from icm.plugins.host import PluginContext

logger = logging.getLogger(__name__)

BONUS_RATE = Decimal("0.10")
CENT = Decimal("0.01")


def qualified_bonus(log: dict, context: PluginContext) -> dict:
    """
    Adds a 10% bonus to every qualified agent's commission.
    The bonus is paid to the agent and is not credit-split.
    """
    logger.info("Applying qualified bonus for scheme %s (%s)", context.scheme_id, context.mode)

    total_bonus = Decimal("0")
    for agent in log.get("agents", []):
        if not agent.get("qualified"):
            continue
        commission = Decimal(str(agent.get("commission", "0")))
        bonus = (commission * BONUS_RATE).quantize(CENT, rounding=ROUND_HALF_UP)
        agent["commission"] = str(commission + bonus)
        agent.setdefault("customLogic", []).append(
            {
                "rule": "Post-processing Bonus",
                "passed": True,
                "notes": f"Added 10% bonus: {bonus}",
            }
        )
        total_bonus += bonus

    summary = log.setdefault("summary", {})
    summary["totalCommission"] = str(Decimal(str(summary.get("totalCommission", "0"))) + total_bonus)

    log["postProcessingLog"] = {
        "status": "success",
        "message": f"Applied 10% bonus to all qualified agents, total bonus: {total_bonus}",
        "timestamp": context.timestamp.isoformat(),
        "totalBonus": str(total_bonus),
    }
    return log
