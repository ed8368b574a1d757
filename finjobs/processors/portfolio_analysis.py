"""Portfolio valuation and concentration metrics."""

from __future__ import annotations

from typing import Any, Dict

import numpy as np

from finjobs.core.errors import PermanentJobError
from finjobs.core.job_queue.core import Job
from finjobs.core.job_queue.processors import JobProcessor


class PortfolioAnalysisProcessor(JobProcessor):
    """Payload: ``{"portfolio_id", "holdings": [{"symbol", "quantity", "price", "cost_basis"?}]}``."""

    job_type = "portfolio_analysis"

    async def execute(self, job: Job) -> Dict[str, Any]:
        holdings = job.payload.get("holdings")
        if not holdings:
            raise PermanentJobError("portfolio_analysis needs a non-empty holdings list")
        try:
            symbols = [str(h["symbol"]) for h in holdings]
            quantity = np.array([float(h["quantity"]) for h in holdings])
            price = np.array([float(h["price"]) for h in holdings])
            cost = np.array([float(h.get("cost_basis", h["price"])) for h in holdings])
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentJobError(f"Malformed holding: {e}") from e

        values = quantity * price
        total = float(values.sum())
        if total <= 0:
            raise PermanentJobError("Portfolio market value must be positive")
        weights = values / total
        unrealized = values - quantity * cost

        return {
            "portfolio_id": job.payload.get("portfolio_id"),
            "market_value": round(total, 2),
            "unrealized_pnl": round(float(unrealized.sum()), 2),
            # Herfindahl-Hirschman index of position weights
            "concentration": round(float(np.square(weights).sum()), 4),
            "largest_position": symbols[int(np.argmax(weights))],
            "positions": [
                {
                    "symbol": symbol,
                    "market_value": round(float(v), 2),
                    "weight": round(float(w), 4),
                    "unrealized_pnl": round(float(p), 2),
                }
                for symbol, v, w, p in zip(symbols, values, weights, unrealized)
            ],
        }
