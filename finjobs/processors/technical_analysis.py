"""Technical indicator calculation over a closing-price series."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from finjobs.core.errors import PermanentJobError
from finjobs.core.job_queue.core import Job
from finjobs.core.job_queue.processors import JobProcessor

logger = logging.getLogger(__name__)

DEFAULT_INDICATORS = ("sma", "ema", "rsi", "macd")


def sma(closes: np.ndarray, period: int) -> np.ndarray:
    """Simple moving average; one value per full window."""
    if len(closes) < period:
        return np.array([])
    kernel = np.ones(period) / period
    return np.convolve(closes, kernel, mode="valid")


def ema(closes: np.ndarray, period: int) -> np.ndarray:
    """Exponential moving average seeded with the first window's SMA."""
    if len(closes) < period:
        return np.array([])
    alpha = 2.0 / (period + 1)
    out = np.empty(len(closes) - period + 1)
    out[0] = closes[:period].mean()
    for i, price in enumerate(closes[period:], start=1):
        out[i] = alpha * price + (1 - alpha) * out[i - 1]
    return out


def rsi(closes: np.ndarray, period: int = 14) -> np.ndarray:
    """Wilder's relative strength index."""
    if len(closes) < period + 1:
        return np.array([])
    deltas = np.diff(closes)
    gains = np.clip(deltas, 0, None)
    losses = np.clip(-deltas, 0, None)
    avg_gain = gains[:period].mean()
    avg_loss = losses[:period].mean()
    values = []
    for i in range(period, len(deltas) + 1):
        values.append(100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss))
        if i < len(deltas):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
    return np.array(values)


def macd(
    closes: np.ndarray,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Dict[str, np.ndarray]:
    slow_ema = ema(closes, slow)
    if len(slow_ema) == 0:
        return {"macd": np.array([]), "signal": np.array([]), "histogram": np.array([])}
    fast_ema = ema(closes, fast)[slow - fast:]
    line = fast_ema - slow_ema
    signal_line = ema(line, signal)
    histogram = line[len(line) - len(signal_line):] - signal_line
    return {"macd": line, "signal": signal_line, "histogram": histogram}


def _series(values: np.ndarray, dates: Optional[Sequence[Any]]) -> List[Dict[str, Any]]:
    # Indicator values align with the most recent dates
    offset = len(dates) - len(values) if dates else 0
    return [
        {"date": dates[offset + i] if dates else None, "value": round(float(v), 4)}
        for i, v in enumerate(values)
    ]


class TechnicalAnalysisProcessor(JobProcessor):
    """Payload: ``{"symbol", "prices": [{"date", "close"}] | "closes": [...],
    "indicators": [...], "sma_period", "ema_period", "rsi_period"}``."""

    job_type = "technical_analysis"

    async def execute(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        if "prices" in payload:
            dates = [p.get("date") for p in payload["prices"]]
            raw = [p.get("close") for p in payload["prices"]]
        else:
            dates = None
            raw = payload.get("closes") or []
        try:
            closes = np.asarray(raw, dtype=float)
        except (TypeError, ValueError) as e:
            raise PermanentJobError(f"Non-numeric closing prices: {e}") from e
        if closes.ndim != 1 or len(closes) < 2:
            raise PermanentJobError("At least two closing prices are required")

        wanted = [name.lower() for name in payload.get("indicators", DEFAULT_INDICATORS)]
        unknown = set(wanted) - set(DEFAULT_INDICATORS)
        if unknown:
            raise PermanentJobError(f"Unsupported indicators: {sorted(unknown)}")

        results: Dict[str, Any] = {}
        if "sma" in wanted:
            results["sma"] = _series(sma(closes, int(payload.get("sma_period", 20))), dates)
        if "ema" in wanted:
            results["ema"] = _series(ema(closes, int(payload.get("ema_period", 20))), dates)
        if "rsi" in wanted:
            results["rsi"] = _series(rsi(closes, int(payload.get("rsi_period", 14))), dates)
        if "macd" in wanted:
            results["macd"] = {name: _series(values, dates) for name, values in macd(closes).items()}

        calculated = sum(1 for value in results.values() if value and (not isinstance(value, dict) or value["macd"]))
        logger.debug(f"Calculated {calculated} indicators for {payload.get('symbol')}")
        return {
            "symbol": payload.get("symbol"),
            "points": int(len(closes)),
            "indicators_calculated": calculated,
            "indicators": results,
        }
