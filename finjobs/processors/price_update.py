"""Quote refresh for a single symbol."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from finjobs.core.errors import PermanentJobError, TransientJobError
from finjobs.core.job_queue.core import Job, utcnow
from finjobs.core.job_queue.processors import JobProcessor

logger = logging.getLogger(__name__)


class PriceUpdateProcessor(JobProcessor):
    """Fetch the latest quote for ``payload["symbol"]``.

    ``quote_url`` is a template such as ``https://quotes.example.com/{symbol}``
    returning JSON with a ``price`` (or ``regularMarketPrice``) field. A
    payload that already carries ``price`` is normalized without a request.
    """

    job_type = "price_update"

    def __init__(
        self,
        quote_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.quote_url = quote_url
        self.timeout = timeout
        self._transport = transport

    async def execute(self, job: Job) -> Dict[str, Any]:
        symbol = str(job.payload.get("symbol") or "").strip().upper()
        if not symbol:
            raise PermanentJobError("price_update requires a symbol")

        if "price" in job.payload:
            return self._normalize(symbol, job.payload["price"], source="payload")
        if not self.quote_url:
            raise PermanentJobError("No quote_url configured and no price in payload")

        url = self.quote_url.format(symbol=symbol)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.TransportError as e:
            raise TransientJobError(f"Quote request for {symbol} failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientJobError(f"Quote service returned {response.status_code} for {symbol}")
        if response.status_code >= 400:
            raise PermanentJobError(f"Quote service rejected {symbol}: {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise TransientJobError(f"Malformed quote response for {symbol}") from e
        price = body.get("price", body.get("regularMarketPrice"))
        if price is None:
            raise PermanentJobError(f"Quote response for {symbol} has no price")
        return self._normalize(symbol, price, source=url)

    @staticmethod
    def _normalize(symbol: str, price: Any, source: str) -> Dict[str, Any]:
        try:
            value = float(price)
        except (TypeError, ValueError) as e:
            raise PermanentJobError(f"Invalid price for {symbol}: {price!r}") from e
        if value <= 0:
            raise PermanentJobError(f"Non-positive price for {symbol}: {value}")
        logger.debug(f"Price for {symbol}: {value}")
        return {
            "symbol": symbol,
            "price": value,
            "source": source,
            "updated_at": utcnow().isoformat(),
        }
