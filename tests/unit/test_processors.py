"""Unit tests for the built-in job processors."""

from __future__ import annotations

import httpx
import numpy as np
import pytest

from finjobs.core.errors import PermanentJobError, TransientJobError
from finjobs.core.job_queue.core import create_job
from finjobs.processors import (
    DataImportProcessor,
    PortfolioAnalysisProcessor,
    PriceUpdateProcessor,
    TechnicalAnalysisProcessor,
)
from finjobs.processors.technical_analysis import ema, macd, rsi, sma


def quote_transport(status: int = 200, body=None, error: Exception = None) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if error is not None:
            raise error
        return httpx.Response(status, json=body if body is not None else {"price": 187.25})

    return httpx.MockTransport(handler)


class TestPriceUpdate:
    @pytest.mark.asyncio
    async def test_fetches_quote(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json={"regularMarketPrice": "187.25"})

        processor = PriceUpdateProcessor(
            quote_url="https://quotes.test/v1/{symbol}", transport=httpx.MockTransport(handler)
        )

        result = await processor.execute(create_job("price_update", {"symbol": "aapl"}))

        assert seen == ["https://quotes.test/v1/AAPL"]
        assert result["symbol"] == "AAPL"
        assert result["price"] == 187.25
        assert result["source"] == "https://quotes.test/v1/AAPL"

    @pytest.mark.asyncio
    async def test_payload_price_skips_request(self) -> None:
        result = await PriceUpdateProcessor().execute(
            create_job("price_update", {"symbol": "MSFT", "price": 410})
        )
        assert result["price"] == 410.0
        assert result["source"] == "payload"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 503, 429])
    async def test_server_errors_are_transient(self, status: int) -> None:
        processor = PriceUpdateProcessor("https://q/{symbol}", transport=quote_transport(status, {}))
        with pytest.raises(TransientJobError):
            await processor.execute(create_job("price_update", {"symbol": "AAPL"}))

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self) -> None:
        processor = PriceUpdateProcessor(
            "https://q/{symbol}", transport=quote_transport(error=httpx.ConnectError("refused"))
        )
        with pytest.raises(TransientJobError):
            await processor.execute(create_job("price_update", {"symbol": "AAPL"}))

    @pytest.mark.asyncio
    async def test_unknown_symbol_is_permanent(self) -> None:
        processor = PriceUpdateProcessor("https://q/{symbol}", transport=quote_transport(404, {}))
        with pytest.raises(PermanentJobError):
            await processor.execute(create_job("price_update", {"symbol": "NOPE"}))

    @pytest.mark.asyncio
    async def test_missing_symbol_or_source(self) -> None:
        with pytest.raises(PermanentJobError):
            await PriceUpdateProcessor("https://q/{symbol}").execute(create_job("price_update", {}))
        with pytest.raises(PermanentJobError):
            await PriceUpdateProcessor().execute(create_job("price_update", {"symbol": "AAPL"}))

    @pytest.mark.asyncio
    async def test_non_positive_price(self) -> None:
        with pytest.raises(PermanentJobError):
            await PriceUpdateProcessor().execute(
                create_job("price_update", {"symbol": "AAPL", "price": 0})
            )


class TestIndicators:
    def test_sma(self) -> None:
        values = sma(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), 3)
        np.testing.assert_allclose(values, [2.0, 3.0, 4.0])

    def test_ema_seeded_with_sma(self) -> None:
        values = ema(np.array([1.0, 2.0, 3.0, 4.0]), 3)
        # seed 2.0, alpha 0.5
        np.testing.assert_allclose(values, [2.0, 3.0])

    def test_rsi_all_gains(self) -> None:
        values = rsi(np.arange(1.0, 20.0), 14)
        assert len(values) == 5
        assert np.all(values == 100.0)

    def test_short_series(self) -> None:
        assert len(sma(np.array([1.0]), 3)) == 0
        assert len(macd(np.arange(10.0))["macd"]) == 0

    def test_macd_lengths(self) -> None:
        result = macd(np.linspace(100, 150, 60))
        assert len(result["macd"]) == 60 - 26 + 1
        assert len(result["signal"]) == len(result["macd"]) - 9 + 1
        assert len(result["histogram"]) == len(result["signal"])


class TestTechnicalAnalysis:
    @pytest.mark.asyncio
    async def test_dated_prices(self) -> None:
        prices = [{"date": f"2024-01-{d:02d}", "close": 100 + d} for d in range(1, 6)]
        job = create_job(
            "technical_analysis",
            {"symbol": "AAPL", "prices": prices, "indicators": ["sma"], "sma_period": 3},
        )

        result = await TechnicalAnalysisProcessor().execute(job)

        assert result["points"] == 5
        assert result["indicators_calculated"] == 1
        assert result["indicators"]["sma"][0] == {"date": "2024-01-03", "value": 102.0}

    @pytest.mark.asyncio
    async def test_rejects_unknown_indicator(self) -> None:
        job = create_job("technical_analysis", {"closes": [1, 2, 3], "indicators": ["bollinger"]})
        with pytest.raises(PermanentJobError):
            await TechnicalAnalysisProcessor().execute(job)

    @pytest.mark.asyncio
    async def test_rejects_too_few_points(self) -> None:
        with pytest.raises(PermanentJobError):
            await TechnicalAnalysisProcessor().execute(create_job("technical_analysis", {"closes": [1]}))


class TestDataImport:
    @pytest.mark.asyncio
    async def test_csv_with_validation(self) -> None:
        csv_text = "symbol,close\nAAPL,187.2\n,10\nMSFT,abc\n"
        job = create_job(
            "data_import",
            {"csv": csv_text, "required_columns": ["symbol"], "numeric_columns": ["close"]},
        )

        result = await DataImportProcessor().execute(job)

        assert result["imported_records"] == 1
        assert result["records"] == [{"symbol": "AAPL", "close": 187.2}]
        assert [r["line"] for r in result["rejected"]] == [2, 3]

    @pytest.mark.asyncio
    async def test_requires_rows(self) -> None:
        with pytest.raises(PermanentJobError):
            await DataImportProcessor().execute(create_job("data_import", {}))


class TestPortfolioAnalysis:
    @pytest.mark.asyncio
    async def test_metrics(self) -> None:
        job = create_job(
            "portfolio_analysis",
            {
                "portfolio_id": "p1",
                "holdings": [
                    {"symbol": "AAPL", "quantity": 10, "price": 150, "cost_basis": 100},
                    {"symbol": "MSFT", "quantity": 5, "price": 100},
                ],
            },
        )

        result = await PortfolioAnalysisProcessor().execute(job)

        assert result["market_value"] == 2000.0
        assert result["unrealized_pnl"] == 500.0
        assert result["largest_position"] == "AAPL"
        assert result["concentration"] == pytest.approx(0.75 ** 2 + 0.25 ** 2)

    @pytest.mark.asyncio
    async def test_malformed_holding(self) -> None:
        job = create_job("portfolio_analysis", {"holdings": [{"symbol": "AAPL"}]})
        with pytest.raises(PermanentJobError):
            await PortfolioAnalysisProcessor().execute(job)
