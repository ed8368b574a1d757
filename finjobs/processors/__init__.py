"""Built-in processors for the dashboard's background jobs."""

from __future__ import annotations

from typing import Optional

from finjobs.core.config import Settings
from finjobs.core.job_queue.processors import ProcessorRegistry
from finjobs.processors.data_import import DataImportProcessor
from finjobs.processors.portfolio_analysis import PortfolioAnalysisProcessor
from finjobs.processors.price_update import PriceUpdateProcessor
from finjobs.processors.technical_analysis import TechnicalAnalysisProcessor


def build_default_registry(settings: Optional[Settings] = None) -> ProcessorRegistry:
    """Registry with the four standard job types."""
    settings = settings or Settings()
    registry = ProcessorRegistry()
    registry.register(TechnicalAnalysisProcessor())
    registry.register(
        PriceUpdateProcessor(
            quote_url=settings.processors.quote_url,
            timeout=settings.processors.http_timeout,
        )
    )
    registry.register(DataImportProcessor())
    registry.register(PortfolioAnalysisProcessor())
    return registry


__all__ = [
    "DataImportProcessor",
    "PortfolioAnalysisProcessor",
    "PriceUpdateProcessor",
    "TechnicalAnalysisProcessor",
    "build_default_registry",
]
