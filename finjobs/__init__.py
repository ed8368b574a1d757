"""finjobs: distributed job workers for the trading dashboard."""

__version__ = "0.4.0"
