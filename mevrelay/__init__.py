"""Swap-event relay building blocks: configuration, logging, metrics, and Redis buffering and publishing."""

__version__ = "0.1.0"