"""Staybook: booking and availability engine for a rental marketplace."""

__version__ = "0.1.0"
