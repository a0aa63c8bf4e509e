"""Fitness test performance analysis."""

__version__ = "1.0.0"
