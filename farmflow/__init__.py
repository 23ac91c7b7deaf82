"""Resilient workflow orchestration for low-connectivity farmer-assistance apps."""

__version__ = "1.0.0"
