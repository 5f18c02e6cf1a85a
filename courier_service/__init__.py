"""Courier mission dispatch, live location and routing service."""

__version__ = "2.0.0"
