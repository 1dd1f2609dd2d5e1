"""Crash round engine: timed waiting/flying/crashed rounds with bet settlement."""

__version__ = "1.0.0"
