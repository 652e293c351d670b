"""Intake-Gateway: multi-tenant webhook intake for patient submissions."""

__version__ = "1.0.0"
