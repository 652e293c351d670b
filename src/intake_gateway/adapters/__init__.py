"""Adapters layer for Intake-Gateway.

This module contains input/output adapters that interface with external systems.
Adapters implement Port interfaces defined in the domain layer and translate
vendor payloads, storage engines and side-effect collaborators to domain models.
"""
