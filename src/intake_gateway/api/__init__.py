"""HTTP API for Intake-Gateway (FastAPI)."""
