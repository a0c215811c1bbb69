"""
Mission Control Dashboard Package

FastAPI admin surface over the fleet orchestrator.
"""
