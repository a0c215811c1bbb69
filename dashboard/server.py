#!/usr/bin/env python3
"""
Mission Control Dashboard Server
================================

Admin API for the agent fleet: hire and fire agents, edit souls, manage
tasks, sign off on proposals and tune autonomy policies.
"""

import sys
import logging
from pathlib import Path
from typing import Dict, Any

from fastapi import FastAPI
import psutil

# Add parent directory for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleet.config import load_config
from fleet.orchestrator import get_orchestrator

# Import fleet management router
from dashboard.api import router as fleet_router, set_orchestrator as set_fleet_orchestrator

logger = logging.getLogger(__name__)

app = FastAPI(title="Mission Control Dashboard", version="1.0.0")

# Register routers
app.include_router(fleet_router)


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint for Docker/load balancer."""
    return {
        "status": "healthy",
        "service": "dashboard",
        "version": "1.0.0",
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": psutil.virtual_memory().percent
    }


# Initialize orchestrator for the fleet router on startup
@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    set_fleet_orchestrator(get_orchestrator())
    logger.info("Dashboard connected to fleet store")


def main():
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    config = load_config()
    dashboard = config.get('dashboard', {})
    set_fleet_orchestrator(get_orchestrator(config))
    uvicorn.run(app, host=dashboard.get('host', '0.0.0.0'), port=int(dashboard.get('port', 8080)))


if __name__ == "__main__":
    main()
