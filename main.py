"""
Incentive Lens — Local server runner
Usage: python main.py  (HOST / PORT from the environment)
"""
import os

import uvicorn

from app.core.logger import logger
from app.main import app

if __name__ == "__main__":
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))

    logger.info("Incentive Lens API starting...")
    logger.info(f"Access URL: http://{host}:{port}")
    logger.info("API Endpoints:")
    logger.info("   /api/dashboard-default         — Cached weekly dashboard")
    logger.info("   /api/cron/refresh-dashboard    — Daily refresh (Bearer CRON_SECRET)")
    logger.info("   /api/enhanced-csv[/cached]     — Incentive efficiency CSV")
    logger.info("   /health                        — Cache + upstream status")

    uvicorn.run(app, host=host, port=port)
