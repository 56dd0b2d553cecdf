#!/usr/bin/env python3
"""
Startup - token purchase server

Sequence:
1. Log configuration; refuse to start in production when it is incomplete
2. Verify the database connection and create missing tables
3. Serve webhook_server:app with uvicorn (the app lifespan starts the sweep scheduler)
"""

import logging
import sys
from typing import List

import uvicorn

from config import Config
from database import create_tables, test_connection

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class StartupManager:
    """Deterministic startup checks; errors are collected and reported together"""

    def __init__(self):
        self.startup_errors: List[str] = []

    def check_configuration(self) -> bool:
        Config.log_environment_config()
        problems = Config.validate_production_config()
        for problem in problems:
            logger.error(f"❌ CONFIG: {problem}")
        if problems and Config.IS_PRODUCTION:
            self.startup_errors.extend(f"Config: {p}" for p in problems)
            return False
        if problems:
            logger.warning("⚠️ Configuration incomplete - continuing because this is not production")
        return True

    def initialize_database(self) -> bool:
        logger.info("🗄️ Initializing database...")
        if not test_connection():
            self.startup_errors.append("Database: connection test failed")
            return False
        if not create_tables():
            self.startup_errors.append("Database: table creation failed")
            return False
        logger.info("✅ Database initialization complete")
        return True

    def startup_sequence(self) -> bool:
        if not self.check_configuration():
            return False
        if not self.initialize_database():
            return False
        logger.info("🚀 Startup checks passed")
        return True


def main():
    manager = StartupManager()
    if not manager.startup_sequence():
        for error in manager.startup_errors:
            logger.critical(f"💥 STARTUP_FAILED: {error}")
        sys.exit(1)

    uvicorn.run(
        "webhook_server:app",
        host="0.0.0.0",
        port=Config.PORT,
        log_level=Config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
