#!/usr/bin/env python3
"""
Microcredit Portal Entry Point

Starts the FastAPI server with the loan, savings and reporting core.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microcredit.api import run_server
from microcredit.config import get_config
from microcredit.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, format_type=config.log_format, log_file=config.log_file)

    logger.info(f"Starting Microcredit Portal on {config.api_host}:{config.api_port}")
    logger.info(f"Storage: {config.database_url}")
    logger.info(f"Authentication {'enabled' if config.auth_enabled else 'disabled (header identities)'}")

    try:
        # Start the server
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Microcredit Portal")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
