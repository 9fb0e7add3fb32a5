#!/usr/bin/env python3
"""
Filing Workflow Engine Entry Point

Starts the FastAPI server with the filing workflow engine.
"""

import sys

from filing_workflow.api import run_server
from filing_workflow.config import get_config
from filing_workflow.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    logger.info(f"Starting filing workflow API on http://{config.api_host}:{config.api_port}")
    if config.use_mock_registry:
        logger.warning("Using the mock Companies House registry")

    try:
        run_server(host=config.api_host, port=config.api_port, debug=False)
    except KeyboardInterrupt:
        logger.info("Shutting down filing workflow API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
