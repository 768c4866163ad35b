#!/usr/bin/env python3
"""
Loan Servicing Entry Point

Starts the FastAPI server with the installment sweeps scheduled in-process.
"""

import sys

import uvicorn

from loan_servicing.api import create_app
from loan_servicing.config import get_config
from loan_servicing.logging_config import setup_logging


def run_server(host: str, port: int, log_level: str = "info"):
    """Run the FastAPI server"""
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format)
    logger.info(f"Starting loan servicing API on {config.api_host}:{config.api_port}")

    try:
        run_server(config.api_host, config.api_port, config.log_level.lower())
    except KeyboardInterrupt:
        logger.info("Shutting down loan servicing API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
