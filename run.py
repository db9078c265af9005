#!/usr/bin/env python3
"""
Offline Sync Service Entry Point

Starts the FastAPI server with host, port and logging taken from
OFFLINE_SYNC_* environment variables.
"""

import sys

from offline_sync.api import run_server
from offline_sync.config import get_config
from offline_sync.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Offline Sync Service...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Offline Sync Service...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
