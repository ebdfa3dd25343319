#!/usr/bin/env python3
"""
Forex Back-Office Entry Point

Starts the FastAPI server with the forex back-office engine.
"""

import sys

from forex_ledger.config import get_config
from forex_ledger.logging_config import setup_logging
from forex_ledger.api import run_server


if __name__ == "__main__":
    config = get_config()
    setup_logging()

    print("Starting Forex Back-Office...")
    print(f"Database: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Forex Back-Office...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
