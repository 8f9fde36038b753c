#!/usr/bin/env python3
"""
Lending Engine Entry Point

Starts the FastAPI server on the configured host and port (8090 by default).
"""

import sys

from lending_engine.api import run_server
from lending_engine.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Engine...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Lending Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
