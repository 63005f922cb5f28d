#!/usr/bin/env python3
"""
Procurement Approvals Entry Point

Starts the FastAPI server for the approval workflow engine.
"""

import sys

from procurement_approvals.api_modular import run_server
from procurement_approvals.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Procurement Approvals engine...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug="--reload" in sys.argv)
    except KeyboardInterrupt:
        print("\nShutting down Procurement Approvals engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
