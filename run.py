#!/usr/bin/env python3
"""
Branch Ledger Entry Point

Starts the FastAPI server (port 8090 by default) together with the
background interest and maturity scheduler.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from branch_ledger.api import run_server
from branch_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Branch Ledger...")
    print(f"Storage: {config.database_url}")
    print(f"Scheduler: {'enabled' if config.scheduler_enabled else 'disabled'} ({config.scheduler_timezone})")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Branch Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
