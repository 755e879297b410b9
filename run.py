#!/usr/bin/env python3
"""
Account Provisioning Service Entry Point

Starts the FastAPI server (port 8090 unless PROVISIONING_API_PORT is set).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from account_provisioning.api import run_server
from account_provisioning.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("🔑 Starting Account Provisioning Service...")
    print("🔒 Private keys are disclosed once and never stored")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Account Provisioning Service...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
