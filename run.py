#!/usr/bin/env python3
"""
Institute Payments Entry Point

Starts the FastAPI server with the payment lifecycle engine.
"""

import sys

from institute_payments.config import get_config
from institute_payments.server import run_server


if __name__ == "__main__":
    config = get_config()
    print("🎓 Starting Institute Payments...")
    print(f"💾 Storage: {config.database_url}")
    print(f"⏱️  Overdue sweep every {config.sweep_interval_seconds}s"
          if config.sweeper_enabled else "⏱️  Overdue sweeper disabled")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=config.is_development)
    except KeyboardInterrupt:
        print("\n👋 Shutting down Institute Payments...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
