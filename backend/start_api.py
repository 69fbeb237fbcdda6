#!/usr/bin/env python3
"""
winback API Startup Script

This script starts the winback FastAPI server (enrollment, webhooks and
operator endpoints). The recovery worker runs separately:

    python -m winback.workers.start_arq_worker
"""

import uvicorn
import sys
from pathlib import Path

def main():
    """Start the winback API server."""
    print("Starting winback API Server...")
    print("Documentation will be available at:")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    # Check for environment file
    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TELNYX_API_KEY=... TELNYX_FROM_NUMBER=...")
        print("   SHOPIFY_STORE_DOMAIN=... SHOPIFY_ADMIN_ACCESS_TOKEN=... SHOPIFY_API_SECRET=...")
        print("   ADMIN_API_TOKEN=...")
        print("")

    try:
        uvicorn.run(
            "winback.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["winback"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down winback API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
