#!/usr/bin/env python3
"""
StoreSync API Startup Script

Starts the FastAPI server for local development (auto-reload on app/ changes).
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the StoreSync API server."""
    print("Starting StoreSync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("   Admin Panel: http://localhost:8000/admin")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create one with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   TOKEN_ENCRYPTION_KEY=<run generate_keys.py>")
        print("   ADMIN_SECRET_KEY=your-admin-secret")
        print("")

    try:
        uvicorn.run(
            "app.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["app"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down StoreSync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
