#!/usr/bin/env python3
"""
Livestream Engagement API Setup and Run Script

Prepares a local development environment (SQLite database, storage deadline,
cache TTLs) and starts the API server with auto-reload.
"""

import os
import sys
from pathlib import Path

DEFAULT_PORT = 8080


def setup_environment():
    """Fill in development defaults for anything not already configured"""
    print("Setting up Livestream Engagement API environment...")

    # SQLite keeps local runs free of a PostgreSQL dependency
    db_url = os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./livestream_api.db")
    print(f"Database URL: {db_url}")

    os.environ.setdefault("ENVIRONMENT", "development")
    os.environ.setdefault("STORAGE_TIMEOUT_SECONDS", "5")
    os.environ.setdefault("ICON_HASH_CACHE_TTL", "100")
    os.environ.setdefault("THEME_CACHE_TTL", "100")

    fallback_icon = os.getenv("FALLBACK_ICON_PATH")
    if fallback_icon and not Path(fallback_icon).is_file():
        print(f"Fallback icon not found: {fallback_icon}")
        return False

    return True


def check_dependencies():
    """Check that the server stack is importable"""
    print("Checking dependencies...")
    try:
        import fastapi  # noqa: F401
        import sqlmodel  # noqa: F401
        import uvicorn  # noqa: F401
    except ImportError as e:
        print(f"Missing dependency: {e}")
        print("Install the project first: pip install -e .")
        return False

    print("Core dependencies found")
    return True


def start_server(port: int = DEFAULT_PORT):
    """Start the Livestream Engagement API server"""
    print("Starting Livestream Engagement API server...")
    print(f"Server will be available at: http://localhost:{port}")
    print(f"Health check endpoint: http://localhost:{port}/healthcheck")
    print("Press Ctrl+C to stop the server")
    print("-" * 50)

    import uvicorn

    try:
        uvicorn.run(
            "main:app",
            host="0.0.0.0",
            port=port,
            reload=True,
            log_level="info",
            access_log=True,
        )
    except KeyboardInterrupt:
        print("\nServer stopped by user")


def main():
    print("Livestream Engagement API - Setup and Run")
    print("=" * 40)

    script_dir = Path(__file__).parent
    os.chdir(script_dir)
    print(f"Working directory: {script_dir}")

    if not setup_environment():
        print("Failed to setup environment")
        sys.exit(1)

    if not check_dependencies():
        sys.exit(1)

    start_server(int(os.getenv("PORT", DEFAULT_PORT)))


if __name__ == "__main__":
    main()
