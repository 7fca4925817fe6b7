#!/usr/bin/env python3
"""Application entry point for llamagate.

Loads environment variables from the .env file, asks for the listening port
and Ollama address if they are not configured yet, and starts uvicorn.

Usage:
    python run.py

Or with custom port:
    PORT=3000 python run.py
"""

import os
import sys

# Load environment variables from .env file before importing anything else
from dotenv import load_dotenv

load_dotenv()

import uvicorn

from llamagate.config import ConfigError, prompt_for_settings


def main():
    """Main entry point for the application."""
    try:
        settings = prompt_for_settings()
    except ConfigError as e:
        print(f"⚠ {e}")
        print("  Set PORT and OLLAMA_URL, or write port.conf and ollamaURL.conf")
        sys.exit(1)

    print("✓ Configuration loaded successfully")
    print(f"  - Ollama URL: {settings.ollama_url}")
    print(f"  - Database: {'PostgreSQL' if settings.database_url else settings.database_path}")
    print(f"  - Admin API: {'enabled' if settings.admin_password else 'disabled'}")

    print(f"\n🚀 Starting llamagate on port {settings.port}...")
    print(f"   Generate: POST http://localhost:{settings.port}/generate")
    print(f"   Health:   GET  http://localhost:{settings.port}/health?apikey=...")
    print(f"   API docs: http://localhost:{settings.port}/docs")
    print("   Manage keys with: llamagate-admin --help\n")

    uvicorn.run(
        "llamagate.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )


if __name__ == "__main__":
    main()
