#!/usr/bin/env python3
"""Entry point for container deployment (non-interactive)."""
import uvicorn

from llamagate.config import load_settings

if __name__ == "__main__":
    uvicorn.run("llamagate.main:app", host="0.0.0.0", port=load_settings().port)
