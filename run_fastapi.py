#!/usr/bin/env python3
"""
Run the API locally with reload. Set SYNC_RUN_IN_API=true to sync in the same process.
"""

import os

import uvicorn

if __name__ == "__main__":
    # Set default environment variables if not set
    os.environ.setdefault("ENVIRONMENT", "development")
    os.environ.setdefault("DATABASE_HOST", "postgresql://localhost:5432")
    os.environ.setdefault("DATABASE_NAME", "mailsync")

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8001")), reload=True, log_level="info")
