#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.
Uses a local SQLite database unless DATABASE_URL is set.
"""
import os
from pathlib import Path

import uvicorn

backend_dir = Path(__file__).parent
os.chdir(backend_dir)
os.environ.setdefault("DATABASE_URL", "sqlite:///./studioops_dev.db")
os.environ.setdefault("RESOURCE_LOCK_ENABLED", "false")

if __name__ == "__main__":
    print("Starting StudioOps development server")
    print("Access at: http://localhost:8000")
    print("API Docs: http://localhost:8000/docs")

    uvicorn.run(
        "studioops.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=[str(backend_dir / "studioops")],
        log_level="info",
    )
