#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.

Uses the in-memory POI store and mock embeddings unless the environment
already says otherwise, so it starts without a database or API key.
"""
import os
from pathlib import Path
import sys

# Add backend to path
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

os.environ.setdefault("SPATIAL_BACKEND", "memory")
os.environ.setdefault("EMBEDDING_PROVIDER", "mock")

import uvicorn  # noqa: E402

if __name__ == "__main__":
    print("Starting POI discovery development server")
    print(f"Spatial backend: {os.environ['SPATIAL_BACKEND']}")
    print("Access at: http://localhost:8000")
    print("API Docs: http://localhost:8000/docs")

    uvicorn.run("poi_discovery.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
