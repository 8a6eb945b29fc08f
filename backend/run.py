#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.

Presence and rooms live in process memory, so the server runs as a single
worker.
"""
import os
import sys
from pathlib import Path

backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))
os.chdir(backend_dir)

import uvicorn

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    print(f"Starting Chatline on http://localhost:{port} (websocket at /ws)")

    uvicorn.run("chatline.main:app", host="0.0.0.0", port=port, reload=True, log_level="info")
