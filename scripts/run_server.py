"""Serve the HTTP API with the matching loop running in-process.

Run: python scripts/run_server.py
"""

import uvicorn

from tradearena.config import settings

if __name__ == "__main__":
    uvicorn.run("tradearena.main:app", host=settings.HOST, port=settings.PORT)
