"""
main.py — Server launcher and entry point.

Run this file to start the allotment engine API:

    python main.py

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn app:app --reload
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.getenv("ALLOTMENT_HOST", "127.0.0.1")
PORT = int(os.getenv("ALLOTMENT_PORT", "8000"))


def main() -> None:
    """Start the allotment engine server."""
    print("=" * 60)
    print("  Channel Allotment Engine")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : http://{HOST}:{PORT}/docs")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Blocks until CTRL+C
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
