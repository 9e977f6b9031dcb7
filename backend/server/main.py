"""
Local entry point: run the control server with uvicorn.

    python -m server.main --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

import argparse

import uvicorn
from dotenv import load_dotenv


def main() -> None:
    parser = argparse.ArgumentParser(description="Live voice assistant control server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    load_dotenv()

    uvicorn.run(
        "server.asgi:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
