#!/usr/bin/env python3
"""
Thalexa -- Google sign-in with a protected dashboard.

Usage:
  python main.py
  python main.py --reload

Environment variables (see core/config.py for the full list):
  DATABASE_URL           Storage connection string.
  DATABASE_SSL_VERIFY    Verify the database server certificate (default false).
  GOOGLE_CLIENT_ID       Required.
  GOOGLE_CLIENT_SECRET   Required.
  PORT                   Listening port (default 3000).
"""

import argparse
import sys

import uvicorn
from pydantic import ValidationError

from core.config import get_settings


def main() -> None:
    parser = argparse.ArgumentParser(prog="thalexa", description="Run the Thalexa web server.")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    args = parser.parse_args()

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"  [!] Invalid configuration:\n{e}", file=sys.stderr)
        sys.exit(2)

    print(f"Server is running on http://{settings.host}:{settings.port}")
    uvicorn.run("asgi:app", host=settings.host, port=settings.port, reload=args.reload)


if __name__ == "__main__":
    main()
