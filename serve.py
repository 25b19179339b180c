from __future__ import annotations

import argparse

import uvicorn
from dotenv import load_dotenv

from cutout.api import create_app
from cutout.logs import configure_logging


def main() -> int:
    load_dotenv()
    configure_logging()

    parser = argparse.ArgumentParser(description="Serve the settings/upload/download backend.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", default=5000, type=int)
    args = parser.parse_args()

    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
