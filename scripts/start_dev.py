#!/usr/bin/env python3
"""Apply migrations and run the API with auto-reload.

Usage:
    python scripts/start_dev.py [--port 8000] [--skip-migrations]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import uvicorn  # noqa: E402
from alembic import command  # noqa: E402
from alembic.config import Config  # noqa: E402

from votecredit.config import get_settings  # noqa: E402

ALEMBIC_CONFIG = ROOT / "votecredit" / "alembic.ini"


def run_migrations() -> None:
    config = Config(str(ALEMBIC_CONFIG))
    config.set_main_option("script_location", str(ROOT / "votecredit" / "migrations"))
    config.set_main_option("sqlalchemy.url", get_settings().database_url)
    print("DEV: running alembic upgrade head", flush=True)
    command.upgrade(config, "head")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=int(os.environ.get("VOTECREDIT_PORT", "8000")))
    parser.add_argument("--skip-migrations", action="store_true")
    args = parser.parse_args()

    if not args.skip_migrations:
        run_migrations()
    uvicorn.run("votecredit.main:app", host=args.host, port=args.port, reload=True, app_dir=str(ROOT))


if __name__ == "__main__":
    main()
