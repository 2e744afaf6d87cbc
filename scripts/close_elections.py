#!/usr/bin/env python3
"""Close ACTIVE elections whose end time has passed."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from votecredit.config import get_settings  # noqa: E402
from votecredit.core.database import Database  # noqa: E402
from votecredit.core.logging import configure_logging  # noqa: E402
from votecredit.services.elections import close_expired_elections  # noqa: E402


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    database = Database.from_settings(settings)
    try:
        with database.session() as session:
            closed_ids = close_expired_elections(session)
    finally:
        database.dispose()
    if closed_ids:
        print(f"Closed elections: {', '.join(str(election_id) for election_id in closed_ids)}")
    else:
        print("No elections past their end time.")


if __name__ == "__main__":
    main()
