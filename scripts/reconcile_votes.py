#!/usr/bin/env python3
"""Compare cached candidate counters with the votes table, optionally repairing drift."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from votecredit.config import get_settings  # noqa: E402
from votecredit.constants import ElectionStatus  # noqa: E402
from votecredit.core.database import Database  # noqa: E402
from votecredit.core.logging import configure_logging  # noqa: E402
from votecredit.models.models import Election  # noqa: E402
from votecredit.services.tally import reconcile, repair  # noqa: E402


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("election_ids", nargs="*", type=int, help="Elections to check (default: all non-draft).")
    parser.add_argument("--repair", action="store_true", help="Reset drifted counters to the grouped vote count.")
    parser.add_argument("--actor", default="reconcile_votes script", help="Actor recorded in the audit log.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    database = Database.from_settings(settings)
    drifted = 0
    try:
        with database.session() as session:
            election_ids = args.election_ids or [
                row.id
                for row in session.query(Election.id)
                .filter(Election.status != ElectionStatus.DRAFT)
                .order_by(Election.id.asc())
                .all()
            ]
            for election_id in election_ids:
                report = reconcile(session, election_id)
                if report.is_consistent:
                    print(f"Election {election_id}: {report.candidates_checked} counters consistent.")
                    continue
                drifted += 1
                for mismatch in report.mismatches:
                    print(
                        f"Election {election_id}: candidate {mismatch.candidate_id} ({mismatch.position}) "
                        f"cached={mismatch.cached} actual={mismatch.actual}"
                    )
                if args.repair:
                    repair(session, election_id, actor=args.actor)
                    print(f"Election {election_id}: repaired {len(report.mismatches)} counters.")
    finally:
        database.dispose()
    return 1 if drifted and not args.repair else 0


if __name__ == "__main__":
    sys.exit(main())
