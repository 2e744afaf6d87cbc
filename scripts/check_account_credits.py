#!/usr/bin/env python3
"""Print the credit position of one account."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from votecredit.config import get_settings  # noqa: E402
from votecredit.core.database import Database  # noqa: E402
from votecredit.models.models import Account, PaymentTransaction  # noqa: E402
from votecredit.services.authorization import credit_summary  # noqa: E402


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("account", help="Account id, email or phone number.")
    parser.add_argument("--transactions", type=int, default=5, help="Number of recent payments to list.")
    args = parser.parse_args(argv)

    settings = get_settings()
    database = Database.from_settings(settings)
    try:
        with database.session() as session:
            query = session.query(Account)
            if args.account.isdigit():
                account = query.filter(Account.id == int(args.account)).first()
            else:
                account = query.filter(
                    (Account.email == args.account.lower()) | (Account.phone_number == args.account)
                ).first()
            if account is None:
                print(f"No account matches {args.account!r}.")
                return 1

            summary = credit_summary(session, account.id, settings=settings)
            print(f"Account {account.id} ({account.display_name})")
            print(f"  shared credits:        {summary.shared_credits}")
            print(f"  unlimited windows:     {summary.unlimited_active} active, {summary.unlimited_expired} expired")
            if summary.active_unlimited_until:
                print(f"  unlimited until:       {summary.active_unlimited_until.isoformat()}")
            print(f"  legacy remaining:      {summary.legacy_remaining} in {summary.legacy_open_grants} grants")
            print(f"  can create election:   {'yes' if summary.can_create_election else 'no'}")
            if summary.warning:
                print(f"  warning:               {summary.warning}")

            payments = (
                session.query(PaymentTransaction)
                .filter(PaymentTransaction.account_id == account.id)
                .order_by(PaymentTransaction.created_at.desc())
                .limit(args.transactions)
                .all()
            )
            for txn in payments:
                print(
                    f"  payment {txn.transaction_id}: {txn.amount} {txn.status}"
                    f" credited={txn.credited} credits={txn.credits_granted}"
                )
    finally:
        database.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
