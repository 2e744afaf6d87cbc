from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..constants import CreditSourceKind, LedgerEntryType
from ..core.errors import InsufficientCredit
from ..core.retry import Contention
from ..models.models import (
    Account,
    CreditAuthorization,
    LegacyCreditGrant,
    UnlimitedPackage,
    ensure_utc,
)
from . import ledger


@dataclass
class DebitPart:
    amount: int
    legacy_grant_id: Optional[int] = None
    unlimited_package_id: Optional[int] = None


@dataclass
class Debit:
    source: str
    debited: int
    parts: List[DebitPart] = field(default_factory=list)


class CreditSource:
    """One way of paying for an election's voter limit.

    ``try_debit`` returns ``None`` when the source cannot cover the amount and
    leaves storage untouched in that case. ``restore`` reverses a debit made by
    the same source. Neither commits.
    """

    kind: str = ""

    def try_debit(
        self,
        session: Session,
        account: Account,
        amount: int,
        now: datetime,
        election_id: Optional[int] = None,
    ) -> Optional[Debit]:
        raise NotImplementedError

    def restore(self, session: Session, authorization: CreditAuthorization) -> None:
        raise NotImplementedError

    def available(self, session: Session, account: Account, now: datetime) -> Optional[int]:
        """Credits this source could cover right now; ``None`` means unbounded."""
        raise NotImplementedError


class UnlimitedWindowSource(CreditSource):
    kind = CreditSourceKind.UNLIMITED

    def _active_package(self, session: Session, account: Account, now: datetime) -> Optional[UnlimitedPackage]:
        packages = (
            session.query(UnlimitedPackage)
            .filter(UnlimitedPackage.account_id == account.id)
            .order_by(UnlimitedPackage.valid_until.desc(), UnlimitedPackage.id.asc())
            .all()
        )
        return next((package for package in packages if package.covers(now)), None)

    def try_debit(self, session, account, amount, now, election_id=None):
        package = self._active_package(session, account, now)
        if package is None:
            return None
        return Debit(source=self.kind, debited=0, parts=[DebitPart(amount=0, unlimited_package_id=package.id)])

    def restore(self, session, authorization):
        # Windows are never consumed, so there is nothing to give back.
        return None

    def available(self, session, account, now):
        return None if self._active_package(session, account, now) else 0


class SharedBalanceSource(CreditSource):
    kind = CreditSourceKind.SHARED

    def try_debit(self, session, account, amount, now, election_id=None):
        try:
            ledger.decrement_balance(
                session,
                account.id,
                amount,
                election_id=election_id,
                description=f"Election {election_id} voter limit" if election_id else None,
            )
        except InsufficientCredit:
            return None
        return Debit(source=self.kind, debited=amount, parts=[DebitPart(amount=amount)])

    def restore(self, session, authorization):
        ledger.increment_balance(
            session,
            authorization.account_id,
            authorization.debited,
            entry_type=LedgerEntryType.RELEASE,
            election_id=authorization.election_id,
            description=f"Released authorization {authorization.id}",
        )

    def available(self, session, account, now):
        return ledger.get_balance(session, account.id)


class LegacyGrantSource(CreditSource):
    """Deprecated per-package grants, consumed oldest-first and split as needed."""

    kind = CreditSourceKind.LEGACY

    def _open_grants(self, session: Session, account: Account) -> Sequence[LegacyCreditGrant]:
        return (
            session.query(LegacyCreditGrant)
            .filter(LegacyCreditGrant.account_id == account.id, LegacyCreditGrant.remaining > 0)
            .order_by(LegacyCreditGrant.granted_at.asc(), LegacyCreditGrant.id.asc())
            .populate_existing()
            .all()
        )

    def try_debit(self, session, account, amount, now, election_id=None):
        grants = self._open_grants(session, account)
        if sum(grant.remaining for grant in grants) < amount:
            return None

        parts: List[DebitPart] = []
        outstanding = amount
        for grant in grants:
            if outstanding == 0:
                break
            take = min(grant.remaining, outstanding)
            updated = (
                session.query(LegacyCreditGrant)
                .filter(LegacyCreditGrant.id == grant.id, LegacyCreditGrant.remaining >= take)
                .update(
                    {LegacyCreditGrant.remaining: LegacyCreditGrant.remaining - take},
                    synchronize_session=False,
                )
            )
            if not updated:
                # Another authorization drained this grant between read and write.
                raise Contention(f"legacy grant {grant.id} changed during debit")
            parts.append(DebitPart(amount=take, legacy_grant_id=grant.id))
            outstanding -= take
        return Debit(source=self.kind, debited=amount, parts=parts)

    def restore(self, session, authorization):
        for part in authorization.parts:
            if part.legacy_grant_id is None or part.amount <= 0:
                continue
            session.query(LegacyCreditGrant).filter(LegacyCreditGrant.id == part.legacy_grant_id).update(
                {LegacyCreditGrant.remaining: LegacyCreditGrant.remaining + part.amount},
                synchronize_session=False,
            )

    def available(self, session, account, now):
        total = (
            session.query(func.coalesce(func.sum(LegacyCreditGrant.remaining), 0))
            .filter(LegacyCreditGrant.account_id == account.id)
            .scalar()
        )
        return int(total or 0)


SOURCE_TYPES = {
    CreditSourceKind.UNLIMITED: UnlimitedWindowSource,
    CreditSourceKind.SHARED: SharedBalanceSource,
    CreditSourceKind.LEGACY: LegacyGrantSource,
}


def build_sources(priority: Sequence[str]) -> List[CreditSource]:
    return [SOURCE_TYPES[kind]() for kind in priority]


def source_for(kind: str) -> CreditSource:
    try:
        return SOURCE_TYPES[kind]()
    except KeyError:
        raise ValueError(f"Unknown credit source {kind!r}") from None


def active_windows(session: Session, account: Account, now: datetime) -> List[UnlimitedPackage]:
    return [
        package
        for package in session.query(UnlimitedPackage).filter(UnlimitedPackage.account_id == account.id).all()
        if package.covers(now)
    ]


def expired_windows(session: Session, account: Account, now: datetime) -> List[UnlimitedPackage]:
    return [
        package
        for package in session.query(UnlimitedPackage).filter(UnlimitedPackage.account_id == account.id).all()
        if ensure_utc(package.valid_until) <= now
    ]
