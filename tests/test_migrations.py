from pathlib import Path

import sqlalchemy as sa
from alembic import command
from alembic.config import Config

from votecredit.models.models import Account, Vote

ROOT = Path(__file__).resolve().parents[1]


def test_initial_migration_creates_schema_and_indexes(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'migrations.db'}"
    config = Config(str(ROOT / "votecredit" / "alembic.ini"))
    config.set_main_option("script_location", str(ROOT / "votecredit" / "migrations"))
    config.set_main_option("sqlalchemy.url", db_url)

    command.upgrade(config, "head")

    engine = sa.create_engine(db_url)
    try:
        inspector = sa.inspect(engine)
        vote_uniques = {constraint["name"] for constraint in inspector.get_unique_constraints("votes")}
        assert "uq_votes_election_voter_position" in vote_uniques
        vote_indexes = {index["name"] for index in inspector.get_indexes("votes")}
        assert {"ix_votes_election_position", "ix_votes_election_candidate", "ix_votes_created_at"} <= vote_indexes
        payment_indexes = {index["name"] for index in inspector.get_indexes("payment_transactions")}
        assert "ix_payment_transactions_account_status" in payment_indexes

        with sa.orm.Session(engine) as session:
            session.query(Account).all()
            session.query(Vote).all()
    finally:
        engine.dispose()
