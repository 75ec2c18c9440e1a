from __future__ import annotations

import pytest
from sqlalchemy import select

from council import db
from council.models import Proposal


@pytest.fixture()
def fresh_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "_SessionLocal", None)
    return tmp_path / "nested" / "council.db"


class TestSessionManagement:
    def test_requires_init(self, fresh_db):
        with pytest.raises(RuntimeError):
            db.get_session()

    def test_default_path_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("COUNCIL_DB_PATH", str(tmp_path / "x.db"))
        assert db.default_db_path() == tmp_path / "x.db"

    def test_session_scope(self, fresh_db):
        db.init_db(fresh_db)
        assert fresh_db.exists()
        with db.session_scope() as session:
            session.add(Proposal(title="Well cover", amount=0.1))
            session.commit()
        with db.session_scope() as session:
            titles = session.execute(select(Proposal.title)).scalars().all()
        assert titles == ["Well cover"]

    def test_session_scope_rollback(self, fresh_db):
        db.init_db(fresh_db)
        with pytest.raises(ValueError):
            with db.session_scope() as session:
                session.add(Proposal(title="Never stored", amount=1.0))
                session.flush()
                raise ValueError("boom")
        with db.session_scope() as session:
            assert session.execute(select(Proposal)).scalars().all() == []
