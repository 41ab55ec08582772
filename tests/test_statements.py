from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite

from apihub.db import models as db_models
from apihub.db.statements import claim_rows_for_delete, lock_rows, share_rows, tokenize


def _sql(stmt, dialect) -> str:
    return str(stmt.compile(dialect=dialect))


def test_row_locks_render_on_postgresql():
    stmt = select(db_models.OperationDataRow.data_hash)

    assert _sql(share_rows(stmt), postgresql.dialect()).endswith("FOR KEY SHARE")
    assert _sql(claim_rows_for_delete(stmt), postgresql.dialect()).endswith(
        "FOR UPDATE SKIP LOCKED"
    )
    assert _sql(lock_rows(stmt), postgresql.dialect()).endswith("FOR NO KEY UPDATE SKIP LOCKED")


def test_row_locks_are_dropped_on_sqlite():
    stmt = select(db_models.OperationDataRow.data_hash)

    for locked in (share_rows(stmt), claim_rows_for_delete(stmt), lock_rows(stmt)):
        assert "FOR" not in _sql(locked, sqlite.dialect())


def test_tokenize():
    assert tokenize("GET /api/Users-list") == "get api users list"
