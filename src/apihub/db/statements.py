"""Dialect-aware statement helpers.

PostgreSQL is the production target; SQLite backs the test suite. Upserts,
row locks and text-search vectors are expressed once here so repositories
stay dialect-agnostic.
"""

from __future__ import annotations

import re
from typing import Any

from sqlalchemy import Select, Text, cast, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_TOKEN = re.compile(r"\w+", re.UNICODE)


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def upsert(session: AsyncSession, model: Any) -> Any:
    """``INSERT`` construct supporting ``on_conflict_do_*`` for the bound dialect."""

    if dialect_name(session) == "postgresql":
        return postgresql.insert(model)
    return sqlite.insert(model)


def lock_rows(stmt: Select[Any], *, skip_locked: bool = True) -> Select[Any]:
    """``FOR NO KEY UPDATE [SKIP LOCKED]`` on PostgreSQL; a no-op on SQLite."""

    return stmt.with_for_update(skip_locked=skip_locked, key_share=True)


def lock_row(stmt: Select[Any]) -> Select[Any]:
    """Blocking ``FOR NO KEY UPDATE`` used to serialize writers on one row."""

    return stmt.with_for_update(key_share=True)


def share_rows(stmt: Select[Any]) -> Select[Any]:
    """``FOR KEY SHARE``: the rows cannot be deleted until the reader commits."""

    return stmt.with_for_update(read=True, key_share=True)


def claim_rows_for_delete(stmt: Select[Any]) -> Select[Any]:
    """``FOR UPDATE SKIP LOCKED``: skips rows a concurrent reader still holds."""

    return stmt.with_for_update(skip_locked=True)


def tokenize(text: str) -> str:
    return " ".join(_TOKEN.findall(text.lower()))


def search_vector(session: AsyncSession, text: str, config: str = "english") -> Any:
    """Value for a tsvector column: ``to_tsvector`` on PostgreSQL, lowered tokens elsewhere."""

    if dialect_name(session) == "postgresql":
        return func.to_tsvector(cast(config, postgresql.REGCONFIG), cast(text, Text))
    return tokenize(text)
