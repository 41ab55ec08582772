"""Full-text search rows derived from an operation's ``search_scope`` JSON."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from apihub.db import models as db_models
from apihub.db.statements import search_vector, upsert
from apihub.domain.models import ApiType

REST_SCOPES = ("request", "response", "annotation", "properties", "examples")
GRAPHQL_SCOPES = ("argument", "property", "annotation")


def scope_text(search_scope: Mapping[str, Any], scope: str) -> str:
    value = search_scope.get(scope, "")
    if isinstance(value, (list, tuple)):
        return " ".join(str(item) for item in value)
    return str(value or "")


def all_scopes_text(search_scope: Mapping[str, Any]) -> str:
    return " ".join(scope_text(search_scope, key) for key in sorted(search_scope))


async def refresh_search_rows(
    session: AsyncSession,
    data_hash: str,
    api_type: ApiType,
    search_scope: Mapping[str, Any],
    *,
    text_config: str = "english",
) -> None:
    """Upsert the per-type scope vectors and the cross-type ``all`` vector for one hash."""

    if api_type == ApiType.rest:
        model: Any = db_models.RestSearchRow
        scopes = REST_SCOPES
    else:
        model = db_models.GraphqlSearchRow
        scopes = GRAPHQL_SCOPES

    values = {
        f"scope_{scope}": search_vector(session, scope_text(search_scope, scope), text_config)
        for scope in scopes
    }
    stmt = upsert(session, model).values(data_hash=data_hash, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["data_hash"],
        set_={column: getattr(stmt.excluded, column) for column in values},
    )
    await session.execute(stmt)

    stmt = upsert(session, db_models.OperationSearchRow).values(
        data_hash=data_hash,
        scope_all=search_vector(session, all_scopes_text(search_scope), text_config),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["data_hash"], set_={"scope_all": stmt.excluded.scope_all}
    )
    await session.execute(stmt)
