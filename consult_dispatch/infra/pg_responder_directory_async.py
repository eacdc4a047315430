# consult_dispatch/infra/pg_responder_directory_async.py
"""
ResponderDirectory over the postgres ``responders`` table (asyncpg).

Schema: consult_dispatch/infra/sql/001_responders.sql. Only available
responders with a push token are returned, best priority first.
"""
from __future__ import annotations

from consult_dispatch.core.dispatch.domain import Candidate
from consult_dispatch.core.dispatch.ports import ResponderDirectory
from consult_dispatch.infra.db_async import db_conn
from consult_dispatch.infra.logging_config import get_logger
from consult_dispatch.infra.metrics import inc_counter

logger = get_logger(__name__)

LOOKUP_SQL = """
    SELECT id, name, language, push_token
    FROM responders
    WHERE lower(language) = lower($1)
      AND is_available
      AND push_token IS NOT NULL
    ORDER BY priority, id
"""

INVALIDATE_SQL = "UPDATE responders SET push_token = NULL, updated_at = now() WHERE id::text = $1"


class AsyncPostgresResponderDirectory(ResponderDirectory):
    """Async implementation of ResponderDirectory over the responders table"""

    async def lookup_candidates(self, criterion: str) -> list[Candidate]:
        try:
            async with db_conn() as conn:
                rows = await conn.fetch(LOOKUP_SQL, criterion.strip())
        except Exception:
            logger.error(f"Failed to look up responders: criterion={criterion}", exc_info=True)
            inc_counter("database_errors_total", operation="responder_lookup")
            raise

        return [
            Candidate(
                id=str(row["id"]),
                name=row["name"],
                address=row["push_token"],
                language=row["language"],
            )
            for row in rows
        ]

    async def invalidate_address(self, candidate_id: str) -> None:
        try:
            async with db_conn() as conn:
                await conn.execute(INVALIDATE_SQL, candidate_id)
        except Exception:
            logger.error(f"Failed to clear push token: responder={candidate_id}", exc_info=True)
            inc_counter("database_errors_total", operation="responder_invalidate")
            raise
