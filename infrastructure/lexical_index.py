# infrastructure/lexical_index.py
"""SQLite FTS5 keyword index over chunk text"""
import logging
import re
from typing import Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from core.interfaces import ILexicalIndex, ScoredIds
from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

# Same token boundaries as FTS5 unicode61: letters and digits, underscore separates
_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)


def tokenize(query_text: str) -> List[str]:
    return [t.lower() for t in _TOKEN_RE.findall(query_text or "")]


def build_match_expression(query_text: str, max_terms: int = 64) -> Optional[str]:
    """
    Turn free text into an FTS5 MATCH expression.

    The whole token sequence is offered as a phrase, OR'ed with each distinct
    token. Rows containing the exact phrase collect the phrase's BM25 weight on
    top of the per-term weights, so they outrank bag-of-words matches. Every
    token is double-quoted, which keeps FTS5 operators (AND, NEAR, *) in user
    input literal.
    """
    tokens = tokenize(query_text)[:max_terms]
    if not tokens:
        return None

    terms: List[str] = []
    for token in tokens:
        if token not in terms:
            terms.append(token)

    quoted_terms = [f'"{t}"' for t in terms]
    if len(tokens) == 1:
        return quoted_terms[0]
    phrase = '"' + " ".join(tokens) + '"'
    return " OR ".join([phrase] + quoted_terms)


class LexicalIndex(ILexicalIndex):
    """
    Ranked keyword search inside one bucket database.

    Entries are added per chunk, so ingestion never rebuilds the index.
    Relevance is the negated FTS5 bm25() value: positive, higher is better.
    """

    def __init__(self, session: AsyncSession, max_query_terms: int = settings.LEXICAL_MAX_QUERY_TERMS):
        self.session = session
        self.max_query_terms = max_query_terms

    async def index(self, chunk_id: int, text_content: str) -> None:
        await self.session.execute(
            text("DELETE FROM chunks_fts WHERE rowid = :id"), {"id": chunk_id}
        )
        await self.session.execute(
            text("INSERT INTO chunks_fts(rowid, content) VALUES (:id, :content)"),
            {"id": chunk_id, "content": text_content},
        )

    async def search(self, query_text: str, k: int) -> ScoredIds:
        if k <= 0:
            return []
        expression = build_match_expression(query_text, self.max_query_terms)
        if expression is None:
            return []

        result = await self.session.execute(
            text(
                "SELECT rowid, bm25(chunks_fts) AS rank FROM chunks_fts "
                "WHERE chunks_fts MATCH :expr ORDER BY rank, rowid LIMIT :k"
            ),
            {"expr": expression, "k": k},
        )
        hits = [(int(row[0]), -float(row[1])) for row in result]
        logger.debug(f"[LEXICAL] {len(hits)} hits for expression {expression!r}")
        return hits

    async def remove(self, chunk_ids: Iterable[int]) -> None:
        ids = list(chunk_ids)
        if not ids:
            return
        stmt = text("DELETE FROM chunks_fts WHERE rowid IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        await self.session.execute(stmt, {"ids": ids})

    async def count(self) -> int:
        result = await self.session.execute(text("SELECT count(*) FROM chunks_fts"))
        return int(result.scalar_one())
