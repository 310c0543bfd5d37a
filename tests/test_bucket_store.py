"""
Test suite for BucketStore and the two per-bucket indices.

Uses a real SQLite database in a temporary directory: FTS5 ranking, the
embedding BLOB column and ON DELETE CASCADE are exercised as they run in
production.
"""

import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import pytest

from core.domain import BucketRef, Chunk, ChunkState, Document, MediaKind
from core.exceptions import (BucketNotFoundError, DimensionMismatchError,
                             DocumentNotFoundError, StorageError)
from infrastructure.bucket_store import BucketStore
from infrastructure.lexical_index import build_match_expression
from utils.common import get_content_hash

DISTRACTORS = [
    "orbital mechanics of distant comets",
    "sourdough starter needs daily feeding",
    "medieval castles had thick stone walls",
    "jazz improvisation over modal harmony",
    "glaciers carve deep valleys slowly",
    "tax forms are due every april",
    "volcanic soil is rich in minerals",
    "chess openings reward early development",
]


def make_document(text: str = "body", source: str = "notes.txt") -> Document:
    return Document(
        id=str(uuid.uuid4()),
        source=source,
        media_kind=MediaKind.TEXT,
        text=text,
        content_hash=get_content_hash(text + uuid.uuid4().hex),
        ingested_at=datetime.now(timezone.utc),
        metadata={"title": source},
    )


def make_chunks(texts: List[str], vectors: Optional[List[Optional[List[float]]]] = None) -> List[Chunk]:
    vectors = vectors or [None] * len(texts)
    chunks = []
    offset = 0
    for ordinal, (text, vec) in enumerate(zip(texts, vectors)):
        chunks.append(Chunk(
            id=None, document_id="", ordinal=ordinal, content=text,
            start_char=offset, end_char=offset + len(text), embedding=vec,
        ))
        offset += len(text)
    return chunks


@pytest.fixture
async def store(tmp_path):
    """Open BucketStore on an empty bucket directory."""
    path = tmp_path / "bucket"
    path.mkdir()
    ref = BucketRef(name="bucket", path=str(path), created_at=datetime.now(timezone.utc))
    store = await BucketStore.open(ref)
    yield store
    await store.close()


async def add(store: BucketStore, texts: List[str], vectors=None) -> List[int]:
    return await store.append_document(make_document(" ".join(texts)), make_chunks(texts, vectors))


class TestLexicalIndex:
    """Keyword search through FTS5."""

    @pytest.mark.asyncio
    async def test_exact_phrase_ranks_above_bag_of_words(self, store: BucketStore) -> None:
        # Arrange
        await add(store, DISTRACTORS)
        [scattered] = await add(store, ["fox brown and quick things jumped"])
        [phrase] = await add(store, ["quick brown fox and things jumped"])

        # Act
        hits = await store.lexical_search("quick brown fox", 5)

        # Assert
        ids = [chunk_id for chunk_id, _ in hits]
        assert ids[:2] == [phrase, scattered]
        assert hits[0][1] > hits[1][1] > 0

    @pytest.mark.asyncio
    async def test_more_matching_terms_rank_higher(self, store: BucketStore) -> None:
        await add(store, DISTRACTORS)
        [one] = await add(store, ["enzyme reactions happen inside every living organism"])
        [two] = await add(store, ["enzyme catalysis speeds reactions inside every organism"])

        hits = await store.lexical_search("enzyme catalysis", 5)

        assert [chunk_id for chunk_id, _ in hits][:2] == [two, one]

    @pytest.mark.asyncio
    async def test_case_and_punctuation_are_folded(self, store: BucketStore) -> None:
        [chunk_id] = await add(store, ["The MITOCHONDRIA, famously, make ATP."])
        hits = await store.lexical_search("mitochondria atp", 3)
        assert hits and hits[0][0] == chunk_id

    @pytest.mark.asyncio
    async def test_query_operators_are_treated_as_text(self, store: BucketStore) -> None:
        await add(store, ["near the end of the book"])
        hits = await store.lexical_search('NEAR("end" book) AND * OR -', 3)
        assert len(hits) == 1

    @pytest.mark.asyncio
    async def test_query_without_tokens_returns_nothing(self, store: BucketStore) -> None:
        await add(store, ["anything at all"])
        assert await store.lexical_search("?! ...", 3) == []

    def test_match_expression_quotes_terms_and_phrase(self) -> None:
        assert build_match_expression("Quick, brown fox!") == (
            '"quick brown fox" OR "quick" OR "brown" OR "fox"'
        )
        assert build_match_expression("fox") == '"fox"'
        assert build_match_expression("   ") is None


class TestVectorIndex:
    """Exact cosine search over stored embeddings."""

    @pytest.mark.asyncio
    async def test_results_sorted_by_descending_similarity(self, store: BucketStore) -> None:
        ids = await add(store, ["a", "b", "c"], [[0.0, 1.0, 0.0], [1.0, 0.0, 0.0], [0.7, 0.7, 0.0]])

        hits = await store.vector_search([1.0, 0.0, 0.0], 3)

        assert [chunk_id for chunk_id, _ in hits] == [ids[1], ids[2], ids[0]]
        scores = [score for _, score in hits]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_query_equal_to_stored_vector_ranks_it_first(self, store: BucketStore) -> None:
        vectors = [[0.1, 0.9, 0.3], [0.5, 0.5, 0.5], [0.9, 0.1, 0.2], [0.3, 0.3, 0.9]]
        ids = await add(store, ["a", "b", "c", "d"], vectors)
        for chunk_id, vec in zip(ids, vectors):
            hits = await store.vector_search(vec, 1)
            assert hits[0][0] == chunk_id

    @pytest.mark.asyncio
    async def test_ties_break_by_insertion_order(self, store: BucketStore) -> None:
        first = await add(store, ["x"], [[0.0, 2.0]])
        second = await add(store, ["y"], [[0.0, 1.0]])
        hits = await store.vector_search([0.0, 5.0], 2)
        assert [chunk_id for chunk_id, _ in hits] == first + second

    @pytest.mark.asyncio
    async def test_zero_vectors_score_zero_without_error(self, store: BucketStore) -> None:
        ids = await add(store, ["zero", "unit"], [[0.0, 0.0], [1.0, 0.0]])

        hits = dict(await store.vector_search([1.0, 0.0], 2))
        assert hits[ids[0]] == 0.0

        zero_query = await store.vector_search([0.0, 0.0], 2)
        assert [score for _, score in zero_query] == [0.0, 0.0]
        assert [chunk_id for chunk_id, _ in zero_query] == ids

    @pytest.mark.asyncio
    async def test_query_dimension_mismatch_raises(self, store: BucketStore) -> None:
        await add(store, ["a"], [[1.0, 0.0, 0.0]])
        with pytest.raises(DimensionMismatchError):
            await store.vector_search([1.0, 0.0], 1)

    @pytest.mark.asyncio
    async def test_pending_chunks_are_lexical_only(self, store: BucketStore) -> None:
        embedded, pending = await add(store, ["photosynthesis embedded", "photosynthesis pending"],
                                      [[1.0, 0.0], None])

        vector_ids = [chunk_id for chunk_id, _ in await store.vector_search([1.0, 0.0], 5)]
        lexical_ids = [chunk_id for chunk_id, _ in await store.lexical_search("photosynthesis", 5)]

        assert vector_ids == [embedded]
        assert set(lexical_ids) == {embedded, pending}
        [stored] = await store.pending_chunks()
        assert stored.id == pending and stored.state == ChunkState.PENDING_EMBEDDING

    @pytest.mark.asyncio
    async def test_reinserting_a_vector_replaces_it(self, store: BucketStore) -> None:
        [chunk_id] = await add(store, ["a"], [[1.0, 0.0]])

        await store.set_embeddings({chunk_id: [0.0, 1.0]})
        await store.set_embeddings({chunk_id: [0.0, 1.0]})

        hits = await store.vector_search([0.0, 1.0], 10)
        assert hits == [(chunk_id, pytest.approx(1.0, abs=1e-6))]


class TestBucketStoreWrites:
    """Atomic appends and cascading deletes."""

    @pytest.mark.asyncio
    async def test_append_assigns_increasing_ids_in_ordinal_order(self, store: BucketStore) -> None:
        document = make_document()
        chunks = make_chunks(["zero", "one", "two"])
        ids = await store.append_document(document, list(reversed(chunks)))

        assert ids == sorted(ids)
        stored = await store.get_chunks(document.id)
        assert [c.ordinal for c in stored] == [0, 1, 2]
        assert [c.id for c in stored] == ids

    @pytest.mark.asyncio
    async def test_mismatched_dimension_writes_nothing(self, store: BucketStore) -> None:
        await add(store, ["first"], [[1.0, 0.0]])

        with pytest.raises(DimensionMismatchError):
            await add(store, ["second", "third"], [[1.0, 0.0], [1.0, 0.0, 0.0]])
        with pytest.raises(DimensionMismatchError):
            await add(store, ["fourth"], [[1.0, 0.0, 0.0]])

        stats = await store.stats()
        assert (stats.documents, stats.chunks, stats.embedding_dim) == (1, 1, 2)
        assert await store.lexical_search("fourth", 5) == []

    @pytest.mark.asyncio
    async def test_delete_document_cascades_everywhere(self, store: BucketStore) -> None:
        # Arrange
        keep = make_document(source="keep.txt")
        drop = make_document(source="drop.txt")
        [kept_id] = await store.append_document(keep, make_chunks(["shared words kept"], [[1.0, 0.0]]))
        await store.append_document(drop, make_chunks(["shared words dropped", "more dropped"],
                                                      [[1.0, 0.0], [0.0, 1.0]]))

        # Act
        removed = await store.delete_document(drop.id)

        # Assert
        assert removed == 2
        assert [d.id for d in await store.list_documents()] == [keep.id]
        assert await store.get_chunks(drop.id) == []
        assert [i for i, _ in await store.lexical_search("shared dropped more", 10)] == [kept_id]
        assert [i for i, _ in await store.vector_search([0.0, 1.0], 10)] == [kept_id]
        stats = await store.stats()
        assert (stats.documents, stats.chunks) == (1, 1)

    @pytest.mark.asyncio
    async def test_delete_unknown_document_raises(self, store: BucketStore) -> None:
        with pytest.raises(DocumentNotFoundError):
            await store.delete_document("missing")

    @pytest.mark.asyncio
    async def test_get_unknown_document_raises(self, store: BucketStore) -> None:
        with pytest.raises(DocumentNotFoundError):
            await store.get_document("missing")

    @pytest.mark.asyncio
    async def test_find_document_by_hash(self, store: BucketStore) -> None:
        document = make_document("unique text")
        await store.append_document(document, make_chunks(["unique text"]))
        found = await store.find_document_by_hash(document.content_hash)
        assert found is not None and found.id == document.id
        assert found.metadata == {"title": "notes.txt"}

    @pytest.mark.asyncio
    async def test_append_if_new_returns_existing_without_writing(self, store: BucketStore) -> None:
        original = make_document("same body")
        await store.append_document(original, make_chunks(["same body"]))
        copy = make_document("same body")
        copy.content_hash = original.content_hash

        existing = await store.append_if_new(copy, make_chunks(["same body"]))

        assert existing is not None and existing.id == original.id
        assert (await store.stats()).documents == 1

    @pytest.mark.asyncio
    async def test_set_embeddings_skips_deleted_chunks(self, store: BucketStore) -> None:
        # Arrange
        doomed = make_document("doomed")
        doomed_ids = await store.append_document(doomed, make_chunks(["doomed one", "doomed two"]))
        [kept_id] = await add(store, ["kept chunk"])
        await store.delete_document(doomed.id)

        # Act
        stored = await store.set_embeddings({i: [1.0, 0.0] for i in doomed_ids + [kept_id]})

        # Assert
        assert stored == 1
        assert await store.pending_chunks() == []
        assert [i for i, _ in await store.vector_search([1.0, 0.0], 5)] == [kept_id]


class TestBucketStoreLifecycle:
    """Opening, deleting and corrupted storage."""

    @pytest.mark.asyncio
    async def test_delete_bucket_removes_directory(self, store: BucketStore) -> None:
        await add(store, ["something"], [[1.0]])
        path = Path(store.bucket.path)

        await store.delete_bucket()

        assert not path.exists()
        assert not any(p.name.startswith(".bucket.deleted") for p in path.parent.iterdir())
        with pytest.raises(BucketNotFoundError):
            await BucketStore.open(store.bucket)

    @pytest.mark.asyncio
    async def test_open_missing_directory_raises(self, tmp_path) -> None:
        ref = BucketRef(name="ghost", path=str(tmp_path / "ghost"), created_at=datetime.now(timezone.utc))
        with pytest.raises(BucketNotFoundError):
            await BucketStore.open(ref)

    @pytest.mark.asyncio
    async def test_open_corrupt_database_raises_storage_error(self, tmp_path) -> None:
        path = tmp_path / "broken"
        path.mkdir()
        (path / "bucket.db").write_bytes(b"definitely not a sqlite database " * 200)
        ref = BucketRef(name="broken", path=str(path), created_at=datetime.now(timezone.utc))

        with pytest.raises(StorageError):
            await BucketStore.open(ref)
