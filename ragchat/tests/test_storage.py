from datetime import datetime, timezone

import pytest

from ragchat.config.settings import AppSettings, load_settings
from ragchat.core.chunk.metadata_builder import MetadataBuilder, chunk_id_for
from ragchat.models.chunk import ChunkJob, ChunkJobStatus
from ragchat.models.document import IngestionJob, IngestionStatus
from ragchat.models.query import Citation, MessageStatus
from ragchat.tests.fakes import DIM, OWNER, BagOfWordsProvider


def _job(owner_id=OWNER, document_id="doc-1"):
    now = datetime.now(timezone.utc)
    return IngestionJob(
        id="job-1", document_id=document_id, owner_id=owner_id, storage_handle="h",
        filename="test.pdf", mime_type="application/pdf", size_bytes=10,
        status=IngestionStatus.embedding, created_at=now, updated_at=now
    )


def _chunk_jobs(texts, document_id="doc-1"):
    now = datetime.now(timezone.utc)
    return [
        ChunkJob(id=f"{document_id}-cj{i}", job_id="job-1", document_id=document_id, chunk_index=i,
                 content=t, status=ChunkJobStatus.embedding, created_at=now, updated_at=now)
        for i, t in enumerate(texts)
    ]


def _chunks(texts, owner_id=OWNER, document_id="doc-1"):
    provider = BagOfWordsProvider()
    builder = MetadataBuilder("fake-embedder", DIM)
    return builder.build_chunks(
        _job(owner_id, document_id), _chunk_jobs(texts, document_id), provider.embed_texts(texts)
    )


def test_metadata_builder_derives_ids_and_metadata():
    chunks = _chunks(["hello world", "second chunk"])

    assert chunks[0].id == chunk_id_for("doc-1-cj0")
    assert chunk_id_for("doc-1-cj0") == chunk_id_for("doc-1-cj0")
    assert chunks[0].id != chunks[1].id
    assert chunks[1].chunk_index == 1
    assert chunks[0].metadata.source_file == "test.pdf"
    assert chunks[0].metadata.dimension == DIM
    assert chunks[0].metadata.chunk_job_id == "doc-1-cj0"


def test_metadata_builder_requires_one_vector_per_job():
    with pytest.raises(ValueError):
        MetadataBuilder("m", DIM).build_chunks(_job(), _chunk_jobs(["a", "b"]), [[0.0] * DIM])


def test_qdrant_upsert_is_idempotent(vector_store):
    chunks = _chunks(["hello world", "second chunk", "third chunk"])

    vector_store.upsert(chunks)
    vector_store.upsert(chunks)

    assert vector_store.count_document("doc-1") == 3
    stored = vector_store.list_document_chunks("doc-1")
    assert [c.content for c in stored] == ["hello world", "second chunk", "third chunk"]
    assert stored[0].metadata == chunks[0].metadata


def test_qdrant_search_is_owner_scoped_and_thresholded(vector_store):
    vector_store.upsert(_chunks(["hello world"], owner_id=OWNER, document_id="doc-1"))
    vector_store.upsert(_chunks(["hello world"], owner_id="other", document_id="doc-2"))
    query = BagOfWordsProvider().vector("hello world")

    hits = vector_store.search(OWNER, query, top_k=10, min_score=0.5)

    assert [h.document_id for h in hits] == ["doc-1"]
    assert hits[0].similarity == pytest.approx(1.0, abs=1e-4)
    assert hits[0].filename == "test.pdf"

    # No shared dimensions: cosine similarity 0
    orthogonal = [0.0 if q else 1.0 for q in query]
    assert vector_store.search(OWNER, orthogonal, top_k=10, min_score=0.5) == []


def test_qdrant_delete_document(vector_store):
    vector_store.upsert(_chunks(["a b c", "d e f"]))
    vector_store.upsert(_chunks(["g h i"], document_id="doc-2"))

    vector_store.delete_document("doc-1")

    assert vector_store.count_document("doc-1") == 0
    assert vector_store.count_document("doc-2") == 1
    assert vector_store.collection_exists()


def test_blob_store_round_trip(blob_store):
    handle = blob_store.put(b"payload", "../../etc/my report.pdf")

    assert "/" not in handle
    assert handle.endswith("my_report.pdf")
    assert blob_store.get(handle) == b"payload"

    blob_store.delete(handle)
    with pytest.raises(FileNotFoundError):
        blob_store.get(handle)


def test_blob_store_rejects_path_handles(blob_store):
    with pytest.raises(ValueError):
        blob_store.get("../secret")


def test_message_store_keeps_failed_turns(message_store):
    citation = Citation(position=1, chunk_id="c1", document_id="d1", filename="f.pdf", similarity=0.8)

    message_store.append("chat-1", OWNER, "assistant", "partial", citations=[citation],
                         status=MessageStatus.error, retryable=True)

    [stored] = message_store.list_messages("chat-1", OWNER)
    assert stored.status == MessageStatus.error
    assert stored.retryable is True
    assert stored.citations == [citation]


def test_load_settings_reads_yaml_sections(tmp_path):
    config = tmp_path / "config.yaml"
    config.write_text("chunking:\n  chunk_size: 500\n  chunk_overlap: 50\nretrieval:\n  top_k: 9\n")

    settings = load_settings(str(config))

    assert isinstance(settings, AppSettings)
    assert settings.chunking.chunk_size == 500
    assert settings.chunking.chunk_overlap == 50
    assert settings.retrieval.top_k == 9
    assert settings.retrieval.min_similarity == 0.5
    assert settings.ingestion.embed_batch_size == 8


def test_nested_env_overrides(monkeypatch):
    monkeypatch.setenv("INGESTION__EMBED_BATCH_SIZE", "3")
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")

    settings = AppSettings()

    assert settings.ingestion.embed_batch_size == 3
    assert settings.openrouter_api_key == "sk-test"


def test_env_overrides_yaml_sections_field_by_field(tmp_path, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text("ingestion:\n  embed_batch_size: 8\n  chunk_insert_batch: 50\n")
    monkeypatch.setenv("INGESTION__EMBED_BATCH_SIZE", "3")

    settings = load_settings(str(config))

    assert isinstance(settings, AppSettings)
    assert settings.ingestion.embed_batch_size == 3
    assert settings.ingestion.chunk_insert_batch == 50
