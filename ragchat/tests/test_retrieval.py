import math

from ragchat.core.embed.embedder import Embedder
from ragchat.core.retrieve.retriever import Retriever
from ragchat.core.chunk.chunker import chunk_text
from ragchat.models.document import DocumentStatus, IngestionStatus
from ragchat.tests.fakes import DIM, OWNER, FixedProvider, PoisonProvider, numbered_sentences


def _unit(*values):
    v = list(values) + [0.0] * (DIM - len(values))
    norm = math.sqrt(sum(x * x for x in v))
    return [x / norm for x in v]


def _service_with_vectors(make_service, vectors):
    return make_service(provider=FixedProvider(vectors))


def test_threshold_above_best_match_returns_empty(make_service, settings, job_store, vector_store):
    # Query sits at 60 degrees from the only chunk: cosine similarity 0.5
    vectors = {
        "The warranty lasts two years.": _unit(1.0),
        "how long is the warranty": _unit(0.5, math.sqrt(0.75)),
    }
    service = _service_with_vectors(make_service, vectors)
    service.submit_ingestion(OWNER, b"The warranty lasts two years.", "w.txt", "text/plain")
    retriever = Retriever(service.embedder, vector_store, job_store, settings.retrieval)

    assert retriever.retrieve(OWNER, "how long is the warranty", top_k=5, min_similarity=0.9) == []

    hits = retriever.retrieve(OWNER, "how long is the warranty", top_k=5, min_similarity=0.4)
    assert len(hits) == 1
    assert math.isclose(hits[0].similarity, 0.5, abs_tol=1e-3)
    assert hits[0].filename == "w.txt"


def test_results_are_ordered_by_similarity(make_service, settings, job_store, vector_store):
    vectors = {
        "alpha chunk": _unit(1.0, 0.2),
        "beta chunk": _unit(1.0, 1.0),
        "gamma chunk": _unit(0.1, 1.0),
        "query": _unit(1.0),
    }
    service = _service_with_vectors(make_service, vectors)
    for text in ("alpha chunk", "beta chunk", "gamma chunk"):
        service.submit_ingestion(OWNER, text.encode(), f"{text}.txt", "text/plain")
    retriever = Retriever(service.embedder, vector_store, job_store, settings.retrieval)

    hits = retriever.retrieve(OWNER, "query", top_k=5, min_similarity=0.0)

    assert [h.content for h in hits] == ["alpha chunk", "beta chunk", "gamma chunk"]
    assert hits == sorted(hits, key=lambda h: h.similarity, reverse=True)

    top_two = retriever.retrieve(OWNER, "query", top_k=2, min_similarity=0.0)
    assert [h.content for h in top_two] == ["alpha chunk", "beta chunk"]


def test_other_owners_chunks_are_invisible(make_service, settings, job_store, vector_store):
    vectors = {"shared words": _unit(1.0), "query": _unit(1.0)}
    service = _service_with_vectors(make_service, vectors)
    service.submit_ingestion("someone-else", b"shared words", "theirs.txt", "text/plain")
    retriever = Retriever(service.embedder, vector_store, job_store, settings.retrieval)

    assert retriever.retrieve(OWNER, "query", top_k=5, min_similarity=0.0) == []
    assert len(retriever.retrieve("someone-else", "query", top_k=5, min_similarity=0.0)) == 1


def test_chunks_of_unfinished_documents_are_skipped(make_service, settings, job_store, vector_store):
    vectors = {"draft text": _unit(1.0), "query": _unit(1.0)}
    service = _service_with_vectors(make_service, vectors)
    document = service.submit_ingestion(OWNER, b"draft text", "d.txt", "text/plain")
    retriever = Retriever(service.embedder, vector_store, job_store, settings.retrieval)
    assert len(retriever.retrieve(OWNER, "query")) == 1

    # Simulate a document that fell back to error with points still indexed
    job = job_store.get_latest_job(document.id)
    job_store.transition_job(job.id, IngestionStatus.error, [IngestionStatus.completed], last_error="cancelled")

    assert retriever.retrieve(OWNER, "query") == []


def test_blank_query_returns_nothing(settings, job_store, vector_store, embedder, provider):
    retriever = Retriever(embedder, vector_store, job_store, settings.retrieval)

    assert retriever.retrieve(OWNER, "   ") == []
    assert provider.calls == []


def test_defaults_come_from_config(settings, job_store, vector_store):
    embedder = Embedder(FixedProvider({"query": _unit(1.0)}), dimension=DIM, model_name="fake")
    retriever = Retriever(embedder, vector_store, job_store, settings.retrieval)

    assert retriever.retrieve(OWNER, "query") == []


def test_leftover_chunks_of_failed_document_do_not_crowd_out_ready_ones(make_service, settings, job_store, vector_store):
    service = make_service(provider=PoisonProvider())
    failed = service.submit_ingestion(OWNER, numbered_sentences(30, marker_at=29).encode(), "v1.txt", "text/plain")
    clean_text = numbered_sentences(30)
    clean = service.submit_ingestion(OWNER, clean_text.encode(), "v2.txt", "text/plain")
    expected = chunk_text(clean_text)

    assert job_store.get_document(failed.id).status == DocumentStatus.error
    assert vector_store.count_document(failed.id) > 0
    assert job_store.get_document(clean.id).status == DocumentStatus.ready

    retriever = Retriever(service.embedder, vector_store, job_store, settings.retrieval)
    hits = retriever.retrieve(OWNER, expected[0], top_k=len(expected), min_similarity=0.0)

    assert len(hits) == len(expected)
    assert {h.document_id for h in hits} == {clean.id}


def test_vector_search_can_be_limited_to_documents(make_service, vector_store):
    service = make_service()
    first = service.submit_ingestion(OWNER, b"shared warranty words", "a.txt", "text/plain")
    service.submit_ingestion(OWNER, b"shared warranty words", "b.txt", "text/plain")
    query = service.embedder.embed_query("shared warranty words")

    assert len(vector_store.search(OWNER, query, top_k=5, min_score=0.0)) == 2
    limited = vector_store.search(OWNER, query, top_k=5, min_score=0.0, document_ids=[first.id])
    assert [h.document_id for h in limited] == [first.id]
