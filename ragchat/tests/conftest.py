import pytest

from ragchat.config.settings import (
    AppSettings,
    ChunkingConfig,
    DatabaseConfig,
    EmbeddingConfig,
    IngestionConfig,
    QdrantConfig,
    RetrievalConfig,
    StorageConfig,
)
from ragchat.core.chunk.chunker import Chunker
from ragchat.core.embed.embedder import Embedder, EmbeddingProvider
from ragchat.core.parse.extractor import TextExtractor
from ragchat.core.pipeline.dispatch import InlineDispatcher, StageDispatcher
from ragchat.core.pipeline.ingestion import IngestionService
from ragchat.storage.database import Database
from ragchat.storage.file_store import LocalBlobStore
from ragchat.storage.job_store import JobStore
from ragchat.storage.message_store import MessageStore
from ragchat.storage.qdrant_store import QdrantChunkStore
from ragchat.tests.fakes import DIM, BagOfWordsProvider


@pytest.fixture
def settings(tmp_path):
    return AppSettings(
        chunking=ChunkingConfig(chunk_size=1000, chunk_overlap=200),
        embedding=EmbeddingConfig(model_name="fake-embedder", vector_dim=DIM, query_prefix=""),
        qdrant=QdrantConfig(mode="memory", collection_name="test_chunks"),
        database=DatabaseConfig(url="sqlite://"),
        storage=StorageConfig(blob_path=str(tmp_path / "uploads")),
        ingestion=IngestionConfig(dispatcher="inline", embed_batch_size=2, chunk_insert_batch=3, dispatch_secret="stage-secret"),
        retrieval=RetrievalConfig(top_k=5, min_similarity=0.0),
        openrouter_api_key="test-key",
    )


@pytest.fixture
def database(settings):
    db = Database(settings.database)
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def job_store(database):
    return JobStore(database)


@pytest.fixture
def message_store(database):
    return MessageStore(database)


@pytest.fixture
def blob_store(settings):
    return LocalBlobStore(settings.storage.blob_path)


@pytest.fixture
def vector_store(settings):
    return QdrantChunkStore(settings.qdrant, vector_dim=DIM)


@pytest.fixture
def provider():
    return BagOfWordsProvider()


@pytest.fixture
def embedder(provider):
    return Embedder(provider, dimension=DIM, model_name="fake-embedder")


@pytest.fixture
def make_service(settings, job_store, blob_store, vector_store):
    """Builds an IngestionService around the shared stores with a chosen provider/dispatcher."""

    def build(provider: EmbeddingProvider | None = None, dispatcher: StageDispatcher | None = None) -> IngestionService:
        return IngestionService(
            job_store=job_store,
            blob_store=blob_store,
            vector_store=vector_store,
            extractor=TextExtractor(),
            chunker=Chunker(settings.chunking),
            embedder=Embedder(provider or BagOfWordsProvider(), dimension=DIM, model_name="fake-embedder"),
            dispatcher=dispatcher or InlineDispatcher(),
            config=settings.ingestion
        )

    return build


@pytest.fixture
def service(make_service, provider):
    return make_service(provider=provider)
