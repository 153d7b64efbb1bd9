import logging
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ragchat.config.settings import AppSettings, load_settings
from ragchat.core.chunk.chunker import Chunker
from ragchat.core.embed.embedder import Embedder, EmbeddingProvider
from ragchat.core.errors import EmptyConversation, InvalidStagePayload, NotFound
from ragchat.core.generate.llm_client import LLMClient
from ragchat.core.generate.prompt_builder import PromptAssembler
from ragchat.core.parse.extractor import TextExtractor
from ragchat.core.pipeline.chat import ChatService
from ragchat.core.pipeline.dispatch import build_dispatcher
from ragchat.core.pipeline.ingestion import IngestionService
from ragchat.core.retrieve.retriever import Retriever
from ragchat.storage.database import Database
from ragchat.storage.file_store import LocalBlobStore
from ragchat.storage.job_store import JobStore
from ragchat.storage.message_store import MessageStore
from ragchat.storage.qdrant_store import QdrantChunkStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def build_components(app: FastAPI,
                     settings: AppSettings,
                     embedding_provider: Optional[EmbeddingProvider] = None,
                     llm_client: Optional[LLMClient] = None) -> None:
    """Wires every component from one settings object and stores them in app.state."""
    database = Database(settings.database)
    database.init_db()

    job_store = JobStore(database)
    message_store = MessageStore(database)
    blob_store = LocalBlobStore(settings.storage.blob_path)
    embedder = Embedder.from_config(settings.embedding, provider=embedding_provider)
    vector_store = QdrantChunkStore(settings.qdrant, vector_dim=settings.embedding.vector_dim)

    dispatcher = build_dispatcher(
        settings.ingestion.dispatcher,
        max_workers=settings.ingestion.max_workers,
        base_url=settings.ingestion.callback_base_url,
        timeout=settings.ingestion.dispatch_timeout,
        secret=settings.ingestion.dispatch_secret
    )
    ingestion_service = IngestionService(
        job_store=job_store,
        blob_store=blob_store,
        vector_store=vector_store,
        extractor=TextExtractor(),
        chunker=Chunker(settings.chunking),
        embedder=embedder,
        dispatcher=dispatcher,
        config=settings.ingestion
    )

    retriever = Retriever(embedder, vector_store, job_store, settings.retrieval)
    chat_service = ChatService(
        retriever=retriever,
        assembler=PromptAssembler(settings.chat.system_prompt, settings.chat.max_history_pairs),
        llm_client=llm_client or LLMClient(settings.llm, api_key=settings.openrouter_api_key),
        message_store=message_store
    )

    # Stored in app.state for dependency injection
    app.state.settings = settings
    app.state.database = database
    app.state.job_store = job_store
    app.state.message_store = message_store
    app.state.blob_store = blob_store
    app.state.vector_store = vector_store
    app.state.dispatcher = dispatcher
    app.state.ingestion_service = ingestion_service
    app.state.chat_service = chat_service


def create_app(settings: Optional[AppSettings] = None,
               embedding_provider: Optional[EmbeddingProvider] = None,
               llm_client: Optional[LLMClient] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- Startup ---
        logger.info("Initializing RAG backend storage and pipelines...")
        build_components(app, settings or load_settings(), embedding_provider, llm_client)
        logger.info("Initialization complete. All systems ready.")

        yield

        # --- Shutdown ---
        logger.info("Shutting down RAG backend...")
        app.state.dispatcher.shutdown()
        app.state.database.dispose()

    app = FastAPI(
        title="ragchat API",
        description="Document chat with grounded, cited answers",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(EmptyConversation)
    async def empty_conversation_handler(request: Request, exc: EmptyConversation):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(InvalidStagePayload)
    async def invalid_payload_handler(request: Request, exc: InvalidStagePayload):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "ok"}

    from ragchat.api.routes import chat, documents, ingest

    app.include_router(ingest.router, prefix="/api", tags=["Ingestion"])
    app.include_router(documents.router, prefix="/api", tags=["Documents"])
    app.include_router(chat.router, prefix="/api", tags=["Chat"])

    return app


app = create_app()
