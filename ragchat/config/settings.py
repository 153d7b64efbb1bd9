from typing import Tuple, Type
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)
from pydantic import BaseModel
import os

class ChunkingConfig(BaseModel):
    chunk_size: int = 1000
    chunk_overlap: int = 200
    boundary_window: float = 0.2     # trailing fraction of a window searched for a cut point

class EmbeddingConfig(BaseModel):
    provider: str = "local"          # "local" | "http"
    model_name: str = "BAAI/bge-large-en-v1.5"
    vector_dim: int = 1024
    batch_size: int = 32
    query_prefix: str = "Represent this sentence for searching relevant passages: "
    normalise: bool = True
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""

class QdrantConfig(BaseModel):
    mode: str = "local"              # "local" | "memory" | "cloud"
    local_path: str = "./data/qdrant_store"
    cloud_url: str = ""
    api_key: str = ""
    collection_name: str = "document_chunks"
    hnsw_m: int = 16
    hnsw_ef_construct: int = 100
    hnsw_ef: int = 64

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///./data/ragchat.db"
    echo: bool = False

class StorageConfig(BaseModel):
    blob_path: str = "./data/uploads"

class IngestionConfig(BaseModel):
    dispatcher: str = "thread"       # "thread" | "http" | "inline"
    max_workers: int = 4
    embed_batch_size: int = 8
    chunk_insert_batch: int = 100
    callback_base_url: str = "http://localhost:8000"
    dispatch_timeout: float = 5.0
    dispatch_secret: str = ""        # bearer token the process endpoint requires (INGESTION__DISPATCH_SECRET)
    stalled_after_seconds: int = 600

class RetrievalConfig(BaseModel):
    top_k: int = 5
    min_similarity: float = 0.5

class ChatConfig(BaseModel):
    max_history_pairs: int = 4
    system_prompt: str | None = None

class LLMConfig(BaseModel):
    provider: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "mistralai/mistral-7b-instruct"
    fallback_model: str = "google/gemma-3-27b-it"
    max_tokens: int = 1024
    temperature: float = 0.1
    timeout: float = 60.0

class AppSettings(BaseSettings):
    chunking: ChunkingConfig = ChunkingConfig()
    embedding: EmbeddingConfig = EmbeddingConfig()
    qdrant: QdrantConfig = QdrantConfig()
    database: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    ingestion: IngestionConfig = IngestionConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    chat: ChatConfig = ChatConfig()
    llm: LLMConfig = LLMConfig()
    openrouter_api_key: str = ""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore"
    )

    @classmethod
    def settings_customise_sources(cls,
                                   settings_cls: Type[BaseSettings],
                                   init_settings: PydanticBaseSettingsSource,
                                   env_settings: PydanticBaseSettingsSource,
                                   dotenv_settings: PydanticBaseSettingsSource,
                                   file_secret_settings: PydanticBaseSettingsSource) -> Tuple[PydanticBaseSettingsSource, ...]:
        # kwargs > environment > .env > secrets > config.yaml > defaults; nested sections merge field by field
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_secret_settings,
            YamlConfigSettingsSource(settings_cls),
        )

def load_settings(config_path: str = "ragchat/config/config.yaml") -> AppSettings:
    """Loads settings from config.yaml with env overrides on top.

    Called once at process start; the resulting object is handed to every
    component that needs it.
    """

    paths_to_try = [
        config_path,
        "config.yaml",
        "config/config.yaml",
        os.path.join(os.path.dirname(__file__), "config.yaml")
    ]
    yaml_path = next((path for path in paths_to_try if os.path.exists(path)), None)
    if yaml_path is None:
        return AppSettings()

    class FileSettings(AppSettings):
        model_config = SettingsConfigDict(yaml_file=yaml_path, yaml_file_encoding="utf-8")

    return FileSettings()
