from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    DATABASE_URL: str
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Supabase Auth
    SUPABASE_URL: str
    SUPABASE_JWT_SECRET: str

    # Supabase Storage (transient upload blobs)
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    RAG_BUCKET: str = "rag-files"
    STORAGE_TIMEOUT_SECONDS: float = 30.0

    # Text extraction: heuristic | library | model
    EXTRACTION_STRATEGY: str = "heuristic"
    EXTRACTION_MODEL: str = "gpt-4o-mini"
    EXTRACTION_TIMEOUT_SECONDS: float = 60.0

    # OpenAI (for model-based extraction via LangChain)
    OPENAI_API_KEY: Optional[str] = None

    # RAG ingestion policy
    RAG_CHUNK_SIZE: int = 800
    RAG_CHUNK_OVERLAP: int = 150
    RAG_MAX_DOCUMENTS_PER_USER: int = 3
    RAG_MAX_FILE_SIZE_BYTES: int = 5 * 1024 * 1024
    REQUEST_TIMEOUT_SECONDS: float = 120.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
