"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Job Record / chunk store
    store_backend: str = "supabase"  # "supabase" or "memory"

    # OpenAI
    openai_api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-small"
    embedding_batch_size: int = 200
    abstract_model: str = "gpt-4o-mini"
    ai_max_chars: int = 20000

    # Remote processing backend (Supabase Edge Function)
    use_edge_functions: bool = False
    edge_function_url: Optional[str] = None
    edge_function_max_file_size: int = 5 * 1024 * 1024
    edge_function_timeout_seconds: float = 380.0  # 20s under the 400s platform limit
    edge_function_hard_timeout_seconds: float = 400.0

    # Concurrency
    max_concurrent_processing: int = 5
    queue_when_busy: bool = True
    stuck_document_threshold_minutes: float = 5.0

    # Chunking
    chunk_size: int = 500  # tokens
    chunk_overlap: int = 100
    chars_per_token: int = 4
    storage_insert_batch_size: int = 200

    # Uploads
    max_upload_bytes: int = 200 * 1024 * 1024
    max_text_length: int = 5_000_000

    # Server
    port: int = 8001
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def resolved_edge_function_url(self) -> str:
        if self.edge_function_url:
            return self.edge_function_url
        return f"{self.supabase_url.rstrip('/')}/functions/v1/process-document"


settings = Settings()
