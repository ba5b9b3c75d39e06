from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite+aiosqlite:///./school_records.db", alias="DATABASE_URL")
    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Document store limits
    store_max_batch_ops: int = Field(500, alias="STORE_MAX_BATCH_OPS")
    store_in_filter_limit: int = Field(10, alias="STORE_IN_FILTER_LIMIT")
    transaction_max_attempts: int = Field(5, alias="TRANSACTION_MAX_ATTEMPTS")

    # Batch executor chunk size; kept under the store ceiling so a progress write fits in the same commit
    batch_chunk_size: int = Field(400, alias="BATCH_CHUNK_SIZE")

    result_approval_max_attempts: int = Field(3, alias="RESULT_APPROVAL_MAX_ATTEMPTS")
    ca_max_score: int = Field(40, alias="CA_MAX_SCORE")
    exam_max_score: int = Field(60, alias="EXAM_MAX_SCORE")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True


settings = Settings()
