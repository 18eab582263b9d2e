"""
Configuration — Pydantic v2 Settings (env / .env)
=================================================

Purpose
-------
Strongly-typed application configuration for the HistoryLab chat backend:
- Pydantic v2 `BaseSettings` for environment-driven values
- `pydantic-settings` v2 for `.env` loading

Load Order & Behavior
---------------------
- Values are read from the environment; if not present, `.env` is used.
- Missing required fields raise a validation error at import time.
- `extra="ignore"`: unknown env vars are ignored.
- Credentials for the database are optional so that a file-based or in-memory
  SQLite database (``DB_DRIVER_NAME=sqlite``) can be used for local runs.

Usage
-----
from historylab.database.config.config import settings

collection = settings.DEFAULT_COLLECTION_ID
model_name = settings.OPEN_AI_MODEL
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application configuration settings loaded from environment variables
    or a `.env` file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    FRONTEND_URL: str = Field(..., description="Base URL of the frontend client application (CORS origin).")
    DB_DRIVER_NAME: str = Field(..., description="Database driver (e.g., `postgresql+psycopg2`, `sqlite`).")
    DB_DATABASE_NAME: str = Field(..., description="Database name, or file path / `:memory:` for SQLite.")
    DB_USERNAME: Optional[str] = Field(None, description="Database username credential.")
    DB_PASSWORD: Optional[str] = Field(None, description="Database password credential.")
    DB_HOST: Optional[str] = Field(None, description="Hostname or IP address of the database server.")
    API_KEY: str = Field(..., description="OpenAI API key used by the chat model and the embeddings.")
    OPEN_AI_MODEL: str = Field("gpt-4o-2024-11-20", description="OpenAI chat model name.")
    SECRET_KEY: str = Field(..., description="Secret key for signing JWT tokens.")
    ALGORITHM: str = Field("HS256", description="JWT signing algorithm.")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(60, description="Duration (in minutes) before access tokens expire.")
    INIT_MODE: str = Field(..., description="Initialization mode; `runtime` builds the model, search and storage clients at startup.")
    AWS_ACCESS_KEY: Optional[str] = Field(None, description="AWS access key ID.")
    AWS_SECRET_KEY: Optional[str] = Field(None, description="AWS secret access key.")
    REGION: str = Field("us-east-1", description="AWS region name.")
    BUCKET_NAME: str = Field("historylab-documents", description="S3 bucket holding the archive's document text.")
    DEFAULT_COLLECTION_ID: str = Field(
        "80650a98-fe49-429a-afbd-9dde66e2d02b",
        description="Document collection searched by default and used when a conversation id cannot be decoded.",
    )
    DOC_VIEWER_URL: str = Field("https://doc-viewer.ramus.network", description="Base URL of the document viewer used in citations.")
    VECTOR_INDEX_DIR: str = Field("indexes/history_lab", description="Directory of the persisted LlamaIndex vector store.")
    SEARCH_TOP_K: int = Field(5, description="Number of chunks requested per search call.")
    MAX_STEPS: int = Field(10, description="Maximum number of sequential model/tool iterations per turn.")
    LOG_LEVEL: str = Field("INFO", description="Root logging level.")


# Singleton instance of Settings, imported across the app
settings = Settings()
