"""Application configuration loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_DEBUG: bool = True

    BACKEND_HOST: str = "0.0.0.0"
    BACKEND_PORT: int = 8000

    # Reasoning service (OpenAI-compatible Gemini endpoint)
    GEMINI_API_KEY: str = ""
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta/openai"
    GEMINI_MODEL_PRO: str = "gemini-2.5-pro"      # architect, QA lead
    GEMINI_MODEL_FLASH: str = "gemini-2.5-flash"  # tester, fixer
    LLM_TIMEOUT: float = 120.0
    ANALYSIS_CHAR_LIMIT: int = 70000

    # Cycle bounds and pacing
    MAX_CYCLES: int = 3
    TASK_DELAY_S: float = 0.2
    REGRESSION_DELAY_S: float = 1.5

    # Local persistence
    STATE_DIR: str = "shared/data"
    STORAGE_KEY: str = "QA_APP_STATE_V1"
    SESSION_ID_PREFIX: str = "qa_session_"
    PERSIST_DEBOUNCE_S: float = 1.0

    # Blob storage for cycle archives and exports
    CLOUDINARY_CLOUD_NAME: str = ""
    CLOUDINARY_UPLOAD_PRESET: str = ""
    ARCHIVE_DIR: str = ""   # local fallback when no Cloudinary account is set

    GITHUB_TOKEN: str = ""
    GITHUB_MAX_FILES: int = 40

    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "shared/logs/app.log"

    class Config:
        env_file = (".env", "../.env")
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
