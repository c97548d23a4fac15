"""Application configuration.

Settings are read from environment variables (and an optional .env file)
through pydantic-settings. Import the module-level ``settings`` singleton
rather than instantiating ``Settings`` directly.
"""

from enum import Enum
from typing import (
    Dict,
    List,
    Optional,
)

from pydantic_settings import (
    BaseSettings,
    SettingsConfigDict,
)


class Environment(str, Enum):
    """Application environment types."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class Settings(BaseSettings):
    """Application settings loaded from the environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=True,
    )

    # Application
    PROJECT_NAME: str = "FlowSearch Workflows"
    VERSION: str = "0.1.0"
    DESCRIPTION: str = "Asynchronous research workflow engine"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Environment = Environment.DEVELOPMENT
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./flowsearch.db"
    DB_ECHO: bool = False

    # Auth (bearer tokens issued by the identity provider)
    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # LLM
    OPENAI_API_KEY: str = ""
    OPENAI_API_BASE: Optional[str] = None
    DEFAULT_LLM_MODEL: str = "gpt-4o-mini"
    DEFAULT_LLM_TEMPERATURE: float = 0.3
    MAX_TOKENS: int = 4000
    IMAGE_MODEL: str = "gpt-image-1"

    # Langfuse tracing
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""

    # Search providers
    SERPAPI_API_KEY: str = ""
    GITHUB_TOKEN: str = ""
    PEXELS_API_KEY: str = ""
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Workflow engine
    WORKFLOW_PLANNER: str = "llm"
    TEMPLATE_MATCH_THRESHOLD: float = 0.5
    STEP_TRANSIENT_RETRIES: int = 0
    STEP_RETRY_BACKOFF_SECONDS: float = 1.0
    REPORT_MAX_DATA_CHARS: int = 14000

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: List[str] = ["200 per day", "50 per hour"]
    RATE_LIMIT_ENDPOINTS: Dict[str, List[str]] = {
        "workflow_execute": ["10 per minute"],
        "workflow_read": ["60 per minute"],
        "workflow_control": ["20 per minute"],
        "reports": ["60 per minute"],
        "health": ["20 per minute"],
    }

    @property
    def llm_configured(self) -> bool:
        """Whether an LLM API key is available."""
        return bool(self.OPENAI_API_KEY)

    @property
    def langfuse_configured(self) -> bool:
        """Whether Langfuse tracing credentials are available."""
        return bool(self.LANGFUSE_PUBLIC_KEY and self.LANGFUSE_SECRET_KEY)


settings = Settings()
