"""Configuration module for the Reminder Bot backend.

This module provides configuration settings using Pydantic Settings.
Environment variables can be used to override default values.
"""

from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings for the Reminder Bot backend.

    All settings can be overridden via environment variables.
    Example: export DATABASE_URL="postgresql://..."
    """

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./reminder_bot.db"
    """Database connection URL. Default: SQLite file in current directory"""

    # API Server Configuration
    API_HOST: str = "0.0.0.0"
    """API server host address"""

    API_PORT: int = 8005
    """API server port"""

    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    """Dashboard origins allowed to call the API"""

    ADMIN_API_KEY: Optional[str] = None
    """Shared secret for admin endpoints (X-Admin-Key header). Unset disables them"""

    # MCP Server Configuration
    MCP_HOST: str = "127.0.0.1"
    """MCP server host address"""

    MCP_PORT: int = 8006
    """MCP server port for SSE transport (separate from REST API)"""

    MCP_TRANSPORT: str = "sse"
    """MCP transport type: 'stdio' for local, 'sse' for network access"""

    # Time Configuration
    TIMEZONE: str = "UTC"
    """Server-local timezone used to compute quota periods (month/day starts)"""

    DEFAULT_USER_TIMEZONE: str = "Asia/Kolkata"
    """Timezone assumed for chat users that do not send one"""

    # Reminder Configuration
    PENDING_PAGE_SIZE: int = 10
    """Maximum number of pending reminders shown in a chat listing"""

    DUE_BATCH_SIZE: int = 50
    """Maximum number of due reminders handed to the dispatcher per poll"""

    DEFAULT_BOT_NAME: str = "Milo Bot"
    """Display name used for new users"""

    # Natural-language parser
    PARSER_BACKEND: str = "auto"
    """'openai', 'rules', or 'auto' (openai when an API key is configured)"""

    OPENAI_API_KEY: Optional[str] = None
    """API key for the LLM parser backend"""

    OPENAI_MODEL: str = "gpt-4o-mini"
    """Model used to extract reminders from free text"""

    OPENAI_TIMEOUT: float = 30.0
    """Timeout in seconds for a single LLM call"""

    # Background Worker (dispatcher) Configuration
    WORKER_ENABLED: bool = True
    """Enable/disable the reference dispatcher"""

    WORKER_CHECK_INTERVAL: int = 60
    """Interval in seconds for polling due reminders (default: 60 seconds)"""

    WORKER_MAX_RETRIES: int = 3
    """Delivery attempts per reminder before it is marked failed"""

    TELEGRAM_BOT_TOKEN: Optional[str] = None
    """Bot token used to deliver Telegram reminders"""

    TELEGRAM_API_URL: str = "https://api.telegram.org"
    """Base URL of the Telegram Bot API"""

    WHATSAPP_API_URL: Optional[str] = None
    """Base URL of the WhatsApp gateway (POST {url}/messages)"""

    WHATSAPP_API_TOKEN: Optional[str] = None
    """Bearer token for the WhatsApp gateway"""

    # Logging
    LOG_LEVEL: str = "INFO"
    """Level applied to every component logger"""

    LOG_DIR: Optional[str] = None
    """Directory for component log files. Default: ./logs next to the sources"""

    LOG_TO_FILE: bool = True
    """Write rotating log files in addition to console output"""

    class Config:
        """Pydantic config"""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


# Global settings instance
settings = Settings()
