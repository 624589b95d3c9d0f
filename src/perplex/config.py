"""
Configuration settings for the Perplex chat streaming service
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra environment variables
    )

    # Service configuration
    port: int = Field(default=8000, description="Service port")
    host: str = Field(default="0.0.0.0", description="Service host")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Environment")

    # Redis configuration (conversations, spaces, search history)
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )

    # JWT configuration
    jwt_secret_key: str = Field(
        default="your-secret-key-change-in-production",
        description="JWT secret key"
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_hours: int = Field(default=24, description="Access token lifetime")

    # Model backend
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API key")
    openai_base_url: Optional[str] = Field(default=None, description="Override OpenAI base URL")
    quick_model: str = Field(default="gpt-5-mini", description="Model used for quick mode")
    think_model: str = Field(default="gpt-5", description="Model used for think mode")
    research_model: str = Field(default="gpt-5", description="Model used for research mode")
    vision_model: str = Field(
        default="gpt-5-mini",
        description="Model used in quick mode when an image is attached"
    )
    image_model: str = Field(default="gpt-image-1", description="Image generation model")
    max_output_tokens: int = Field(default=4000, description="Max completion tokens per model pass")

    # Web search
    tavily_api_key: Optional[str] = Field(default=None, description="Tavily API key")
    tavily_api_url: str = Field(
        default="https://api.tavily.com/search",
        description="Tavily search endpoint"
    )
    search_max_results: int = Field(default=5, description="Results requested per web search")
    search_timeout_seconds: float = Field(default=15.0, description="Web search timeout")

    # Durable storage
    cloudinary_cloud_name: Optional[str] = Field(default=None, description="Cloudinary cloud name")
    cloudinary_api_key: Optional[str] = Field(default=None, description="Cloudinary API key")
    cloudinary_api_secret: Optional[str] = Field(default=None, description="Cloudinary API secret")
    upload_folder: str = Field(default="perplex/uploads", description="Folder for user attachments")
    generated_folder: str = Field(default="perplex/generated", description="Folder for generated media")

    # Streaming and context
    keepalive_interval_seconds: float = Field(
        default=15.0,
        description="Seconds between keep-alive frames on an open stream"
    )
    quick_history_window: int = Field(default=10, description="Prior turns sent in quick mode")
    deep_history_window: int = Field(default=20, description="Prior turns sent in think/research mode")
    max_prompt_length: int = Field(default=4000, description="Maximum prompt length")
    max_image_bytes: int = Field(default=10 * 1024 * 1024, description="Maximum image attachment size")
    max_document_chars: int = Field(default=100000, description="Maximum extracted document length")

    # Logging configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format (json or console)")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
