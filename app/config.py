"""
Application configuration using Pydantic settings.
"""
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Grouping Service Configuration
    grouping_api_base_url: str = Field(
        default="https://api.example.com/api",
        description="Base URL for the external grouping service"
    )
    grouping_api_key: str = Field(
        default="",
        description="Bearer token for the grouping service"
    )
    grouping_api_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for grouping service calls"
    )

    # Retry Configuration
    max_retry_attempts: int = Field(
        default=3,
        description="Maximum number of retry attempts for API calls"
    )
    retry_backoff_multiplier: int = Field(
        default=1,
        description="Multiplier for exponential backoff"
    )
    retry_min_wait: int = Field(
        default=4,
        description="Minimum wait time in seconds between retries"
    )
    retry_max_wait: int = Field(
        default=10,
        description="Maximum wait time in seconds between retries"
    )

    # Validation Rules
    min_viable_plots: int = Field(
        default=3,
        description="Groups with fewer plots (but at least one) get a warning"
    )
    min_group_area_ha: float = Field(
        default=5.0,
        description="Groups with a positive area below this get a warning"
    )

    # Map Rendering
    map_valid_min_lng: float = Field(
        default=102.0,
        description="Western edge of the coordinate sanity window"
    )
    map_valid_max_lng: float = Field(
        default=110.0,
        description="Eastern edge of the coordinate sanity window"
    )
    map_valid_min_lat: float = Field(
        default=8.0,
        description="Southern edge of the coordinate sanity window"
    )
    map_valid_max_lat: float = Field(
        default=24.0,
        description="Northern edge of the coordinate sanity window"
    )
    map_default_center_lng: float = Field(
        default=106.6297,
        description="Longitude used when no valid coordinate is available"
    )
    map_default_center_lat: float = Field(
        default=10.8231,
        description="Latitude used when no valid coordinate is available"
    )
    map_default_zoom: float = Field(
        default=12.0,
        description="Zoom used together with the default center"
    )
    map_fit_padding: int = Field(
        default=80,
        description="Viewport padding in pixels when fitting bounds"
    )
    map_fit_min_zoom: float = Field(default=10.0)
    map_fit_max_zoom: float = Field(default=15.0)
    map_animation_ms: int = Field(
        default=1000,
        description="Camera animation duration in milliseconds"
    )
    group_palette: list[str] = Field(
        default=["#10B981", "#3B82F6", "#8B5CF6", "#F59E0B", "#EC4899", "#14B8A6"],
        description="Group colors, cycled by assignment order"
    )
    ungrouped_color: str = Field(
        default="#F97316",
        description="Fill and border color for ungrouped plots"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    # CORS Configuration
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins (use specific origins in production)"
    )

    # Rate Limiting
    rate_limit_requests: int = Field(
        default=100,
        description="Maximum requests per minute per client"
    )

    # Application Settings
    app_name: str = Field(
        default="Group Formation Preview Service",
        description="Application name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    debug: bool = Field(
        default=False,
        description="Debug mode"
    )

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
