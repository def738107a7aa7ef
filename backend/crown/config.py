"""Application configuration."""
from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
    
    # App settings
    app_name: str = "Crown"
    debug: bool = False
    log_level: str = "INFO"
    api_prefix: str = "/api/v1"
    
    # Server settings
    host: str = "0.0.0.0"
    port: int = 3001
    
    # Database
    database_url: str = "sqlite+aiosqlite:///./data/crown.db"
    
    # Data directories
    data_dir: Path = Path("./data")
    
    # TikTok (third-party video platform)
    tiktok_client_key: str = ""
    tiktok_client_secret: str = ""
    tiktok_redirect_uri: str = "http://localhost:3001/api/v1/tiktok/auth/callback"
    tiktok_api_base: str = "https://open.tiktokapis.com"
    tiktok_authorize_url: str = "https://www.tiktok.com/v2/auth/authorize/"
    
    # Supabase (managed auth + object storage)
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    storage_bucket: str = "tiktok-videos"
    
    # Local storage, used when Supabase is not configured
    local_storage_dir: Path = Path("./data/storage")
    public_base_url: str = "http://localhost:3001/media"
    
    # Media pipeline bounds
    max_video_bytes: int = 100 * 1024 * 1024  # 100MB
    download_timeout_seconds: float = 300.0  # 5 minutes, wall clock
    page_fetch_timeout_seconds: float = 30.0
    storage_timeout_seconds: float = 120.0
    
    # OAuth / metadata API
    oauth_http_timeout_seconds: float = 15.0
    token_refresh_buffer_minutes: int = 5
    
    # Frontend
    frontend_url: str = "http://localhost:5173"

    @property
    def tiktok_configured(self) -> bool:
        return bool(self.tiktok_client_key and self.tiktok_client_secret)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key)


settings = Settings()

# Ensure directories exist
settings.data_dir.mkdir(parents=True, exist_ok=True)
