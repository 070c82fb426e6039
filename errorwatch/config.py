"""
Application configuration management.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    
    # Database
    database_url: str = "mysql+aiomysql://root:@localhost:3306/analytics"
    
    # Redis
    redis_url: str = "redis://localhost:6379/0"
    
    # Issue tracker
    github_api_url: str = "https://api.github.com"
    tracker_timeout_seconds: float = 10.0
    
    # Issue lifecycle windows
    noise_guard_hours: int = 24
    comment_cooldown_hours: int = 1
    reopen_window_days: int = 7
    stale_days: int = 7
    
    # Worker
    max_workers: int = 3
    max_job_attempts: int = 5
    job_retry_delay_seconds: float = 5.0
    sweep_interval_seconds: int = 3600
    recurrence_cooldown_seconds: int = 600
    
    # Application
    log_level: str = "INFO"
    
    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
