"""
Configuration management for worktrack
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "worktrack"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite:///./worktrack.db"

    # Recurrence: when no due date is found within the scan window, return the
    # starting date (True) or report "no occurrence" (False)
    NEXT_DUE_FALLBACK_TO_FROM_DATE: bool = True

    # Blocking graph: accept edges that close a cycle (True) or reject them
    ALLOW_BLOCKING_CYCLES: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    return Settings()
