"""
Library configuration using Pydantic Settings.

Values are read from environment variables prefixed with ``XELHUA_`` and
from a local ``.env`` file.
"""

from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """xelhua settings loaded from environment variables."""
    
    # Cell formatting defaults
    DEFAULT_DATE_FORMAT: str = "yyyy-mm-dd"
    DEFAULT_DATETIME_FORMAT: str = "yyyy-mm-dd hh:mm:ss"
    
    # Column sizing
    AUTO_WIDTH_PADDING: float = 2.0
    MAX_COLUMN_WIDTH: float = 255.0
    
    # Formula Evaluation Settings
    TOLERANCE: float = 1e-6
    MAX_CIRCULAR_ITERATIONS: int = 100
    CONVERGENCE_THRESHOLD: float = 1e-6
    ITERATIVE_CALCULATION: bool = True
    MAX_RANGE_CELLS: int = 1_000_000
    
    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    
    class Config:
        env_prefix = "XELHUA_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    
    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()
