from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    # MongoDB connection; both unset means the in-memory store is used
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: Optional[str] = None

    # Logging
    LOG_LEVEL: str = "INFO"

    # Swipe batches
    DEFAULT_BATCH_SIZE: int = 10
    MAX_BATCH_SIZE: int = 50

    # Investments
    EQUITY_DECIMALS: int = 2
    COMPENSATE_ON_CANCEL: bool = False
    # Attempts per transaction; N concurrent writers to one record need up to N
    TRANSACTION_MAX_RETRIES: int = 20

    # Server
    PORT: int = 8000
    ALLOWED_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")


def get_settings(**overrides) -> Settings:
    return Settings(**overrides)
