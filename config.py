import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    # Database settings
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "5"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "5"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "15"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "10.0"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "LibraryMan API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")

    @property
    def allowed_origins(self) -> list:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
