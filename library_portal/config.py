import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # Hosted backend
    supabase_url: str = os.getenv("SUPABASE_URL", "http://localhost:54321")
    supabase_anon_key: str = os.getenv("SUPABASE_ANON_KEY", "")
    # Server-side calls may use the service key instead of the anon key
    supabase_service_key: Optional[str] = os.getenv("SUPABASE_SERVICE_KEY")
    backend_timeout: float = float(os.getenv("BACKEND_TIMEOUT", "10"))

    # API
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Application
    app_name: str = os.getenv("APP_NAME", "图书管理系统")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Borrowing
    default_borrow_days: int = int(os.getenv("DEFAULT_BORROW_DAYS", "30"))

    # Permission matrix is only kept on the local machine
    permissions_file: str = os.getenv(
        "PERMISSIONS_FILE",
        os.path.join(os.path.expanduser("~"), ".library-portal", "permissions.json"),
    )

    @property
    def api_key(self) -> str:
        """Key sent as ``apikey`` to the hosted backend."""
        return self.supabase_service_key or self.supabase_anon_key


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the configured log level to the root logger."""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
