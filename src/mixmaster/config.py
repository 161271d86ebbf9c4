from __future__ import annotations
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parents[2]
DATA_DIR = BASE_DIR / "data"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


class Settings:
    """Process configuration, read from the environment (and .env) once."""

    def __init__(self) -> None:
        self.database_type: str = os.getenv("DATABASE_TYPE", "sqlite").strip().lower()
        self.database_url: str = os.getenv(
            "DATABASE_URL",
            f"sqlite+aiosqlite:///{(DATA_DIR / 'recipes.db').as_posix()}",
        )
        self.cosmos_connection_string: str = os.getenv("COSMOS_CONNECTION_STRING", "")
        self.cosmos_database: str = os.getenv("COSMOS_DATABASE", "drinks")

        self.ollama_url: str = os.getenv("OLLAMA_URL", "http://localhost:11434/api/chat")
        self.chat_model: str = os.getenv("CHAT_MODEL", "llama3.1")
        # suggest tags with the model when a recipe is saved over HTTP without any
        self.auto_tag_recipes: bool = os.getenv("AUTO_TAG_RECIPES", "true").strip().lower() in ("1", "true", "yes")

        self.api_key: str = os.getenv("API_KEY", "")
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
        self.host: str = os.getenv("HOST", "0.0.0.0")
        self.port: int = int(os.getenv("PORT", "8000"))


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
