import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


@dataclass
class Settings:
    data_dir: Path = Path(os.getenv("TAVERN_DATA_DIR", str(BASE_DIR / "tmp" / "library")))
    export_keyword: str = os.getenv("TAVERN_EXPORT_KEYWORD", "chara")
    avatar_timeout: float = float(os.getenv("TAVERN_AVATAR_TIMEOUT", "30"))
    default_avatar_url: str = os.getenv(
        "TAVERN_DEFAULT_AVATAR_URL", "https://picsum.photos/seed/{id}/400/400"
    )
    log_level: str = os.getenv("TAVERN_LOG_LEVEL", "INFO").upper()
    host: str = os.getenv("TAVERN_HOST", "127.0.0.1")
    port: int = int(os.getenv("TAVERN_PORT", "8000"))


@lru_cache()
def get_settings() -> Settings:
    return Settings()
