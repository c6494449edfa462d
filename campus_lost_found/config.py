import os
import secrets
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

logger = logging.getLogger(__name__)

# 初回起動時に投入する既定カテゴリ
DEFAULT_CATEGORIES = (
    "Electronics",
    "Books & Stationery",
    "Clothing & Accessories",
    "Bags & Backpacks",
    "Keys & Cards",
    "Sports Equipment",
    "Jewelry & Watches",
    "Documents",
    "Other",
)

# (場所名, 建物名)
DEFAULT_LOCATIONS = (
    ("Main Library", "Library Building"),
    ("Computer Lab 1", "CS Building"),
    ("Computer Lab 2", "CS Building"),
    ("Cafeteria", "Student Center"),
    ("Gym/Sports Complex", "Sports Building"),
    ("Student Center", "Student Center"),
    ("Lecture Hall A", "Academic Building"),
    ("Lecture Hall B", "Academic Building"),
    ("Parking Lot", "Outdoor"),
    ("Dormitory", "Residential"),
    ("Admin Building", "Administration"),
    ("Other", "Various"),
)


@dataclass(frozen=True)
class Settings:
    """アプリケーション設定。起動時に一度だけ構築し、依存性注入で渡す"""
    database_url: str = "sqlite:///./campus_lost_found.db"
    secret_key: str = ""
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 7 * 24 * 60
    storage_root: str = "static"
    max_image_size: int = 5 * 1024 * 1024
    max_proof_size: int = 10 * 1024 * 1024
    max_images: int = 5
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)
    log_dir: str = "logs"
    # limits形式（"100 per 15 minutes"）。IPアドレス単位
    rate_limit_enabled: bool = True
    default_rate_limit: str = "100 per 15 minutes"
    auth_rate_limit: str = "5 per 15 minutes"
    default_categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    default_locations: Tuple[Tuple[str, str], ...] = field(default=DEFAULT_LOCATIONS)

    @property
    def upload_dir(self) -> str:
        return os.path.join(self.storage_root, "uploads")

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から設定を読み込む"""
        database_url = os.getenv("DATABASE_URL", cls.database_url)
        # Heroku形式のURLをSQLAlchemyが受け付ける形式に変換
        if database_url.startswith("postgres://"):
            database_url = database_url.replace("postgres://", "postgresql://", 1)

        secret_key = os.getenv("SECRET_KEY")
        if not secret_key:
            logger.warning("SECRET_KEY is not set; issued tokens will not survive a restart")
            secret_key = secrets.token_urlsafe(32)

        origins = os.getenv("CORS_ORIGINS")
        cors_origins = tuple(o.strip() for o in origins.split(",") if o.strip()) if origins else cls.cors_origins

        return cls(
            database_url=database_url,
            secret_key=secret_key,
            access_token_expire_minutes=int(
                os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", cls.access_token_expire_minutes)
            ),
            storage_root=os.getenv("STORAGE_ROOT", cls.storage_root),
            max_image_size=int(os.getenv("MAX_IMAGE_SIZE", cls.max_image_size)),
            max_proof_size=int(os.getenv("MAX_PROOF_SIZE", cls.max_proof_size)),
            max_images=int(os.getenv("MAX_IMAGES", cls.max_images)),
            cors_origins=cors_origins,
            log_dir=os.getenv("LOG_DIR", cls.log_dir),
            rate_limit_enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() not in ("0", "false", "no"),
            default_rate_limit=os.getenv("DEFAULT_RATE_LIMIT", cls.default_rate_limit),
            auth_rate_limit=os.getenv("AUTH_RATE_LIMIT", cls.auth_rate_limit),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
