from datetime import timedelta
from typing import List, Optional

from pydantic import Field, PostgresDsn, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True
    )

    # 應用設定
    APP_NAME: str = "Equipment_Reservation_System"
    APP_ENV: str = "development"
    DEBUG: bool = True
    API_PREFIX: str = "/api"

    # 伺服器設定
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # 資料庫設定
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "equipment"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: str = "5432"
    DATABASE_URL: Optional[str] = Field(None, validate_default=True)

    @field_validator("DATABASE_URL", mode="before")
    def assemble_db_connection(cls, v: Optional[str], values: ValidationInfo) -> str:
        if isinstance(v, str) and v:
            return v
        return str(
            PostgresDsn.build(
                scheme="postgresql+asyncpg",
                username=values.data.get("POSTGRES_USER"),
                password=values.data.get("POSTGRES_PASSWORD") or None,
                host=values.data.get("POSTGRES_HOST"),
                port=int(values.data.get("POSTGRES_PORT") or 5432),
                path=values.data.get("POSTGRES_DB") or "",
            )
        )

    # JWT 設定
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS 設定
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]

    # 借用流程參數
    LATE_REQUEST_HOURS: int = 48
    CHECKOUT_EARLY_GRACE_MINUTES: int = 60
    UNAVAILABLE_DATES_HORIZON_DAYS: int = 90
    MAX_ITEMS_PER_REQUEST: int = 10
    # 同時擁有多個審核角色時，駁回歸屬依此順序判定
    REJECTION_ROLE_PRECEDENCE: List[str] = ["faculty", "staff"]
    SUMMARY_CACHE_TTL_SECONDS: int = 300

    @property
    def checkout_grace(self) -> timedelta:
        """核准開始時間前可提前借出的時間"""
        return timedelta(minutes=self.CHECKOUT_EARLY_GRACE_MINUTES)


settings = Settings()
