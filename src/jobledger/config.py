from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "jobledger"
    app_env: str = "development"
    app_host: str = "127.0.0.1"
    app_port: int = 8788
    log_level: str = "INFO"

    database_url: str = "sqlite:///./data/jobledger.db"
    data_dir: Path = Path("./data")
    resume_dir: Path = Path("./data/resumes")

    supported_file_types: str = ".pdf,.doc,.docx,.txt,.rtf"
    max_upload_bytes: int = 10 * 1024 * 1024
    keep_original_default: bool = True

    similarity_threshold: float = 0.8
    auto_merge_threshold: float = 0.95
    dedup_token_weight: float = 0.7
    dedup_company_bonus: float = 0.15
    dedup_role_bonus: float = 0.15
    dedup_comparison_fields: str = "text,company,role"

    bulk_import_match_threshold: float = 0.5
    bulk_import_recursive: bool = False

    max_conflict_retries: int = 3
    lock_timeout_sec: float = 10.0
    operation_log_retention: int = 500
    merge_history_retention: int = 100
    followup_days: int = 7
    default_session_id: str = "local"
    fetch_timeout_sec: int = 30

    cors_origins: str = "http://127.0.0.1:8788"

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, value: str) -> str:
        allowed = {"development", "staging", "production", "test"}
        if value not in allowed:
            raise ValueError(f"app_env must be one of {sorted(allowed)}")
        return value

    @field_validator(
        "similarity_threshold",
        "auto_merge_threshold",
        "dedup_token_weight",
        "dedup_company_bonus",
        "dedup_role_bonus",
        "bulk_import_match_threshold",
    )
    @classmethod
    def validate_unit_interval(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("value must be between 0 and 1")
        return value

    @field_validator("max_conflict_retries", "operation_log_retention", "merge_history_retention")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be at least 1")
        return value

    @field_validator("dedup_comparison_fields")
    @classmethod
    def validate_comparison_fields(cls, value: str) -> str:
        fields = {item.strip() for item in value.split(",") if item.strip()}
        unknown = fields - {"text", "company", "role"}
        if unknown:
            raise ValueError(f"unknown comparison fields {sorted(unknown)}")
        return value

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def supported_extensions(self) -> set[str]:
        extensions = set()
        for item in self.supported_file_types.split(","):
            item = item.strip().lower()
            if not item:
                continue
            extensions.add(item if item.startswith(".") else f".{item}")
        return extensions

    @property
    def comparison_field_set(self) -> set[str]:
        return {item.strip() for item in self.dedup_comparison_fields.split(",") if item.strip()}

    @property
    def trash_dir(self) -> Path:
        return self.resume_dir / ".trash"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
