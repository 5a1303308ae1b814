from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "Navbat Queue"
    host: str = "0.0.0.0"
    port: int = 8000

    log_level: str = "INFO"
    log_to_console: bool = True
    log_file: str = "logs/navbat_queue.log"

    missed_threshold: int = Field(default=5, ge=0, le=1000)
    eta_window_size: int = Field(default=6, ge=2, le=100)
    eta_min_samples: int = Field(default=3, ge=1, le=99)
    eta_min_interval_seconds: float = Field(default=5.0, ge=0.0)
    eta_max_interval_seconds: float = Field(default=3 * 60 * 60.0, gt=0.0)

    tx_max_attempts: int = Field(default=3, ge=1, le=20)
    tx_retry_backoff_seconds: float = Field(default=0.05, ge=0.0, le=5.0)
    tx_lock_timeout_seconds: float = Field(default=5.0, ge=0.1, le=120.0)

    metadata_max_fields: int = Field(default=16, ge=1, le=256)
    metadata_max_value_length: int = Field(default=256, ge=1, le=10000)

    storage_backend: str = Field(default="memory", pattern="^(memory|sqlserver)$")
    sql_server: str = "localhost"
    sql_port: int = 1433
    sql_database: str = "navbat"
    sql_user: str = "sa"
    sql_password: str = ""
    sql_driver: str = "ODBC Driver 18 for SQL Server"
    sql_trust_server_certificate: bool = True
    sql_schema: str = "dbo"
    counters_table: str = "org_counters"
    tickets_table: str = "tickets"
    sql_max_concurrent_queries: int = Field(default=4, ge=1, le=64)
    sql_query_timeout_seconds: int = Field(default=30, ge=1, le=600)
    log_sql_preview_chars: int = Field(default=240, ge=20, le=10000)

    catalog_file: str = "geo.json"
    event_queue_size: int = Field(default=1000, ge=10, le=100000)

    def build_odbc_dsn(self, driver: str | None = None) -> str:
        selected_driver = (driver or self.sql_driver).strip()
        dsn = (
            f"DRIVER={{{selected_driver}}};"
            f"SERVER={self.sql_server},{self.sql_port};"
            f"DATABASE={self.sql_database};"
            f"UID={self.sql_user};"
            f"PWD={self.sql_password};"
        )
        if "ODBC Driver" in selected_driver and "SQL Server" in selected_driver:
            trust = "yes" if self.sql_trust_server_certificate else "no"
            dsn += f"TrustServerCertificate={trust};"
        return dsn


settings = Settings()
