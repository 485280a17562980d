"""应用配置。所有环境变量集中管理。"""
from __future__ import annotations
from datetime import timedelta

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from node_planner.common.timeutil import parse_duration


class Settings(BaseSettings):
    # === App ===
    app_env: str = "development"
    log_level: str = "INFO"

    # === Database ===
    database_url: str = "sqlite+aiosqlite:///data/planner.db"
    sql_echo: bool = False

    # === Planning ===
    minimum_duration: timedelta = timedelta(minutes=15)
    maximum_duration: timedelta = timedelta(hours=1)
    time_lag: timedelta = timedelta(minutes=15)

    # === Scheduler ===
    monitor_interval: timedelta = timedelta(seconds=60)
    import_interval: timedelta = timedelta(hours=1)

    # === Ingestion ===
    incoming_dir: str = "data/incoming"
    imported_dir: str = "data/imported"
    failed_dir: str = "data/failed"

    # === Provisioning ===
    provider_backend: str = "http"  # http | simulated
    provider_url: str = "http://127.0.0.1:7465/v1"
    provider_api_key: str = ""
    payment_network: str = "holesky"
    runtime_name: str = "salad"
    image_tag: str = "golem/alpine:latest"
    max_start_price: float = 0.0
    max_cpu_per_hour_price: float = 1.0
    max_env_per_hour_price: float = 0.0
    provider_timeout_seconds: float = 30.0
    run_timeout_factor: float = 1.05

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator(
        "minimum_duration", "maximum_duration", "time_lag",
        "monitor_interval", "import_interval",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value):
        return parse_duration(value)

    @model_validator(mode="after")
    def _check_durations(self) -> "Settings":
        if self.minimum_duration <= timedelta(0):
            raise ValueError("minimum_duration must be positive")
        if self.maximum_duration < self.minimum_duration:
            raise ValueError("maximum_duration must not be shorter than minimum_duration")
        if self.time_lag < timedelta(0):
            raise ValueError("time_lag must not be negative")
        if self.monitor_interval <= timedelta(0) or self.import_interval <= timedelta(0):
            raise ValueError("scheduler intervals must be positive")
        if self.run_timeout_factor < 1.0:
            raise ValueError("run_timeout_factor must be >= 1.0")
        return self


settings = Settings()
