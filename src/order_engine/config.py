"""Configuration loading and validation."""

import os
from pathlib import Path
from typing import Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class FlowGeneratorConfig(BaseModel):
    """Defaults embedded into generated flows."""

    check_interval: float = Field(default=30.0, gt=0)
    default_receive_token: str = "USDC"
    default_chain_id: str = "base"
    flow_version: str = "1.0.0"


class EvaluatorConfig(BaseModel):
    """Condition evaluator configuration."""

    collect_details: bool = True


class StorageConfig(BaseModel):
    """Order table storage."""

    backend: Literal["memory", "sqlite"] = "sqlite"
    path: str = "order_engine.db"


class MonitoringConfig(BaseModel):
    """Logging and alerting configuration."""

    structured_logging: bool = False
    log_file: str | None = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    alert_webhooks: list[str] = Field(default_factory=list)
    alert_webhook_env: str = "ORDER_ENGINE_ALERT_WEBHOOK"

    def webhook_urls(self) -> list[str]:
        """Configured webhooks plus the one named by ``alert_webhook_env``, if set."""
        urls = list(self.alert_webhooks)
        from_env = os.environ.get(self.alert_webhook_env, "").strip()
        if from_env and from_env not in urls:
            urls.append(from_env)
        return urls


class EngineConfig(BaseModel):
    """Top-level order engine configuration."""

    auto_activate: bool = True
    flow_generator: FlowGeneratorConfig = Field(default_factory=FlowGeneratorConfig)
    evaluator: EvaluatorConfig = Field(default_factory=EvaluatorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


def load_config(path: Path) -> EngineConfig:
    """Load config from a YAML file."""
    load_dotenv(path.parent / ".env", override=False)
    return EngineConfig(**(yaml.safe_load(path.read_text()) or {}))
