from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONFLICT_RETRIES,
    DEFAULT_FALLBACK_MESSAGE,
    DEFAULT_GRAPH_CACHE_TTL,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_MAX_STEPS_PER_MESSAGE,
    DEFAULT_NO_WORKFLOW_MESSAGE,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_SEND_ATTEMPTS,
    ZAPI_DEFAULT_URL,
)


class ZApiConfig(BaseModel):
    """Credentials for a Z-API instance."""

    instance_id: str = ""
    token: str = ""
    client_token: Optional[str] = None
    api_url: str = ZAPI_DEFAULT_URL
    webhook_url: Optional[str] = None


class EvolutionConfig(BaseModel):
    """Credentials for an Evolution API instance."""

    instance_name: str = ""
    api_key: str = ""
    api_url: str = "http://localhost:8080"
    webhook_url: Optional[str] = None


class ProviderConfig(BaseModel):
    """Messaging provider selection and settings."""

    backend: str = "inmemory"
    timeout: float = DEFAULT_HTTP_TIMEOUT
    zapi: ZApiConfig = Field(default_factory=ZApiConfig)
    evolution: EvolutionConfig = Field(default_factory=EvolutionConfig)


class RouterConfig(BaseModel):
    """How inbound messages are turned into workflow steps."""

    default_workflow_id: Optional[str] = None
    fallback_message: str = DEFAULT_FALLBACK_MESSAGE
    no_workflow_message: str = DEFAULT_NO_WORKFLOW_MESSAGE
    send_attempts: int = DEFAULT_SEND_ATTEMPTS
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    conflict_retries: int = DEFAULT_CONFLICT_RETRIES
    auto_advance: bool = True
    max_steps_per_message: int = DEFAULT_MAX_STEPS_PER_MESSAGE


class EngineConfig(BaseModel):
    graph_cache_ttl: float = DEFAULT_GRAPH_CACHE_TTL


class ZapflowConfig(BaseModel):
    """Top-level configuration model."""

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    database_url: Optional[str] = None
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


def load_config(path: Optional[str] = None) -> ZapflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to ZAPFLOW_CONFIG env
            variable or 'zapflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("ZAPFLOW_CONFIG", DEFAULT_CONFIG_PATH)
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ZapflowConfig(**data)
    else:
        config = ZapflowConfig()

    env_db_url = os.getenv("ZAPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_provider = os.getenv("ZAPFLOW_PROVIDER")
    if env_provider:
        config.provider.backend = env_provider
    env_workflow = os.getenv("ZAPFLOW_DEFAULT_WORKFLOW")
    if env_workflow:
        config.router.default_workflow_id = env_workflow
    env_level = os.getenv("ZAPFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level.upper()
    return config
