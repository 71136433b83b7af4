import os
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ENV_PREFIX = "PORTWATCH_"
DATA_DIR = Path(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))) / "data"


class Settings(BaseModel):
    """
    Runtime configuration. Defaults < YAML file (PORTWATCH_CONFIG) < PORTWATCH_* env vars.
    """
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    log_file: Optional[str] = None

    # Scheduler (seconds)
    update_interval: float = 10.0
    heartbeat_interval: float = 30.0
    # Push channel liveness: protocol pings from uvicorn, optional idle cut-off in seconds
    ws_ping_timeout: float = 30.0
    idle_timeout: Optional[float] = None
    shutdown_deadline: float = 10.0
    slow_tick_warning: float = 1.0

    # Socket-table reader
    port_commands: List[List[str]] = [["ss", "-tulpn"], ["netstat", "-tulpn"]]
    connection_commands: List[List[str]] = [["ss", "-tan", "state", "established"], ["netstat", "-tan"]]
    command_timeout: float = 5.0
    cache_ttl: float = 5.0

    # Container runtime
    docker_binary: str = "docker"
    docker_timeout: float = 5.0

    # Anomaly detector
    scan_threshold: int = 10
    scan_recency_seconds: float = 60.0
    scan_horizon_seconds: float = 300.0

    # Storage
    db_path: str = str(DATA_DIR / "portwatch.db")
    whitelist_path: str = str(DATA_DIR / "whitelist.json")
    retention_days: int = 30
    persist_queue_size: int = 100

    # "module:callable" mapping an ip to {"country", "city"}
    geo_lookup: Optional[str] = None

    @property
    def database_url(self) -> str:
        return f"sqlite:///{self.db_path}"


def _update_nested_dict(d: Dict, u: Dict) -> None:
    for k, v in u.items():
        if isinstance(v, dict) and isinstance(d.get(k), dict):
            _update_nested_dict(d[k], v)
        else:
            d[k] = v


def _load_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config from {path}: {e}")
        logger.info("Using default configuration")
        return {}
    return data if isinstance(data, dict) else {}


def _load_env(environ) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in Settings.model_fields:
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None:
            continue
        if name in ("port_commands", "connection_commands"):
            # "ss -tulpn;netstat -tulpn"
            values[name] = [cmd.split() for cmd in raw.split(";") if cmd.strip()]
        else:
            values[name] = raw
    return values


def load_settings(config_path: Optional[str] = None, environ=None) -> Settings:
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    config_path = config_path or environ.get(ENV_PREFIX + "CONFIG")
    if config_path and os.path.exists(config_path):
        _update_nested_dict(data, _load_yaml(config_path))

    _update_nested_dict(data, _load_env(environ))
    return Settings(**data)


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
