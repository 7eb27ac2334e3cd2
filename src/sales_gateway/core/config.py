"""
Gateway configuration loading.

Reads a JSON config file (written with defaults on first run) and overlays
environment variables, loaded from .env via python-dotenv.
"""
import json
import logging
import os
from pathlib import Path
from typing import Optional, Union

from dotenv import load_dotenv

from sales_gateway.core.models import GatewayConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config") / "gateway_config.json"

# env var -> config field
ENV_OVERRIDES = {
    "DATABASE_URL": "database_url",
    "GATEWAY_WEBHOOK_URL": "webhook_url",
    "REPLY_ENGINE_URL": "reply_engine_url",
    "GATEWAY_INSTANCES_ROOT": "instances_root",
    "TELEGRAM_API_ID": "telegram_api_id",
    "TELEGRAM_API_HASH": "telegram_api_hash",
}


def load_config(path: Optional[Union[str, Path]] = None, write_default: bool = True) -> GatewayConfig:
    """
    Load gateway configuration.

    Args:
        path: JSON config file. Defaults to config/gateway_config.json.
        write_default: Create the file with default values if it is missing.

    Returns:
        GatewayConfig with environment overrides applied.
    """
    load_dotenv()
    config_file = Path(path) if path else DEFAULT_CONFIG_FILE

    data: dict = {}
    if config_file.exists():
        with open(config_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
        logger.debug(f"Loaded config from {config_file}")
    elif write_default:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, 'w', encoding='utf-8') as f:
            json.dump(GatewayConfig().model_dump(), f, indent=2, ensure_ascii=False)
        logger.info(f"Wrote default config to {config_file}")

    for env_name, field in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            data[field] = value

    return GatewayConfig(**data)
