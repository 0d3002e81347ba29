"""
Configuration module for the chainlink registry supervisor.

This module loads and provides access to all configuration settings,
including environment variables, the discovery store connection, the indexer
apps being supervised and chain information.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

# Load environment variables
load_dotenv(override=True)

# Discovery store configuration
DATABASE_URL = os.getenv("DATABASE_URL", "registry_flags.db")
FLAGS_SCHEMA = "chainlink_registry_flags"
DISCOVERY_TABLE = os.getenv("DISCOVERY_TABLE")

# Upstream RPC key handed to the indexers
DRPC_API_KEY = os.getenv("DRPC_API_KEY")

# Indexer apps
FLAGS_API_URL = os.getenv("FLAGS_API_URL", "http://localhost:42069")
AGGREGATORS_API_URL = os.getenv("AGGREGATORS_API_URL", "http://localhost:42070")
FLAGS_APP_PATH = os.getenv("FLAGS_APP_PATH", "../chainlink-flags-indexer")
AGGREGATORS_APP_PATH = os.getenv(
    "AGGREGATORS_APP_PATH", "../chainlink-aggregators-indexer"
)

# Supervisor timings (seconds)
CHECK_INTERVAL = float(os.getenv("CHECK_INTERVAL", "30"))
DISCOVERY_INTERVAL = float(os.getenv("DISCOVERY_INTERVAL", "600"))
STATUS_INTERVAL = float(os.getenv("STATUS_INTERVAL", "120"))
READINESS_POLL_INTERVAL = float(os.getenv("READINESS_POLL_INTERVAL", "3"))
RESTART_DELAY = float(os.getenv("RESTART_DELAY", "5"))
READINESS_TIMEOUT = 10 * 60
DISCOVERY_TIMEOUT = 5 * 60
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))

# Recovery and reconfiguration policy
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
DISCOVERY_THRESHOLD = int(os.getenv("DISCOVERY_THRESHOLD", "3"))
INCREMENTAL_DISCOVERY = os.getenv("INCREMENTAL_DISCOVERY", "false").lower() in (
    "1",
    "true",
    "yes",
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Chain configurations (ids and names as used in the ponder configs)
CHAINS = [
    {"chain_id": 1, "name": "ethereum"},
    {"chain_id": 10, "name": "optimism"},
    {"chain_id": 100, "name": "gnosis"},
    {"chain_id": 130, "name": "unichain"},
    {"chain_id": 137, "name": "polygon"},
    {"chain_id": 146, "name": "sonic"},
    {"chain_id": 324, "name": "zksync"},
    {"chain_id": 1868, "name": "soneium"},
    {"chain_id": 5000, "name": "mantle"},
    {"chain_id": 8453, "name": "base"},
    {"chain_id": 42161, "name": "arbitrum"},
    {"chain_id": 42220, "name": "celo"},
    {"chain_id": 43114, "name": "avalanche"},
    {"chain_id": 57073, "name": "ink"},
    {"chain_id": 59144, "name": "linea"},
    {"chain_id": 60808, "name": "bob"},
    {"chain_id": 534352, "name": "scroll"},
]


@dataclass
class SupervisorConfig:
    """Settings handed to the orchestrator and its components."""

    flags_api_url: str = FLAGS_API_URL
    aggregators_api_url: str = AGGREGATORS_API_URL
    flags_app_path: str = FLAGS_APP_PATH
    aggregators_app_path: str = AGGREGATORS_APP_PATH
    database_url: Optional[str] = DATABASE_URL
    drpc_api_key: Optional[str] = DRPC_API_KEY
    flags_schema: str = FLAGS_SCHEMA
    check_interval: float = CHECK_INTERVAL
    discovery_interval: float = DISCOVERY_INTERVAL
    status_interval: float = STATUS_INTERVAL
    readiness_poll_interval: float = READINESS_POLL_INTERVAL
    readiness_timeout: float = READINESS_TIMEOUT
    discovery_timeout: float = DISCOVERY_TIMEOUT
    restart_delay: float = RESTART_DELAY
    max_retries: int = MAX_RETRIES
    discovery_threshold: int = DISCOVERY_THRESHOLD
    incremental_discovery: bool = INCREMENTAL_DISCOVERY

    @property
    def flags_port(self) -> int:
        return port_from_url(self.flags_api_url, 42069)

    @property
    def aggregators_port(self) -> int:
        return port_from_url(self.aggregators_api_url, 42070)


def load_supervisor_config() -> SupervisorConfig:
    """
    Build the supervisor settings from the environment.

    App paths are resolved against the current working directory.

    Returns:
        SupervisorConfig: Settings for one supervisor run
    """
    return SupervisorConfig(
        flags_app_path=str(Path(FLAGS_APP_PATH).resolve()),
        aggregators_app_path=str(Path(AGGREGATORS_APP_PATH).resolve()),
    )


def port_from_url(url: str, default: int) -> int:
    """Get the port of an API base URL, or the default when it has none."""
    return urlparse(url).port or default


# Logging configuration
def setup_logging():
    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)  # Ensure logs directory exists
    log_file = str(logs_dir / f"{timestamp}_registry_supervisor.log")
    logging.basicConfig(
        level=logging.getLevelName(LOG_LEVEL.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),  # Write logs to file
            logging.StreamHandler(),  # Print logs to console
        ],
    )
    logger = logging.getLogger(__name__)
    logger.info(f"Starting registry supervisor at {timestamp}")
    logger.info(f"Log file: {log_file}")


def get_chains(chain_id):
    """
    Get chain configuration by chain ID.

    Args:
        chain_id (int): The chain ID to look up

    Returns:
        dict: Chain configuration or None if not found
    """
    return next((chain for chain in CHAINS if chain["chain_id"] == chain_id), None)


def chain_id_to_name(chain_id):
    """
    Get chain key (short name) for a chain ID.

    Args:
        chain_id (int): The chain ID to look up

    Returns:
        str: Chain key (short name) or None if not found
    """
    chain_keys = {chain["chain_id"]: chain["name"] for chain in CHAINS}
    return chain_keys.get(chain_id)


def get_db_url():
    """
    Get the discovery store location.

    Returns:
        str: PostgreSQL connection string or SQLite database file path
    """
    return DATABASE_URL
