"""
This script generates the aggregators indexer's ponder config once, from the
aggregators currently discovered by the flags indexer, without starting any
processes.
"""

import logging
import sys

import requests

from .aggregator_discovery import AggregatorDiscovery
from .config import load_supervisor_config, setup_logging
from .config_generator import ConfigGenerator

logger = logging.getLogger(__name__)


def check_flags_ready(api_url: str, timeout: int = 5) -> bool:
    """
    Check that the flags indexer has completed its historical sync.

    Args:
        api_url (str): Base URL of the flags indexer API
        timeout (int): Request timeout in seconds

    Returns:
        bool: True if /ready answered 200 without a "not complete" body
    """
    try:
        response = requests.get(f"{api_url.rstrip('/')}/ready", timeout=timeout)
    except requests.RequestException as e:
        logger.warning(f"Flags indexer API not reachable at {api_url}: {e}")
        return False

    return response.status_code == 200 and "not complete" not in response.text


def generate_config(config=None) -> bool:
    """
    Discover aggregators and write them into the aggregators ponder config.

    Returns:
        bool: True if a valid config was written
    """
    config = config or load_supervisor_config()

    logger.info("=" * 80)
    logger.info("Generating aggregators ponder config")
    logger.info(f"Aggregators app: {config.aggregators_app_path}")

    if not check_flags_ready(config.flags_api_url):
        logger.warning(
            "Flags indexer has not completed its historical sync, "
            "the generated config may be missing aggregators"
        )

    discovery = AggregatorDiscovery(db_url=config.database_url)
    aggregators = discovery.discover()
    if discovery.last_error is not None:
        logger.error(f"Discovery failed: {discovery.last_error}")
        return False

    if not aggregators:
        logger.warning("No aggregators found, the config will have an empty aggregator block")

    generator = ConfigGenerator(config.aggregators_app_path)
    snapshot = generator.update_config(aggregators)
    if snapshot is None:
        logger.error("Config generation failed, previous config restored")
        return False

    logger.info(f"Schema: {snapshot.schema_name}")
    logger.info(f"Identity: {snapshot.identity}")
    logger.info(f"Chain order: {', '.join(snapshot.addresses_by_chain)}")
    for chain, addresses in snapshot.addresses_by_chain.items():
        logger.info(
            f"  {chain}: {len(addresses)} aggregators "
            f"(start block {snapshot.start_blocks[chain]})"
        )
    logger.info(
        f"Generated config with {snapshot.aggregator_count} aggregators "
        f"on {snapshot.chain_count} chains"
    )
    return True


def main():
    setup_logging()
    try:
        if not generate_config():
            sys.exit(1)
    except Exception as e:
        logger.error(f"Error generating config: {str(e)}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
