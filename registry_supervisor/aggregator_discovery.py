"""
This module discovers the aggregator contracts behind active Chainlink data
feeds by reading the data feed table written by the flags indexer.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from web3 import Web3

from .config import chain_id_to_name
from .db_utils import fetch_rows, get_db_connection, get_discovery_table, get_placeholder
from .models import DiscoveredAggregator

logger = logging.getLogger(__name__)


class AggregatorDiscovery:
    """
    Reads qualifying data feeds from the discovery store and keeps every
    aggregator seen so far, keyed by (chain_id, address).
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        connect: Callable = get_db_connection,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self.db_url = db_url
        self.connect = connect
        self.on_error = on_error
        self.last_error: Optional[Exception] = None
        self.skipped_unknown_chain = 0
        self.skipped_invalid = 0
        self._aggregators: Dict[Tuple[int, str], DiscoveredAggregator] = {}

    def discover(self, since: Optional[datetime] = None) -> List[DiscoveredAggregator]:
        """
        Run one discovery cycle against the discovery store.

        Args:
            since: Only consider feeds created after this time

        Returns:
            list: Aggregators found in this cycle, without duplicates. Empty when
                nothing qualifies or when the query failed; failures are reported
                through `last_error` and the `on_error` callback.
        """
        self.last_error = None

        try:
            rows = self._query_active_feeds(since)
        except Exception as e:
            self.last_error = e
            logger.error(f"Failed to discover aggregators from the discovery store: {e}")
            if self.on_error is not None:
                self.on_error(e)
            return []

        if since is not None:
            logger.info(f"Found {len(rows)} new data feeds since {since.isoformat()}")
        else:
            logger.info(f"Found {len(rows)} active, non-ignored data feeds")

        cycle_time = time.time()
        found: Dict[Tuple[int, str], DiscoveredAggregator] = {}
        unknown_chains = 0
        invalid = 0

        for row in rows:
            chain_id = int(row["chain_id"])
            chain_name = chain_id_to_name(chain_id)
            if not chain_name:
                logger.warning(f"Unknown chain ID: {chain_id}")
                unknown_chains += 1
                continue

            address = normalize_address(row["aggregator_address"])
            if address is None:
                logger.warning(
                    f"Invalid aggregator address {row['aggregator_address']!r} "
                    f"for data feed {row.get('address')} on chain {chain_id}"
                )
                invalid += 1
                continue

            aggregator = DiscoveredAggregator(
                address=address,
                description=row.get("description") or "",
                chain_id=chain_id,
                chain_name=chain_name,
                status="active",
                discovered_at=cycle_time,
                feed_address=row.get("address"),
            )
            found[aggregator.key] = aggregator

        self.skipped_unknown_chain += unknown_chains
        self.skipped_invalid += invalid
        self._aggregators.update(found)

        aggregators = list(found.values())
        chains = {agg.chain_name for agg in aggregators}
        logger.info(
            f"Discovered {len(aggregators)} aggregators across {len(chains)} chains "
            f"({unknown_chains} unknown chain, {invalid} invalid address)"
        )
        for chain, count in sorted(count_by(aggregators, "chain_name").items()):
            logger.info(f"  {chain}: {count} aggregators")

        return aggregators

    def _query_active_feeds(self, since: Optional[datetime]) -> List[Dict]:
        conn = self.connect(self.db_url)
        try:
            placeholder = get_placeholder(conn)
            query = f"""
                SELECT
                    address,
                    aggregator_address,
                    description,
                    chain_id,
                    status,
                    ignored,
                    created_at
                FROM {get_discovery_table(self.db_url)}
                WHERE status = {placeholder}
                AND ignored = {placeholder}
                AND aggregator_address IS NOT NULL
            """
            params = ["active", False]

            # created_at is the block timestamp, in epoch seconds
            if since is not None:
                query += f" AND created_at > {placeholder}"
                params.append(int(since.timestamp()))

            return fetch_rows(conn, query, params)
        finally:
            conn.close()

    def get_all_aggregators(self) -> List[DiscoveredAggregator]:
        return list(self._aggregators.values())

    def get_aggregators_for_chain(self, chain_name: str) -> List[DiscoveredAggregator]:
        return [agg for agg in self._aggregators.values() if agg.chain_name == chain_name]

    def get_aggregators_for_chains(self, chain_names) -> List[DiscoveredAggregator]:
        wanted = set(chain_names)
        return [agg for agg in self._aggregators.values() if agg.chain_name in wanted]

    def has_aggregators_for_chain(self, chain_name: str) -> bool:
        return bool(self.get_aggregators_for_chain(chain_name))

    def get_chains_with_aggregators(self) -> List[str]:
        return sorted({agg.chain_name for agg in self._aggregators.values()})

    def add_aggregator(self, aggregator: DiscoveredAggregator) -> None:
        self._aggregators[aggregator.key] = aggregator
        logger.info(
            f"Added aggregator: {aggregator.description} on {aggregator.chain_name}"
        )

    def remove_aggregator(self, chain_id: int, address: str) -> bool:
        removed = self._aggregators.pop((chain_id, address.lower()), None)
        if removed is not None:
            logger.info(f"Removed aggregator: {address} on chain {chain_id}")
        return removed is not None

    def clear(self) -> None:
        self._aggregators.clear()
        logger.info("Cleared all discovered aggregators")

    def get_stats(self) -> Dict:
        """
        Get statistics about discovered aggregators.

        Returns:
            dict: total count and counts keyed by chain name and by status
        """
        aggregators = self.get_all_aggregators()
        return {
            "total": len(aggregators),
            "byChain": count_by(aggregators, "chain_name"),
            "byStatus": count_by(aggregators, "status"),
        }


def normalize_address(address) -> Optional[str]:
    """
    Normalize an aggregator address to lower-case hex.

    Args:
        address: Address as stored in the discovery store

    Returns:
        str: Lower-case 0x-prefixed address, or None if it is not a valid address
    """
    if not address:
        return None
    try:
        return Web3.to_checksum_address(str(address)).lower()
    except (ValueError, TypeError):
        return None


def count_by(aggregators: List[DiscoveredAggregator], attribute: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for agg in aggregators:
        value = getattr(agg, attribute)
        counts[value] = counts.get(value, 0) + 1
    return counts
