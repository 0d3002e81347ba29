"""
Data model shared by the supervisor components.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

# Process roles
INDEXER = "indexer"
SERVER = "server"

# Process statuses
RUNNING = "running"
STOPPED = "stopped"
RESTARTING = "restarting"


class OrchestratorState:
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    AWAITING_READINESS = "awaiting_readiness"
    DISCOVERING = "discovering"
    CONFIGURING_DEPENDENT = "configuring_dependent"
    STARTING_DEPENDENT = "starting_dependent"
    STEADY = "steady"
    ABORTED = "aborted"
    STOPPED = "stopped"


@dataclass
class DiscoveredAggregator:
    """An aggregator contract found behind an active data feed."""

    address: str
    description: str
    chain_id: int
    chain_name: str
    status: str = "active"
    discovered_at: float = field(default_factory=time.time)
    feed_address: Optional[str] = None

    @property
    def key(self) -> Tuple[int, str]:
        return (self.chain_id, self.address.lower())


@dataclass
class ConfigurationSnapshot:
    """
    Aggregator contract configuration generated for the aggregators indexer.

    `addresses_by_chain` is keyed by chain name in sorted order and every
    address tuple is sorted, so equal aggregator sets give equal snapshots.
    """

    addresses_by_chain: Dict[str, Tuple[str, ...]]
    start_blocks: Dict[str, int]
    identity: str
    schema_name: str
    generated_at: float = field(default_factory=time.time)

    @property
    def chain_count(self) -> int:
        return len(self.addresses_by_chain)

    @property
    def aggregator_count(self) -> int:
        return sum(len(addresses) for addresses in self.addresses_by_chain.values())


@dataclass
class ManagedProcess:
    role: str
    pid: int
    status: str = RUNNING
    started_at: float = field(default_factory=time.time)
    restart_count: int = 0

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at
