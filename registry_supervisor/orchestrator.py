"""
Supervisor for the chainlink flags and aggregators indexers.

Startup runs in phases:
1. Start the flags indexer, which discovers data feeds and their aggregators
2. Wait until the flags indexer has finished its historical sync
3. Read the discovered aggregators from the flags database
4. Write them into the aggregators indexer's ponder config
5. Start the aggregators indexer on the schema derived from that config

After that, timers keep both indexers alive, pick up new aggregators and
periodically log a status report.
"""

import asyncio
import logging
import time
from contextlib import suppress
from typing import Dict, List, Optional, Set, Tuple

from .aggregator_discovery import AggregatorDiscovery
from .config import SupervisorConfig
from .config_generator import ConfigGenerator
from .errors import DiscoveryError, PhaseAbortError
from .models import INDEXER, DiscoveredAggregator, OrchestratorState
from .ponder_monitor import PonderMonitor
from .process_manager import ProcessManager

logger = logging.getLogger(__name__)

FLAGS = "flags"
AGGREGATORS = "aggregators"


class Orchestrator:
    def __init__(
        self,
        config: SupervisorConfig,
        discovery: Optional[AggregatorDiscovery] = None,
        config_generator: Optional[ConfigGenerator] = None,
        flags_manager: Optional[ProcessManager] = None,
        aggregators_manager: Optional[ProcessManager] = None,
        flags_monitor: Optional[PonderMonitor] = None,
    ):
        self.config = config
        self.discovery = discovery or AggregatorDiscovery(db_url=config.database_url)
        # Chain to a callback the caller already installed
        self._discovery_on_error = self.discovery.on_error
        self.discovery.on_error = self._on_discovery_error
        self.config_generator = config_generator or ConfigGenerator(
            config.aggregators_app_path
        )
        self.flags_manager = flags_manager or ProcessManager(
            config.flags_app_path,
            FLAGS,
            config.flags_port,
            database_url=config.database_url,
            drpc_api_key=config.drpc_api_key,
            restart_delay=config.restart_delay,
            on_exit=self._on_process_exit,
        )
        self.aggregators_manager = aggregators_manager or ProcessManager(
            config.aggregators_app_path,
            AGGREGATORS,
            config.aggregators_port,
            database_url=config.database_url,
            drpc_api_key=config.drpc_api_key,
            restart_delay=config.restart_delay,
            on_exit=self._on_process_exit,
        )
        self.flags_monitor = flags_monitor or PonderMonitor(config.flags_api_url)

        self.state = OrchestratorState.IDLE
        self.is_running = False
        self._locks: Dict[str, asyncio.Lock] = {}
        self._timers: List[asyncio.Task] = []
        self._shutdown_event: Optional[asyncio.Event] = None
        self._configured_keys: Set[Tuple[int, str]] = set()
        self._exhausted: Set[str] = set()
        self._discovery_errors = 0

    def _managers(self) -> Dict[str, ProcessManager]:
        return {FLAGS: self.flags_manager, AGGREGATORS: self.aggregators_manager}

    def _lock(self, app_name: str) -> asyncio.Lock:
        # Created lazily so the locks belong to the running event loop
        if app_name not in self._locks:
            self._locks[app_name] = asyncio.Lock()
        return self._locks[app_name]

    def _set_state(self, state: str) -> None:
        logger.info(f"Supervisor state: {self.state} -> {state}")
        self.state = state

    def _on_discovery_error(self, error: Exception) -> None:
        self._discovery_errors += 1
        if callable(self._discovery_on_error):
            self._discovery_on_error(error)

    def _on_process_exit(self, app_name: str, role: str, returncode) -> None:
        logger.warning(
            f"{app_name} {role} exited unexpectedly (code {returncode}), "
            f"the health check will handle it"
        )

    async def start(self) -> None:
        """
        Run the startup phases and start the steady-state timers.

        Raises:
            PhaseAbortError: If any phase fails; every started process has been
                stopped by then
        """
        if self.is_running:
            logger.warning("Supervisor is already running")
            return

        logger.info("Starting Chainlink Registry Supervisor...")
        logger.info(f"Flags API: {self.config.flags_api_url}")
        logger.info(f"Aggregators API: {self.config.aggregators_api_url}")
        self.is_running = True

        try:
            await self._bootstrap()
            await self._await_readiness()
            aggregators = await self._discover()
            schema = await self._configure_dependent(aggregators)
            await self._start_dependent(schema)
            self._enter_steady()
        except Exception as e:
            failed_phase = self.state
            self._set_state(OrchestratorState.ABORTED)
            logger.error(f"Supervisor failed during {failed_phase}: {e}")
            await self.stop()
            if isinstance(e, PhaseAbortError):
                raise
            raise PhaseAbortError(failed_phase, str(e)) from e

        logger.info(
            f"Supervisor started, monitoring {len(self._configured_keys)} aggregators"
        )

    async def _bootstrap(self) -> None:
        self._set_state(OrchestratorState.BOOTSTRAPPING)
        logger.info("=" * 80)
        logger.info("Phase 1: Starting flags indexer")

        self.flags_manager.set_schema(self.config.flags_schema)
        for role in self.flags_manager.roles:
            started = await self.flags_manager.start(role)
            if started:
                continue
            if role == INDEXER:
                raise PhaseAbortError(self.state, "Failed to start flags indexer")
            logger.warning(f"Failed to start flags {role}, continuing without it")

    async def _await_readiness(self) -> None:
        self._set_state(OrchestratorState.AWAITING_READINESS)
        logger.info("=" * 80)
        logger.info("Phase 2: Waiting for flags indexer to complete its historical sync")

        ready = await self.flags_monitor.wait_until_ready(
            self.config.readiness_timeout, self.config.readiness_poll_interval
        )
        if not ready:
            raise PhaseAbortError(
                self.state,
                f"Flags indexer not ready within {self.config.readiness_timeout}s",
            )

    async def _discover(self) -> List[DiscoveredAggregator]:
        self._set_state(OrchestratorState.DISCOVERING)
        logger.info("=" * 80)
        logger.info("Phase 3: Discovering aggregators")

        # The deadline also bounds a single query that hangs in its worker thread
        deadline = time.monotonic() + self.config.discovery_timeout
        while True:
            remaining = max(deadline - time.monotonic(), 0)
            try:
                return await asyncio.wait_for(self._run_discovery(), timeout=remaining)
            except asyncio.TimeoutError as e:
                raise PhaseAbortError(
                    self.state,
                    f"Discovery did not finish within {self.config.discovery_timeout}s",
                ) from e
            except DiscoveryError as e:
                if time.monotonic() >= deadline:
                    raise PhaseAbortError(
                        self.state,
                        f"Discovery kept failing for {self.config.discovery_timeout}s: {e}",
                    ) from e
                logger.warning(f"{e}, retrying in {self.config.readiness_poll_interval}s")
                await asyncio.sleep(
                    min(self.config.readiness_poll_interval, deadline - time.monotonic())
                )

    async def _run_discovery(self, since=None) -> List[DiscoveredAggregator]:
        """
        One discovery cycle in a worker thread.

        Raises:
            DiscoveryError: If the store could not be queried
        """
        errors_before = self._discovery_errors
        aggregators = await asyncio.to_thread(self.discovery.discover, since)
        if self._discovery_errors != errors_before:
            raise DiscoveryError(f"Discovery query failed: {self.discovery.last_error}")
        return aggregators

    async def _configure_dependent(self, aggregators: List[DiscoveredAggregator]) -> str:
        self._set_state(OrchestratorState.CONFIGURING_DEPENDENT)
        logger.info("=" * 80)
        logger.info(f"Phase 4: Configuring aggregators indexer with {len(aggregators)} aggregators")

        if not aggregators:
            logger.warning("No aggregators discovered, generating an empty aggregator config")

        snapshot = await asyncio.to_thread(self.config_generator.update_config, aggregators)
        if snapshot is None:
            raise PhaseAbortError(self.state, "Generated config validation failed")

        self._configured_keys = {agg.key for agg in aggregators}
        return self.config_generator.activate(snapshot)

    async def _start_dependent(self, schema: str) -> None:
        self._set_state(OrchestratorState.STARTING_DEPENDENT)
        logger.info("=" * 80)
        logger.info("Phase 5: Starting aggregators indexer")

        self.aggregators_manager.set_schema(schema)
        for role in self.aggregators_manager.roles:
            if not await self.aggregators_manager.start(role):
                raise PhaseAbortError(self.state, f"Failed to start aggregators {role}")

    def _enter_steady(self) -> None:
        self._set_state(OrchestratorState.STEADY)
        self._timers = [
            asyncio.ensure_future(
                self._run_periodically("health", self.config.check_interval, self.check_health, initial_delay=0)
            ),
            asyncio.ensure_future(
                self._run_periodically("discovery", self.config.discovery_interval, self.poll_discovery)
            ),
            asyncio.ensure_future(
                self._run_periodically("status", self.config.status_interval, self.log_status)
            ),
        ]

    async def _run_periodically(self, name, interval, tick, initial_delay=None) -> None:
        await asyncio.sleep(interval if initial_delay is None else initial_delay)
        while True:
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{name} timer tick failed: {e}", exc_info=True)
            await asyncio.sleep(interval)

    async def check_health(self) -> None:
        """
        Restart processes that are not running, up to the retry ceiling.

        Roles that reached the ceiling are left stopped and reported once.
        """
        for app_name, manager in self._managers().items():
            async with self._lock(app_name):
                for role, health in manager.get_health_status().items():
                    if health["running"]:
                        continue

                    process_key = f"{app_name}:{role}"
                    if health["restarts"] >= self.config.max_retries:
                        if process_key not in self._exhausted:
                            self._exhausted.add(process_key)
                            logger.error(
                                f"{app_name} {role} is down after {health['restarts']} "
                                f"restarts, giving up. Operator attention required"
                            )
                        continue

                    logger.warning(f"{app_name} {role} not running, attempting restart...")
                    await manager.restart(role)

    async def poll_discovery(self) -> bool:
        """
        Look for new aggregators and reconfigure when enough have appeared.

        Returns:
            bool: True if the aggregators indexer was reconfigured
        """
        if not self.flags_manager.is_process_running(INDEXER):
            logger.info("Flags indexer not running, skipping discovery")
            return False

        if not await self.flags_monitor.is_ready():
            logger.info("Flags indexer sync not complete, skipping discovery")
            return False

        since = None
        if self.config.incremental_discovery:
            since = self.config_generator.last_generation

        try:
            found = await self._run_discovery(since)
        except DiscoveryError as e:
            logger.error(f"{e}, will retry on the next discovery cycle")
            return False

        new_keys = {agg.key for agg in found} - self._configured_keys
        if len(new_keys) < self.config.discovery_threshold:
            if new_keys:
                logger.info(
                    f"Found {len(new_keys)} new aggregators, below the threshold of "
                    f"{self.config.discovery_threshold}, not reconfiguring yet"
                )
            return False

        logger.info(f"Found {len(new_keys)} new aggregators, reconfiguring")
        return await self.reconfigure_dependent()

    async def reconfigure_dependent(self) -> bool:
        """
        Regenerate the aggregators config from every known aggregator and
        restart the aggregators indexer on it.

        An invalid config is rolled back and the running indexer is left alone.
        """
        async with self._lock(AGGREGATORS):
            aggregators = self.discovery.get_all_aggregators()
            snapshot = await asyncio.to_thread(self.config_generator.update_config, aggregators)
            if snapshot is None:
                logger.error("Config update failed, keeping the current aggregators indexer")
                return False

            self._configured_keys = {agg.key for agg in aggregators}
            schema = self.config_generator.activate(snapshot)
            self.aggregators_manager.set_schema(schema)

            restarted = await self.aggregators_manager.restart_all()
            if restarted:
                logger.info(f"Aggregators indexer restarted with {snapshot.aggregator_count} aggregators")
            else:
                logger.error("Failed to restart aggregators indexer with the new config")
            return restarted

    async def log_status(self) -> None:
        status = self.get_status()
        api_healthy = await self.flags_monitor.is_api_healthy()

        logger.info("Status Report:")
        for app_name, manager in self._managers().items():
            for role, health in manager.get_health_status().items():
                logger.info(
                    f"  {app_name} {role}: {'up' if health['running'] else 'DOWN'} "
                    f"(uptime: {int(health['uptime'])}s, restarts: {health['restarts']})"
                )
        logger.info(f"  Flags API healthy: {api_healthy}")
        logger.info(
            f"  Aggregators: {status['aggregators']['total']} total across "
            f"{len(status['chains'])} chains"
        )

    def get_status(self) -> Dict:
        return {
            "running": self.is_running,
            "state": self.state,
            "processes": {
                app_name: manager.get_all_process_info()
                for app_name, manager in self._managers().items()
            },
            "aggregators": self.discovery.get_stats(),
            "chains": self.discovery.get_chains_with_aggregators(),
            "exhausted": sorted(self._exhausted),
        }

    async def stop(self) -> None:
        """Cancel the timers and stop every managed process."""
        if not self.is_running:
            logger.info("Supervisor is not running")
            return

        logger.info("Stopping Chainlink Registry Supervisor...")
        self.is_running = False

        for timer in self._timers:
            timer.cancel()
        for timer in self._timers:
            with suppress(asyncio.CancelledError):
                await timer
        self._timers = []

        await asyncio.gather(
            self.flags_manager.stop_all(), self.aggregators_manager.stop_all()
        )

        if self.state != OrchestratorState.ABORTED:
            self._set_state(OrchestratorState.STOPPED)
        logger.info("Supervisor stopped")

    def request_shutdown(self) -> None:
        logger.info("Received shutdown signal...")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self) -> None:
        """
        Start the supervisor and keep it running until shutdown is requested.

        A shutdown request during startup cancels the remaining phases.

        Raises:
            PhaseAbortError: If startup failed
        """
        self._shutdown_event = asyncio.Event()
        start_task = asyncio.ensure_future(self.start())
        shutdown_task = asyncio.ensure_future(self._shutdown_event.wait())

        try:
            done, _ = await asyncio.wait(
                {start_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if start_task in done:
                start_task.result()
                await shutdown_task
            else:
                start_task.cancel()
                with suppress(asyncio.CancelledError):
                    await start_task
        finally:
            shutdown_task.cancel()
            await self.stop()
