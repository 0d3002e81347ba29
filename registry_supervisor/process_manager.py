"""
Lifecycle management for the ponder processes of one indexer app.

Each app runs an indexer (`pnpm dev`) and optionally an API-only server
(`pnpm ponder serve`). Processes are started in their own process group so
that stopping one also stops the node processes pnpm spawns.
"""

import asyncio
import logging
import os
import re
import signal
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from dotenv import dotenv_values

from .models import INDEXER, RESTARTING, RUNNING, SERVER, STOPPED, ManagedProcess

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[a-zA-Z]")
OUTPUT_LINE_LIMIT = 1024 * 1024
GROUP_POLL_INTERVAL = 0.1

# Output worth surfacing: startup banner, listening port, sync milestones
OUTPUT_PATTERNS = (
    "PM INFO",
    "> ponder dev",
    "> ponder serve",
    "> @chainlink-registry",
    "historical sync with",
    "Created tables",
    "Using database",
    "Started listening on port",
    "Started returning 200 responses",
)
OUTPUT_PREFIXES = ("Started", "Server live at")


def clean_output_line(raw: bytes) -> str:
    return ANSI_ESCAPE.sub("", raw.decode("utf-8", errors="replace")).strip()


def classify_output_line(line: str) -> Optional[int]:
    """
    Decide whether a line of ponder output should reach the supervisor log.

    Args:
        line: Output line with ANSI codes removed

    Returns:
        int: Log level to use, or None to drop the line
    """
    if not line:
        return None
    if "ERROR" in line:
        return logging.ERROR
    if "WARN" in line:
        return logging.WARNING
    if line.startswith(OUTPUT_PREFIXES) or any(p in line for p in OUTPUT_PATTERNS):
        return logging.INFO
    return None


def load_envrc(app_path) -> Dict[str, str]:
    """
    Load the `export KEY=value` lines of an app's .envrc file.

    Returns:
        dict: Variables with a value; empty if the file does not exist
    """
    envrc_path = Path(app_path) / ".envrc"
    if not envrc_path.is_file():
        logger.warning(f"No .envrc found at {envrc_path}")
        return {}

    values = {key: value for key, value in dotenv_values(envrc_path).items() if value is not None}
    logger.info(f"Loaded {len(values)} environment variables from {envrc_path}")
    return values


class ProcessManager:
    """
    Starts, stops and restarts the ponder processes of one indexer app.

    Restart counts are kept per role for the lifetime of the manager, while
    the process records are dropped as soon as a process exits.
    """

    def __init__(
        self,
        app_path,
        app_name: str,
        port: int,
        roles: Sequence[str] = (INDEXER,),
        database_url: Optional[str] = None,
        drpc_api_key: Optional[str] = None,
        restart_delay: float = 5.0,
        settle_time: float = 2.0,
        grace_period: float = 10.0,
        on_exit: Optional[Callable[[str, str, Optional[int]], None]] = None,
        command_factory: Optional[Callable[[str, int], List[str]]] = None,
    ):
        self.app_path = Path(app_path)
        self.app_name = app_name
        self.port = port
        self.roles = tuple(roles)
        self.database_url = database_url
        self.drpc_api_key = drpc_api_key
        self.restart_delay = restart_delay
        self.settle_time = settle_time
        self.grace_period = grace_period
        self.on_exit = on_exit
        self.command_factory = command_factory

        self.env_vars = load_envrc(self.app_path)
        self.schema: Optional[str] = self.env_vars.get("DATABASE_SCHEMA")

        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._process_info: Dict[str, ManagedProcess] = {}
        self._restart_counts: Dict[str, int] = {role: 0 for role in self.roles}
        self._stopping = set()
        self._tasks = set()
        self._last_server_message = ""

    def set_schema(self, schema: str) -> None:
        """Set the DATABASE_SCHEMA used by the next process start."""
        self.schema = schema
        logger.info(f"{self.app_name} will use database schema: {schema}")

    def build_command(self, role: str) -> List[str]:
        if self.command_factory is not None:
            return self.command_factory(role, self.port)
        if role == SERVER:
            return ["pnpm", "ponder", "serve", "--port", str(self.port)]
        return ["pnpm", "dev", "--port", str(self.port)]

    def build_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(self.env_vars)
        overrides = {
            "DATABASE_URL": self.database_url or self.env_vars.get("DATABASE_URL"),
            "DRPC_API_KEY": self.drpc_api_key or self.env_vars.get("DRPC_API_KEY"),
            "DATABASE_SCHEMA": self.schema,
            "PONDER_PORT": str(self.port),
        }
        env.update({key: value for key, value in overrides.items() if value})
        return env

    async def start(self, role: str = INDEXER) -> bool:
        """
        Spawn a process for a role and check it survives the settle time.

        Args:
            role: "indexer" or "server"

        Returns:
            bool: True if the process is running after the settle time
        """
        if self.is_process_running(role):
            logger.warning(f"{self.app_name} {role} is already running")
            return True

        command = self.build_command(role)
        logger.info(f"Starting {self.app_name} {role}: {' '.join(command)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.app_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(),
                start_new_session=True,
                limit=OUTPUT_LINE_LIMIT,
            )
        except OSError as e:
            logger.error(f"Failed to start {self.app_name} {role}: {e}")
            return False

        self._processes[role] = proc
        self._process_info[role] = ManagedProcess(
            role=role,
            pid=proc.pid,
            status=RUNNING,
            started_at=time.time(),
            restart_count=self._restart_counts.get(role, 0),
        )
        self._spawn_task(self._pump_output(role, proc.stdout, is_stderr=False))
        self._spawn_task(self._pump_output(role, proc.stderr, is_stderr=True))
        self._spawn_task(self._watch(role, proc))

        # Wait a bit to see if process starts successfully
        await asyncio.sleep(self.settle_time)

        if proc.returncode is not None:
            logger.error(
                f"{self.app_name} {role} failed to start (exit code {proc.returncode})"
            )
            return False

        logger.info(f"{self.app_name} {role} started with PID {proc.pid}")
        return True

    async def stop(self, role: str = INDEXER) -> bool:
        """
        Stop a role's process group: SIGTERM first, SIGKILL after the grace period.

        The group counts as stopped only once every member has exited, so a
        node child that outlives the pnpm leader is still killed.

        Returns:
            bool: True once the process is gone
        """
        proc = self._processes.get(role)
        if proc is None or proc.returncode is not None:
            if proc is not None and self._group_alive(proc.pid):
                logger.warning(
                    f"Killing leftover {self.app_name} {role} process group {proc.pid}"
                )
                self._signal(proc, signal.SIGKILL)
            self._forget(role, proc)
            logger.info(f"{self.app_name} {role} process not running")
            return True

        logger.info(f"Stopping {self.app_name} {role} process (PID {proc.pid})...")
        self._stopping.add(proc.pid)

        try:
            self._signal(proc, signal.SIGTERM)
            if not await self._wait_for_group(proc, self.grace_period):
                logger.warning(
                    f"{self.app_name} {role} didn't stop within "
                    f"{self.grace_period}s, forcing..."
                )
                self._signal(proc, signal.SIGKILL)
                await proc.wait()
        except OSError as e:
            logger.error(f"Failed to stop {self.app_name} {role}: {e}")
            return False

        self._forget(role, proc)
        logger.info(f"{self.app_name} {role} process stopped")
        return True

    async def stop_all(self) -> bool:
        logger.info(f"Stopping all {self.app_name} processes...")
        results = await asyncio.gather(*(self.stop(role) for role in list(self._processes)))
        all_stopped = all(results)
        if not all_stopped:
            logger.error(f"Some {self.app_name} processes failed to stop")
        return all_stopped

    async def restart(self, role: str = INDEXER) -> bool:
        """
        Stop and start a role's process, counting the attempt.

        The restart count is incremented before anything else. Callers decide
        whether another restart is allowed.

        Returns:
            bool: Outcome of the start
        """
        self._restart_counts[role] = self._restart_counts.get(role, 0) + 1
        restarts = self._restart_counts[role]
        logger.info(f"Restarting {self.app_name} {role} (restart #{restarts})...")

        info = self._process_info.get(role)
        if info is not None:
            info.status = RESTARTING
            info.restart_count = restarts

        await self.stop(role)
        await asyncio.sleep(self.restart_delay)
        started = await self.start(role)

        if started:
            logger.info(f"{self.app_name} {role} restarted successfully")
        else:
            logger.error(f"Failed to restart {self.app_name} {role}")
        return started

    async def restart_all(self) -> bool:
        """Stop every role, wait the restart delay and start every role again."""
        logger.info(f"Restarting all {self.app_name} processes...")
        await self.stop_all()
        await asyncio.sleep(self.restart_delay)

        results = [await self.start(role) for role in self.roles]
        all_started = all(results)
        if all_started:
            logger.info(f"All {self.app_name} processes restarted successfully")
        else:
            logger.error(f"Some {self.app_name} processes failed to restart")
        return all_started

    def is_process_running(self, role: str = INDEXER) -> bool:
        proc = self._processes.get(role)
        info = self._process_info.get(role)
        return bool(
            proc is not None
            and info is not None
            and info.status == RUNNING
            and proc.returncode is None
        )

    async def wait_for_process(self, role: str = INDEXER, timeout: float = 30.0) -> bool:
        """
        Wait until a role's process is running.

        Returns:
            bool: True if it was running before the timeout
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.is_process_running(role):
                return True
            await asyncio.sleep(0.5)
        return self.is_process_running(role)

    def get_process_info(self, role: str = INDEXER) -> Optional[ManagedProcess]:
        return self._process_info.get(role)

    def get_all_process_info(self) -> Dict[str, ManagedProcess]:
        return dict(self._process_info)

    def get_restart_count(self, role: str = INDEXER) -> int:
        return self._restart_counts.get(role, 0)

    def get_health_status(self) -> Dict[str, Dict]:
        """
        Get process health for every managed role.

        Returns:
            dict: role -> {running, uptime (seconds), restarts}
        """
        health = {}
        for role in self.roles:
            info = self._process_info.get(role)
            health[role] = {
                "running": self.is_process_running(role),
                "uptime": info.uptime if info is not None else 0,
                "restarts": self._restart_counts.get(role, 0),
            }
        return health

    def _forget(self, role: str, proc) -> None:
        if proc is not None and self._processes.get(role) is not proc:
            return
        self._processes.pop(role, None)
        info = self._process_info.pop(role, None)
        if info is not None:
            info.status = STOPPED

    def _signal(self, proc, sig) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass

    @staticmethod
    def _group_alive(pgid: int) -> bool:
        if not hasattr(os, "killpg"):
            return False
        try:
            os.killpg(pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def _wait_for_group(self, proc, timeout: float) -> bool:
        """Wait for the leader and then every other group member to exit."""
        deadline = time.monotonic() + timeout
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        while self._group_alive(proc.pid):
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(GROUP_POLL_INTERVAL)
        return True

    def _spawn_task(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _watch(self, role: str, proc) -> None:
        returncode = await proc.wait()
        self._forget(role, proc)

        if proc.pid in self._stopping:
            self._stopping.discard(proc.pid)
            return

        logger.warning(
            f"{self.app_name} {role} process exited with code {returncode}"
        )
        if self.on_exit is not None:
            self.on_exit(self.app_name, role, returncode)

    async def _pump_output(self, role: str, stream, is_stderr: bool) -> None:
        label = f"[{self.app_name.upper()} {role.upper()}]"
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit, the rest of it was dropped
                continue
            if not raw:
                break

            line = clean_output_line(raw)
            if not line:
                continue
            if is_stderr:
                logger.error(f"{label} {line}")
                continue

            level = classify_output_line(line)
            if level is None:
                continue
            if line.startswith("Server live at"):
                if line == self._last_server_message:
                    continue
                self._last_server_message = line
            logger.log(level, f"{label} {line}")
