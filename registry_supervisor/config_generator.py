"""
Generate the aggregators indexer's ponder config from discovered aggregators.

The ponder config is a TypeScript module. Only the aggregator contract block
is owned by the supervisor: it is located by its marker and matching closing
brace, rendered from a ConfigurationSnapshot and spliced back into the file.
Everything else in the file is preserved as written.
"""

import hashlib
import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .errors import ConfigValidationError
from .models import ConfigurationSnapshot, DiscoveredAggregator

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "ponder.config.ts"
CONFIG_ENTRY_POINT = "export default createConfig({"
FLAGS_CONTRACT_MARKER = "ChainLinkDataFeedFlags: {"
AGGREGATOR_CONTRACT_MARKER = "AccessControlledOffchainAggregator: {"
AGGREGATOR_ABI_NAME = "AccessControlledOffchainAggregatorAbi"
AGGREGATOR_ABI_IMPORT = (
    f'import {{ {AGGREGATOR_ABI_NAME} }} from "./abis/{AGGREGATOR_ABI_NAME}";'
)
AGGREGATOR_ABI_IMPORT_PATTERN = re.compile(
    r"^import\s*\{[^}]*\b" + AGGREGATOR_ABI_NAME + r"\b[^}]*\}", re.MULTILINE
)
ADDRESS_PATTERN = re.compile(r"0x[a-fA-F0-9]{40}")

# Used when the flags contract has no start block for a chain
DEFAULT_START_BLOCK = 1000000
SCHEMA_PREFIX = "chainlink_agg"
BACKUP_GLOB = "ponder.config.backup.*.ts"
MAX_BACKUPS = 10


def find_marker(text: str, marker: str) -> int:
    """Offset of the first marker that is not on a `//` comment line, or -1."""
    start = text.find(marker)
    while start != -1:
        line_start = text.rfind("\n", 0, start) + 1
        if not text[line_start:start].lstrip().startswith("//"):
            return start
        start = text.find(marker, start + len(marker))
    return -1


def find_block(text: str, marker: str) -> Optional[Tuple[int, int]]:
    """
    Locate a `name: { ... }` block in a ponder config.

    Braces inside string literals and `//` comments are not counted, and a
    commented-out marker is skipped.

    Args:
        text: Config file contents
        marker: Block opening, ending with the opening brace

    Returns:
        tuple: (start, end) offsets of the block, end exclusive, or None if the
            marker is not present

    Raises:
        ConfigValidationError: If the block is never closed
    """
    start = find_marker(text, marker)
    if start == -1:
        return None

    depth = 0
    quote = None
    i = start + len(marker) - 1
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 2
                continue
            if char == quote:
                quote = None
        elif char in "\"'`":
            quote = char
        elif text.startswith("//", i):
            newline = text.find("\n", i)
            if newline == -1:
                break
            i = newline
            continue
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return start, i + 1
        i += 1

    raise ConfigValidationError(f"Could not find end of block {marker!r}")


def strip_line_comments(text: str) -> str:
    return "\n".join(
        line for line in text.splitlines() if not line.lstrip().startswith("//")
    )


def group_addresses_by_chain(
    aggregators: List[DiscoveredAggregator],
) -> Dict[str, Tuple[str, ...]]:
    """
    Group aggregator addresses by chain name.

    Returns:
        dict: Chain names in sorted order, each mapped to its sorted,
            deduplicated lower-case addresses
    """
    grouped: Dict[str, set] = {}
    for agg in aggregators:
        grouped.setdefault(agg.chain_name, set()).add(agg.address.lower())
    return {chain: tuple(sorted(grouped[chain])) for chain in sorted(grouped)}


def generate_schema_name(addresses_by_chain: Dict[str, Tuple[str, ...]]) -> Tuple[str, str]:
    """
    Derive the configuration identity and database schema name.

    The identity only depends on the chain/address content, so regenerating
    the config for an unchanged aggregator set reuses the same schema.

    Returns:
        tuple: (sha256 identity, schema name)
    """
    config_string = "|".join(
        f"{chain}:{','.join(sorted(addresses))}"
        for chain, addresses in sorted(addresses_by_chain.items())
    )
    identity = hashlib.sha256(config_string.encode("utf-8")).hexdigest()
    total = sum(len(addresses) for addresses in addresses_by_chain.values())
    schema_name = (
        f"{SCHEMA_PREFIX}_{len(addresses_by_chain)}c_{total}a_{identity[:8]}"
    )
    return identity, schema_name


def render_aggregator_block(snapshot: ConfigurationSnapshot) -> str:
    """Render the aggregator contract block, from its marker to its closing brace."""
    lines = [
        AGGREGATOR_CONTRACT_MARKER,
        f"\t\t\tabi: {AGGREGATOR_ABI_NAME},",
        "\t\t\tchain: {",
    ]
    for chain, addresses in snapshot.addresses_by_chain.items():
        lines.append(f"\t\t\t\t{chain}: {{")
        lines.append("\t\t\t\t\taddress: [")
        lines.extend(f'\t\t\t\t\t\t"{address}",' for address in addresses)
        lines.append("\t\t\t\t\t],")
        lines.append(f"\t\t\t\t\tstartBlock: {snapshot.start_blocks[chain]},")
        lines.append("\t\t\t\t},")
    lines.append("\t\t\t},")
    lines.append("\t\t}")
    return "\n".join(lines)


def ensure_aggregator_import(text: str) -> str:
    """Add the aggregator ABI import after the last import if it is missing."""
    if AGGREGATOR_ABI_IMPORT_PATTERN.search(text):
        return text

    lines = text.split("\n")
    last_import = None
    for index, line in enumerate(lines):
        if line.startswith("import "):
            last_import = index

    if last_import is None:
        return f"{AGGREGATOR_ABI_IMPORT}\n\n{text}"

    lines.insert(last_import + 1, AGGREGATOR_ABI_IMPORT)
    return "\n".join(lines)


def splice_aggregator_block(text: str, block: str) -> str:
    """
    Replace the aggregator contract block, or add it after the flags contract.

    Raises:
        ConfigValidationError: If neither block can be located
    """
    span = find_block(text, AGGREGATOR_CONTRACT_MARKER)
    if span is not None:
        start, end = span
        return ensure_aggregator_import(text[:start] + block + text[end:])

    flags_span = find_block(text, FLAGS_CONTRACT_MARKER)
    if flags_span is None:
        raise ConfigValidationError(
            "Config has neither an aggregator nor a flags contract block"
        )

    insert_at = flags_span[1]
    if text[insert_at : insert_at + 1] == ",":
        insert_at += 1
        new_text = text[:insert_at] + "\n\t\t" + block + "," + text[insert_at:]
    else:
        new_text = text[:insert_at] + ",\n\t\t" + block + text[insert_at:]
    return ensure_aggregator_import(new_text)


def check_config(text: str) -> None:
    """
    Structural checks on a ponder config.

    Raises:
        ConfigValidationError: If the entry point or the aggregator ABI import
            is missing, or the braces are unbalanced
    """
    if find_marker(text, CONFIG_ENTRY_POINT) == -1:
        raise ConfigValidationError("Missing export default createConfig")

    if not AGGREGATOR_ABI_IMPORT_PATTERN.search(text):
        raise ConfigValidationError("Missing aggregator ABI import")

    open_braces = text.count("{")
    close_braces = text.count("}")
    if open_braces != close_braces:
        raise ConfigValidationError(
            f"Unbalanced braces: {open_braces} open, {close_braces} close"
        )


class ConfigGenerator:
    """Owns the aggregators indexer's ponder config file."""

    def __init__(self, app_path, max_backups: int = MAX_BACKUPS):
        self.app_path = Path(app_path)
        self.max_backups = max_backups
        self.config_path = self.app_path / CONFIG_FILE_NAME
        self.last_generation: Optional[datetime] = None
        self.active_snapshot: Optional[ConfigurationSnapshot] = None

    def get_start_block_for_chain(self, chain_name: str, config_text: str) -> int:
        """
        Get the start block configured for the flags contract on a chain.

        Args:
            chain_name: Chain key as used in the ponder config
            config_text: Current config file contents

        Returns:
            int: Flags contract start block, or DEFAULT_START_BLOCK
        """
        try:
            span = find_block(config_text, FLAGS_CONTRACT_MARKER)
        except ConfigValidationError:
            span = None

        if span is not None:
            flags_section = strip_line_comments(config_text[span[0] : span[1]])
            match = re.search(
                rf"\b{re.escape(chain_name)}:\s*\{{[^}}]*?startBlock:\s*(\d+)",
                flags_section,
            )
            if match:
                return int(match.group(1))

        logger.warning(
            f"Could not find flags start block for {chain_name}, "
            f"using default {DEFAULT_START_BLOCK}"
        )
        return DEFAULT_START_BLOCK

    def generate(
        self, aggregators: List[DiscoveredAggregator], prior_config_text: str
    ) -> Tuple[ConfigurationSnapshot, str]:
        """
        Build a snapshot for the aggregators and the config text that uses it.

        Args:
            aggregators: Aggregators to index
            prior_config_text: Current config file contents

        Returns:
            tuple: (ConfigurationSnapshot, new config text)

        Raises:
            ConfigValidationError: If the config structure cannot be located
        """
        addresses_by_chain = group_addresses_by_chain(aggregators)
        start_blocks = {
            chain: self.get_start_block_for_chain(chain, prior_config_text)
            for chain in addresses_by_chain
        }
        identity, schema_name = generate_schema_name(addresses_by_chain)
        snapshot = ConfigurationSnapshot(
            addresses_by_chain=addresses_by_chain,
            start_blocks=start_blocks,
            identity=identity,
            schema_name=schema_name,
        )

        logger.info(
            f"Generating ponder config with {snapshot.aggregator_count} aggregators "
            f"on {snapshot.chain_count} chains (schema {schema_name})"
        )
        for chain, addresses in addresses_by_chain.items():
            logger.debug(f"  {chain}: {len(addresses)} aggregators")

        new_text = splice_aggregator_block(
            prior_config_text, render_aggregator_block(snapshot)
        )
        return snapshot, new_text

    def validate(self, config_text: str) -> bool:
        """
        Check that a config is structurally sound.

        This is a sanity check on the text, not a TypeScript parse.
        """
        try:
            check_config(config_text)
        except ConfigValidationError as e:
            logger.error(f"Generated config validation failed: {e}")
            return False

        logger.info("Generated config validation passed")
        return True

    def read_config(self) -> str:
        return self.config_path.read_text(encoding="utf-8")

    def backup_current_config(self) -> Path:
        """
        Copy the current config to a timestamped backup next to it.

        Returns:
            Path: Backup file path
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        backup_path = self.config_path.with_name(f"ponder.config.backup.{timestamp}.ts")
        shutil.copy2(self.config_path, backup_path)
        logger.info(f"Backed up current config to: {backup_path}")
        self.prune_backups()
        return backup_path

    def prune_backups(self) -> List[Path]:
        """Delete all but the newest `max_backups` config backups."""
        # Timestamped names sort chronologically
        backups = sorted(self.app_path.glob(BACKUP_GLOB))
        stale = backups[: max(len(backups) - self.max_backups, 0)]
        for path in stale:
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove old config backup {path}: {e}")
        if stale:
            logger.info(f"Removed {len(stale)} old config backups")
        return stale

    def restore_backup(self, backup_path) -> None:
        shutil.copy2(backup_path, self.config_path)
        logger.warning(f"Restored config from backup: {backup_path}")

    def update_config(
        self, aggregators: List[DiscoveredAggregator]
    ) -> Optional[ConfigurationSnapshot]:
        """
        Back up, regenerate and validate the config file.

        The written file is validated as read back from disk. On any failure the
        backup is restored and the previous config stays in place.

        Args:
            aggregators: Aggregators to index

        Returns:
            ConfigurationSnapshot: The new snapshot, or None if the config was
                left unchanged
        """
        logger.info(f"Updating aggregator config with {len(aggregators)} aggregators")

        try:
            backup_path = self.backup_current_config()
        except OSError as e:
            logger.error(f"Failed to backup current config: {e}")
            return None

        try:
            snapshot, new_text = self.generate(aggregators, self.read_config())
            self.config_path.write_text(new_text, encoding="utf-8")
            valid = self.validate(self.read_config())
        except (OSError, ConfigValidationError) as e:
            logger.error(f"Failed to update aggregator config: {e}")
            valid = False

        if not valid:
            self.restore_backup(backup_path)
            return None

        self.last_generation = datetime.fromtimestamp(snapshot.generated_at, timezone.utc)
        logger.info(f"Updated aggregator config: {self.config_path}")
        return snapshot

    def activate(self, snapshot: ConfigurationSnapshot) -> str:
        """
        Make a generated snapshot the active one.

        Returns:
            str: Database schema the aggregators indexer must be started with
        """
        self.active_snapshot = snapshot
        logger.info(f"Activated config {snapshot.identity[:8]}, schema {snapshot.schema_name}")
        return snapshot.schema_name

    def get_config_stats(self) -> Dict[str, int]:
        """
        Get statistics about the aggregator block of the config file.

        Returns:
            dict: totalAggregators, chainCount and configSize (characters)
        """
        try:
            config_text = self.read_config()
            span = find_block(config_text, AGGREGATOR_CONTRACT_MARKER)
        except (OSError, ConfigValidationError) as e:
            logger.error(f"Failed to get config stats: {e}")
            return {"totalAggregators": 0, "chainCount": 0, "configSize": 0}

        section = config_text[span[0] : span[1]] if span else ""
        chains = re.findall(r"^\t{4}(\w+): \{", section, re.MULTILINE)
        return {
            "totalAggregators": len(ADDRESS_PATTERN.findall(section)),
            "chainCount": len(chains),
            "configSize": len(config_text),
        }
