"""Environment configuration and network resolution for chaindeploy."""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from dotenv import dotenv_values, find_dotenv
from eth_account import Account

from .constants import (
    DEFAULT_KEY_ENV,
    DEFAULT_RECEIPT_TIMEOUT,
    DEFAULT_SOLC_VERSION,
    DEFAULT_VERIFY_INTERVAL,
    DEFAULT_VERIFY_MAX_ATTEMPTS,
    EXPLORER_API_KEY_ENV,
    NETWORK_CONFIG,
)
from .exceptions import ConfigError, ConfigErrorKind
from .paths import get_default_cache_dir, get_default_deployments_dir
from .types import NetworkConfig

logger = logging.getLogger(__name__)

# Order of the secp256k1 group; valid private keys are in [1, n)
SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

_HEX_KEY = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def rpc_env_var(network_entry: Mapping[str, Any]) -> str:
    """Name of the environment variable holding a network's RPC URL, e.g. SEP_RPC_URL."""
    return f"{network_entry['short_name'].upper()}_RPC_URL"


def key_env_var(network_entry: Mapping[str, Any]) -> str:
    """Name of the per-network signing key variable, e.g. SEP_PRIVATE_KEY."""
    return f"{network_entry['short_name'].upper()}_PRIVATE_KEY"


@dataclass(frozen=True)
class Settings:
    """
    Immutable snapshot of the environment, taken once at startup.

    Components receive a Settings (or a NetworkConfig resolved from it) and
    never read the process environment themselves.
    """

    environ: Mapping[str, str] = field(default_factory=dict, repr=False)
    networks: Mapping[str, Mapping[str, Any]] = field(default_factory=lambda: NETWORK_CONFIG)
    solc_version: str = DEFAULT_SOLC_VERSION
    receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT
    verify_interval: float = DEFAULT_VERIFY_INTERVAL
    verify_max_attempts: int = DEFAULT_VERIFY_MAX_ATTEMPTS
    cache_dir: Path = field(default_factory=get_default_cache_dir)
    deployments_dir: Path = field(default_factory=get_default_deployments_dir)
    project_root: Path = field(default_factory=Path.cwd)
    remappings: Tuple[str, ...] = ()

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[Union[str, Path]] = None,
    ) -> "Settings":
        """
        Build settings from environment-style key/value pairs.

        Args:
            environ: Explicit variables. If None, uses os.environ layered
                     over the nearest .env file.
            dotenv_path: .env file to read; its values never override
                         variables that are already set.

        Returns:
            Settings snapshot

        Raises:
            ConfigError: If a tunable has a malformed value
        """
        values: Dict[str, str] = {}

        if dotenv_path is None and environ is None:
            dotenv_path = find_dotenv(usecwd=True) or None
        if dotenv_path is not None:
            logger.debug("Loading environment file %s", dotenv_path)
            values.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})

        values.update(os.environ if environ is None else environ)
        frozen = MappingProxyType(dict(values))

        return cls(
            environ=frozen,
            solc_version=frozen.get("CHAINDEPLOY_SOLC_VERSION", DEFAULT_SOLC_VERSION),
            receipt_timeout=_number(
                frozen, "CHAINDEPLOY_RECEIPT_TIMEOUT", DEFAULT_RECEIPT_TIMEOUT, float
            ),
            verify_interval=_number(
                frozen, "CHAINDEPLOY_VERIFY_INTERVAL", DEFAULT_VERIFY_INTERVAL, float
            ),
            verify_max_attempts=_number(
                frozen, "CHAINDEPLOY_VERIFY_MAX_ATTEMPTS", DEFAULT_VERIFY_MAX_ATTEMPTS, int
            ),
            cache_dir=Path(frozen["CHAINDEPLOY_CACHE_DIR"])
            if frozen.get("CHAINDEPLOY_CACHE_DIR")
            else get_default_cache_dir(),
            deployments_dir=Path(frozen["CHAINDEPLOY_DEPLOYMENTS_DIR"])
            if frozen.get("CHAINDEPLOY_DEPLOYMENTS_DIR")
            else get_default_deployments_dir(),
            project_root=Path(frozen["CHAINDEPLOY_PROJECT_ROOT"])
            if frozen.get("CHAINDEPLOY_PROJECT_ROOT")
            else Path.cwd(),
            remappings=_remappings(frozen.get("CHAINDEPLOY_REMAPPINGS", "")),
        )


def _number(environ: Mapping[str, str], name: str, default, parse):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = parse(raw)
    except ValueError:
        raise ConfigError(
            ConfigErrorKind.INVALID_SETTING, f"{name} must be a number, got {raw!r}"
        ) from None
    if value <= 0:
        raise ConfigError(ConfigErrorKind.INVALID_SETTING, f"{name} must be positive")
    return value


def _remappings(raw: str) -> Tuple[str, ...]:
    """Parse "prefix=target" import remappings separated by commas or whitespace."""
    entries = tuple(e for e in re.split(r"[\s,]+", raw) if e)
    for entry in entries:
        prefix, sep, target = entry.rpartition("=")
        if not sep or not target or not prefix.split(":")[-1]:
            raise ConfigError(
                ConfigErrorKind.INVALID_SETTING,
                f"CHAINDEPLOY_REMAPPINGS entry {entry!r} is not of the form prefix=target",
            )
    return entries


def is_well_formed_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_private_key(key: str) -> bool:
    """Check that a hex string is a usable secp256k1 private key."""
    if not _HEX_KEY.match(key):
        return False
    return 0 < int(key, 16) < SECP256K1_N


def resolve(settings: Settings, network_name: str, require_explorer: bool = False) -> NetworkConfig:
    """
    Resolve a named network into a NetworkConfig.

    Performs no network calls.

    Args:
        settings: Environment snapshot
        network_name: Key of the network table (e.g., "sepolia")
        require_explorer: Also require explorer API access (for verification)

    Returns:
        NetworkConfig; equal settings give equal results

    Raises:
        ConfigError: UNKNOWN_NETWORK, MISSING_RPC_URL, MALFORMED_RPC_URL,
                     MISSING_KEY, MALFORMED_KEY or MISSING_EXPLORER_KEY
    """
    entry = settings.networks.get(network_name)
    if entry is None:
        known = ", ".join(sorted(settings.networks))
        raise ConfigError(
            ConfigErrorKind.UNKNOWN_NETWORK,
            f"Network '{network_name}' is not configured (known: {known})",
            network_name,
        )

    env = settings.environ

    rpc_var = rpc_env_var(entry)
    rpc_url = env.get(rpc_var) or entry.get("default_rpc_url")
    if not rpc_url:
        raise ConfigError(
            ConfigErrorKind.MISSING_RPC_URL,
            f"RPC URL required for '{network_name}': set ${rpc_var}",
            network_name,
        )
    if not is_well_formed_url(rpc_url):
        raise ConfigError(
            ConfigErrorKind.MALFORMED_RPC_URL,
            f"${rpc_var} is not a well-formed http(s) URL",
            network_name,
        )

    key_var = key_env_var(entry)
    signing_key = env.get(key_var) or env.get(DEFAULT_KEY_ENV)
    if not signing_key:
        raise ConfigError(
            ConfigErrorKind.MISSING_KEY,
            f"Signing key required for '{network_name}': set ${key_var} or ${DEFAULT_KEY_ENV}",
            network_name,
        )
    signing_key = signing_key.strip()
    if not is_valid_private_key(signing_key):
        # Never echo the value
        raise ConfigError(
            ConfigErrorKind.MALFORMED_KEY,
            f"Signing key for '{network_name}' is not a 32-byte hex private key",
            network_name,
        )
    if not signing_key.startswith("0x"):
        signing_key = "0x" + signing_key

    explorer_api_url = entry.get("explorer_api_url")
    explorer_api_key = env.get(EXPLORER_API_KEY_ENV) or None
    if require_explorer and not (explorer_api_url and explorer_api_key):
        if explorer_api_url is None:
            message = f"Network '{network_name}' has no block explorer to verify against"
        else:
            message = f"Explorer API key required for verification: set ${EXPLORER_API_KEY_ENV}"
        raise ConfigError(ConfigErrorKind.MISSING_EXPLORER_KEY, message, network_name)

    return NetworkConfig(
        name=network_name,
        rpc_url=rpc_url,
        chain_id=entry["chain_id"],
        signing_key=signing_key,
        signer=Account.from_key(signing_key).address,
        explorer_url=entry.get("block_explorer_url"),
        explorer_api_url=explorer_api_url,
        explorer_api_key=explorer_api_key,
    )
