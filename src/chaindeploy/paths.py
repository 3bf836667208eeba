"""Path management utilities for chaindeploy."""

from pathlib import Path
from typing import Optional, Union


def get_default_cache_dir() -> Path:
    """
    Get default cache directory (current working directory).

    Returns:
        Path to ./.chaindeploy
    """
    return Path.cwd() / ".chaindeploy"


def get_default_deployments_dir() -> Path:
    """
    Get default directory for deployment records.

    Returns:
        Path to ./deployments
    """
    return Path.cwd() / "deployments"


def get_artifact_cache_dir(cache_root: Optional[Union[Path, str]] = None) -> Path:
    """
    Get the directory holding cached compiler outputs.

    Args:
        cache_root: Custom cache directory (defaults to ./.chaindeploy)

    Returns:
        Path to <cache_root>/artifacts
    """
    if cache_root is None:
        cache_root = get_default_cache_dir()
    else:
        cache_root = Path(cache_root).absolute()

    return cache_root / "artifacts"


def get_record_path(deployments_dir: Union[Path, str], network: str, contract_name: str) -> Path:
    """
    Get the path of a contract's deployment record.

    Returns:
        Path to <deployments_dir>/<network>/<contract_name>.json
    """
    return Path(deployments_dir) / network / f"{contract_name}.json"
