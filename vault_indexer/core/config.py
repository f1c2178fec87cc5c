"""
Runtime configuration for the vault indexer.

All runtime parameters are loaded from `vault_indexer_config.yml` (see the
sample under `parameters_yml/`). Credentials may instead come from the
environment or a `.env` file:

- `WSS_URL`: websocket endpoint for the live subscription.
- `VAULT_ADDRESS`: the ERC-4626 vault contract.
- `JSON_RPC_URLS`: space separated HTTP endpoints (replay and state reads).
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from web3 import Web3

from vault_indexer.core.errors import FatalConfigError

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "VAULT_INDEXER_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "parameters_yml/vault_indexer_config.yml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "ws_url": None,
    "json_rpc_urls": [],
    "vault_address": None,
    "abi_path": None,
    "confirmation_depth": 12,
    "sample_workers": 4,
    "sample_max_attempts": 5,
    "sample_timeout_seconds": 10.0,
    "sample_backoff_initial": 0.5,
    "sample_backoff_max": 8.0,
    "reconnect_backoff_initial": 1.0,
    "reconnect_backoff_max": 30.0,
    "reconnect_max_attempts": 10,
    "stall_retry_blocks": 10,
    "replay_chunk_blocks": 200,
    "out_dir": "data/vault_{vault}",
    "store_chunk_blocks": 1000,
    "resume_from_checkpoint": True,
    "shutdown_timeout_seconds": 10.0,
    "log_level": "INFO",
}

ENV_OVERRIDES = {
    "WSS_URL": "ws_url",
    "VAULT_ADDRESS": "vault_address",
    "JSON_RPC_URLS": "json_rpc_urls",
}

_POSITIVE_INTS = (
    "sample_workers",
    "sample_max_attempts",
    "reconnect_max_attempts",
    "stall_retry_blocks",
    "replay_chunk_blocks",
    "store_chunk_blocks",
)
_POSITIVE_FLOATS = (
    "sample_timeout_seconds",
    "sample_backoff_initial",
    "sample_backoff_max",
    "reconnect_backoff_initial",
    "reconnect_backoff_max",
    "shutdown_timeout_seconds",
)


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r") as fh:
            loaded = yaml.safe_load(fh) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise FatalConfigError(f"Cannot read configuration file {path!r}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise FatalConfigError(f"Configuration file {path!r} must contain a mapping.")
    return loaded


def _split_urls(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, (list, tuple)):
        raise FatalConfigError("Config field 'json_rpc_urls' must be a list of URLs.")
    return [str(u).strip() for u in value if str(u).strip()]


def load_config(path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Merge defaults, the YAML file and environment overrides, then validate.

    Raises `FatalConfigError` on any missing or malformed value, before any
    connection is attempted.
    """
    if env is None:
        load_dotenv(override=False)
        env = dict(os.environ)

    path = path or env.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    cfg = DEFAULT_CONFIG.copy()
    if os.path.exists(path):
        cfg.update(_read_yaml(path))
    else:
        logger.info("Configuration file %r not found. Using defaults and environment.", path)

    for env_key, cfg_key in ENV_OVERRIDES.items():
        if env.get(env_key):
            cfg[cfg_key] = env[env_key]

    ws_url = str(cfg.get("ws_url") or "").strip()
    if not ws_url.startswith(("ws://", "wss://")):
        raise FatalConfigError("Config field 'ws_url' (or WSS_URL) must be a ws:// or wss:// URL.")
    cfg["ws_url"] = ws_url

    cfg["json_rpc_urls"] = _split_urls(cfg.get("json_rpc_urls"))
    if not cfg["json_rpc_urls"]:
        raise FatalConfigError("Config field 'json_rpc_urls' must be a non-empty list (needed for replay and state reads).")

    raw_addr = str(cfg.get("vault_address") or "").strip()
    if not Web3.is_address(raw_addr):
        raise FatalConfigError(f"Config field 'vault_address' is not a valid address: {raw_addr!r}")
    cfg["vault_address"] = Web3.to_checksum_address(raw_addr)

    try:
        depth = int(cfg["confirmation_depth"])
        for key in _POSITIVE_INTS:
            cfg[key] = int(cfg[key])
        for key in _POSITIVE_FLOATS:
            cfg[key] = float(cfg[key])
    except (TypeError, ValueError) as exc:
        raise FatalConfigError(f"Malformed numeric configuration value: {exc}") from exc
    if depth < 0:
        raise FatalConfigError("Config field 'confirmation_depth' must be >= 0.")
    cfg["confirmation_depth"] = depth
    for key in (*_POSITIVE_INTS, *_POSITIVE_FLOATS):
        if cfg[key] <= 0:
            raise FatalConfigError(f"Config field {key!r} must be positive.")

    cfg["out_dir"] = str(cfg["out_dir"]).format(vault=cfg["vault_address"].lower())
    cfg["resume_from_checkpoint"] = bool(cfg.get("resume_from_checkpoint", True))
    cfg["log_level"] = str(cfg.get("log_level") or "INFO").upper()
    if cfg.get("abi_path"):
        cfg["abi_path"] = str(cfg["abi_path"])
    return cfg
