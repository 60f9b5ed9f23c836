import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import toml
from dotenv import load_dotenv
from loguru import logger

from ..domain.errors import ConfigError

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")

DEFAULTS: Dict[str, Dict[str, Any]] = {
    "chain": {
        "staking_contract_address": "0x06d7ee1d50828ca96e11890a1601f6fe61f1e584",
        "endgame_contract_address": "0xeea334b302bd8b1b96d4ef73b8f4467a347da6f0",
        "rpc_url": "https://api.mainnet.abs.xyz",
        "ws_rpc_url": "wss://api.mainnet.abs.xyz/ws",
        "reconnect_base_delay_seconds": 1.0,
        "reconnect_max_delay_seconds": 30.0,
        "heartbeat_interval_seconds": 300.0,
        "request_timeout_seconds": 15.0,
    },
    "store": {
        "redis_url": "redis://localhost:6379/0",
        "connect_attempts": 5,
        "connect_backoff_seconds": 1.0,
    },
    "metadata": {
        "base_uri": "https://api.onchainheroes.xyz/hero/",
        "unrevealed_image_url": "https://storage.onchainheroes.xyz/unrevealed/hero.gif",
        "timeout_seconds": 10.0,
        "level_trait": "Season 1 Level",
    },
    "reveal": {
        "settle_delay_seconds": 15.0,
        "max_attempts": 5,
        "retry_interval_seconds": 30.0,
        "retry_concurrency": 5,
        "retry_queue_size": 1000,
        "max_concurrent_fetches": 10,
    },
    "death": {
        "enabled": True,
        "settle_delay_seconds": 0.0,
    },
    "backfill": {
        "enabled": False,
        "fallback_start_block": 2273309,
        "reorg_safety": 6,
        "block_batch_size": 5000,
        "block_write_frequency": 10,
    },
    "bulk": {
        "concurrency": 50,
        "max_retries_per_token": 5,
        "max_full_loops": 5,
        "start_token_id": 1,
        "end_token_id": 10000,
    },
    "notifier": {
        "dry_run": True,
        "api_key": "",
        "api_secret": "",
        "access_token": "",
        "access_secret": "",
        "bearer_token": "",
    },
    "runtime": {
        "shutdown_grace_seconds": 2.0,
    },
    "logging": {
        "level": "INFO",
        "directory": "logs",
    },
}

ENV_KEYS: Tuple[Tuple[str, str, str], ...] = (
    ("STAKING_CONTRACT_ADDRESS", "chain", "staking_contract_address"),
    ("ENDGAME_CONTRACT_ADDRESS", "chain", "endgame_contract_address"),
    ("RPC_URL", "chain", "rpc_url"),
    ("WS_RPC_URL", "chain", "ws_rpc_url"),
    ("RECONNECT_BASE_DELAY", "chain", "reconnect_base_delay_seconds"),
    ("RECONNECT_MAX_DELAY", "chain", "reconnect_max_delay_seconds"),
    ("HEARTBEAT_INTERVAL", "chain", "heartbeat_interval_seconds"),
    ("RPC_REQUEST_TIMEOUT", "chain", "request_timeout_seconds"),
    ("REDIS_URL", "store", "redis_url"),
    ("STORE_CONNECT_ATTEMPTS", "store", "connect_attempts"),
    ("STORE_CONNECT_BACKOFF", "store", "connect_backoff_seconds"),
    ("NFT_COLLECTION_BASE_URI", "metadata", "base_uri"),
    ("UNREVEALED_IMAGE_URL", "metadata", "unrevealed_image_url"),
    ("HTTP_TIMEOUT", "metadata", "timeout_seconds"),
    ("LEVEL_TRAIT", "metadata", "level_trait"),
    ("SETTLE_DELAY", "reveal", "settle_delay_seconds"),
    ("RETRY_MAX_ATTEMPTS", "reveal", "max_attempts"),
    ("RETRY_INTERVAL", "reveal", "retry_interval_seconds"),
    ("RETRY_CONCURRENCY", "reveal", "retry_concurrency"),
    ("RETRY_QUEUE_SIZE", "reveal", "retry_queue_size"),
    ("MAX_CONCURRENT_FETCHES", "reveal", "max_concurrent_fetches"),
    ("DEATH_ENABLED", "death", "enabled"),
    ("DEATH_SETTLE_DELAY", "death", "settle_delay_seconds"),
    ("BACKFILL_ENABLED", "backfill", "enabled"),
    ("FALLBACK_START_BLOCK", "backfill", "fallback_start_block"),
    ("REORG_SAFETY", "backfill", "reorg_safety"),
    ("BLOCK_BATCH_SIZE", "backfill", "block_batch_size"),
    ("BLOCK_WRITE_FREQUENCY", "backfill", "block_write_frequency"),
    ("BULK_CONCURRENCY", "bulk", "concurrency"),
    ("BULK_MAX_RETRIES", "bulk", "max_retries_per_token"),
    ("BULK_MAX_LOOPS", "bulk", "max_full_loops"),
    ("BULK_START_TOKEN", "bulk", "start_token_id"),
    ("BULK_END_TOKEN", "bulk", "end_token_id"),
    ("DRY_RUN", "notifier", "dry_run"),
    ("TWITTER_API_KEY", "notifier", "api_key"),
    ("TWITTER_API_SECRET", "notifier", "api_secret"),
    ("TWITTER_ACCESS_TOKEN", "notifier", "access_token"),
    ("TWITTER_ACCESS_SECRET", "notifier", "access_secret"),
    ("TWITTER_BEARER_TOKEN", "notifier", "bearer_token"),
    ("SHUTDOWN_GRACE", "runtime", "shutdown_grace_seconds"),
    ("LOG_LEVEL", "logging", "level"),
    ("LOG_DIR", "logging", "directory"),
)

_SECRET_KEYS = {"api_key", "api_secret", "access_token", "access_secret", "bearer_token"}


def _require(cond: bool, message: str) -> None:
    if not cond:
        raise ConfigError(message)


def _check_url(value: str, label: str, schemes: Tuple[str, ...]) -> None:
    _require(bool(value), f"{label} is required")
    _require(value.split("://", 1)[0].lower() in schemes, f"{label} must use one of {schemes}: {value}")


@dataclass(frozen=True)
class ChainSettings:
    staking_contract_address: str
    endgame_contract_address: str
    rpc_url: str
    ws_rpc_url: str
    reconnect_base_delay_seconds: float = 1.0
    reconnect_max_delay_seconds: float = 30.0
    heartbeat_interval_seconds: float = 300.0
    request_timeout_seconds: float = 15.0

    def __post_init__(self):
        for label in ("staking_contract_address", "endgame_contract_address"):
            _require(bool(_ADDRESS_RE.match(getattr(self, label))), f"chain.{label} is not a 20-byte hex address")
        _check_url(self.rpc_url, "chain.rpc_url", ("http", "https"))
        _check_url(self.ws_rpc_url, "chain.ws_rpc_url", ("ws", "wss"))
        _require(self.reconnect_base_delay_seconds >= 0, "chain.reconnect_base_delay_seconds must be >= 0")
        _require(
            self.reconnect_max_delay_seconds >= self.reconnect_base_delay_seconds,
            "chain.reconnect_max_delay_seconds must be >= reconnect_base_delay_seconds",
        )
        _require(self.heartbeat_interval_seconds >= 0, "chain.heartbeat_interval_seconds must be >= 0")
        _require(self.request_timeout_seconds > 0, "chain.request_timeout_seconds must be > 0")


@dataclass(frozen=True)
class StoreSettings:
    redis_url: str
    connect_attempts: int = 5
    connect_backoff_seconds: float = 1.0

    def __post_init__(self):
        _check_url(self.redis_url, "store.redis_url", ("redis", "rediss", "unix"))
        _require(self.connect_attempts >= 1, "store.connect_attempts must be >= 1")
        _require(self.connect_backoff_seconds >= 0, "store.connect_backoff_seconds must be >= 0")


@dataclass(frozen=True)
class MetadataSettings:
    base_uri: str
    unrevealed_image_url: str
    timeout_seconds: float = 10.0
    level_trait: str = "Season 1 Level"

    def __post_init__(self):
        _check_url(self.base_uri, "metadata.base_uri", ("http", "https"))
        _check_url(self.unrevealed_image_url, "metadata.unrevealed_image_url", ("http", "https"))
        _require(self.timeout_seconds > 0, "metadata.timeout_seconds must be > 0")
        _require(bool(self.level_trait), "metadata.level_trait is required")


@dataclass(frozen=True)
class RevealSettings:
    settle_delay_seconds: float = 15.0
    max_attempts: int = 5
    retry_interval_seconds: float = 30.0
    retry_concurrency: int = 5
    retry_queue_size: int = 1000
    max_concurrent_fetches: int = 10

    def __post_init__(self):
        _require(self.settle_delay_seconds >= 0, "reveal.settle_delay_seconds must be >= 0")
        _require(self.max_attempts >= 1, "reveal.max_attempts must be >= 1")
        _require(self.retry_interval_seconds > 0, "reveal.retry_interval_seconds must be > 0")
        _require(self.retry_concurrency >= 1, "reveal.retry_concurrency must be >= 1")
        _require(self.retry_queue_size >= 1, "reveal.retry_queue_size must be >= 1")
        _require(self.max_concurrent_fetches >= 1, "reveal.max_concurrent_fetches must be >= 1")


@dataclass(frozen=True)
class DeathSettings:
    enabled: bool = True
    settle_delay_seconds: float = 0.0

    def __post_init__(self):
        _require(self.settle_delay_seconds >= 0, "death.settle_delay_seconds must be >= 0")


@dataclass(frozen=True)
class BackfillSettings:
    enabled: bool = False
    fallback_start_block: int = 2273309
    reorg_safety: int = 6
    block_batch_size: int = 5000
    block_write_frequency: int = 10

    def __post_init__(self):
        _require(self.fallback_start_block >= 0, "backfill.fallback_start_block must be >= 0")
        _require(self.reorg_safety >= 0, "backfill.reorg_safety must be >= 0")
        _require(self.block_batch_size >= 1, "backfill.block_batch_size must be >= 1")
        _require(self.block_write_frequency >= 1, "backfill.block_write_frequency must be >= 1")


@dataclass(frozen=True)
class BulkSettings:
    concurrency: int = 50
    max_retries_per_token: int = 5
    max_full_loops: int = 5
    start_token_id: int = 1
    end_token_id: int = 10000

    def __post_init__(self):
        _require(self.concurrency >= 1, "bulk.concurrency must be >= 1")
        _require(self.max_retries_per_token >= 1, "bulk.max_retries_per_token must be >= 1")
        _require(self.max_full_loops >= 1, "bulk.max_full_loops must be >= 1")
        _require(self.start_token_id >= 0, "bulk.start_token_id must be >= 0")
        _require(self.end_token_id >= self.start_token_id, "bulk.end_token_id must be >= start_token_id")


@dataclass(frozen=True)
class NotifierSettings:
    dry_run: bool = True
    api_key: str = ""
    api_secret: str = ""
    access_token: str = ""
    access_secret: str = ""
    bearer_token: str = ""

    def __post_init__(self):
        if self.dry_run:
            return
        missing = [k for k in ("api_key", "api_secret", "access_token", "access_secret") if not getattr(self, k)]
        _require(not missing, f"notifier.dry_run=false requires Twitter credentials; missing {missing}")


@dataclass(frozen=True)
class RuntimeSettings:
    shutdown_grace_seconds: float = 2.0

    def __post_init__(self):
        _require(self.shutdown_grace_seconds >= 0, "runtime.shutdown_grace_seconds must be >= 0")


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    directory: str = "logs"


@dataclass
class OverrideRecord:
    key: str
    source: str
    old: Any
    new: Any


@dataclass
class AppConfig:
    chain: ChainSettings
    store: StoreSettings
    metadata: MetadataSettings
    reveal: RevealSettings
    death: DeathSettings
    backfill: BackfillSettings
    bulk: BulkSettings
    notifier: NotifierSettings
    runtime: RuntimeSettings
    logging: LoggingSettings
    overrides: List[OverrideRecord] = field(default_factory=list)
    loaded_files: List[str] = field(default_factory=list)

    @classmethod
    def load(
        cls,
        settings_path: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        use_dotenv: bool = True,
    ) -> "AppConfig":
        """defaults <- TOML file <- environment. Later layers win."""
        if env is None:
            if use_dotenv:
                load_dotenv()
            env = os.environ

        layers: List[Tuple[Dict[str, Any], str]] = []
        loaded_files: List[str] = []
        if settings_path:
            if not os.path.exists(settings_path):
                raise ConfigError(f"settings file not found: {settings_path}")
            with open(settings_path, "r", encoding="utf-8") as f:
                try:
                    layers.append((toml.load(f), os.path.basename(settings_path)))
                except toml.TomlDecodeError as exc:
                    raise ConfigError(f"invalid TOML in {settings_path}: {exc}") from exc
            loaded_files.append(settings_path)

        env_layer = _load_env_overrides(env)
        if env_layer:
            layers.append((env_layer, "env"))

        merged: Dict[str, Any] = {section: dict(values) for section, values in DEFAULTS.items()}
        overrides: List[OverrideRecord] = []
        for payload, source in layers:
            _merge_dicts(merged, payload, source, overrides)

        try:
            cfg = cls(
                chain=_build(ChainSettings, merged, "chain"),
                store=_build(StoreSettings, merged, "store"),
                metadata=_build(MetadataSettings, merged, "metadata"),
                reveal=_build(RevealSettings, merged, "reveal"),
                death=_build(DeathSettings, merged, "death"),
                backfill=_build(BackfillSettings, merged, "backfill"),
                bulk=_build(BulkSettings, merged, "bulk"),
                notifier=_build(NotifierSettings, merged, "notifier"),
                runtime=_build(RuntimeSettings, merged, "runtime"),
                logging=_build(LoggingSettings, merged, "logging"),
                overrides=overrides,
                loaded_files=loaded_files,
            )
        except (TypeError, ValueError) as exc:
            if isinstance(exc, ConfigError):
                raise
            raise ConfigError(str(exc)) from exc
        return cfg

    def log_summary(self) -> None:
        logger.info(f"CONFIG_FILES | loaded={', '.join(self.loaded_files) or '<none>'}")
        for o in self.overrides:
            old, new = o.old, o.new
            if o.key.rsplit(".", 1)[-1] in _SECRET_KEYS:
                old, new = "***", "***"
            logger.info(f"CONFIG_OVERRIDE | key={o.key} | source={o.source} | old={old} | new={new}")
        logger.info(
            f"CONFIG_CHAIN | staking={self.chain.staking_contract_address} | endgame={self.chain.endgame_contract_address} | "
            f"ws={self.chain.ws_rpc_url} | rpc={self.chain.rpc_url}"
        )
        logger.info(
            f"CONFIG_REVEAL | settle={self.reveal.settle_delay_seconds}s | max_attempts={self.reveal.max_attempts} | "
            f"retry_interval={self.reveal.retry_interval_seconds}s | concurrency={self.reveal.retry_concurrency} | "
            f"max_fetches={self.reveal.max_concurrent_fetches}"
        )
        logger.info(
            f"CONFIG_FLAGS | dry_run={self.notifier.dry_run} | death={self.death.enabled} | backfill={self.backfill.enabled}"
        )


def _merge_dicts(dst: Dict[str, Any], src: Dict[str, Any], source: str, overrides: List[OverrideRecord], prefix: str = "") -> None:
    for key, value in src.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and isinstance(dst.get(key), dict):
            _merge_dicts(dst[key], value, source, overrides, full_key)
        elif isinstance(value, dict):
            dst[key] = value.copy()
        else:
            if key in dst and dst[key] != value:
                overrides.append(OverrideRecord(full_key, source, dst[key], value))
            dst[key] = value


def _load_env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_key, section, key in ENV_KEYS:
        raw = env.get(env_key)
        if raw is None or raw == "":
            continue
        overrides.setdefault(section, {})[key] = _coerce_env_value(raw, DEFAULTS[section][key])
    return overrides


def _coerce_env_value(val: str, default: Any = None) -> Any:
    # inline comments from .env files
    val = val.split(" #", 1)[0].strip()
    if isinstance(default, str):
        return val
    lowered = val.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    if lowered.startswith("0x"):
        return val
    try:
        return int(val)
    except ValueError:
        pass
    try:
        return float(val)
    except ValueError:
        pass
    return val


def _build(section_cls, merged: Dict[str, Any], name: str):
    section = merged.get(name, {}) or {}
    defaults = DEFAULTS[name]
    unknown = set(section) - set(defaults)
    if unknown:
        raise ConfigError(f"unknown keys in [{name}]: {sorted(unknown)}")
    kwargs = {}
    for key, default in defaults.items():
        kwargs[key] = _cast(section.get(key, default), default, f"{name}.{key}")
    return section_cls(**kwargs)


def _cast(value: Any, default: Any, label: str) -> Any:
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if isinstance(default, int):
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            return int(value)
        if isinstance(default, float):
            return float(value)
        return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {label}: {value!r}") from exc
