"""
Configuration Management Module

The validated Config object every component is constructed from, plus
storage of the configuration as YAML with its secrets (seed phrase,
exchange credentials) encrypted under a password-derived Fernet key.

Core components never read the environment; the CLI builds a Config from
the YAML file and/or os.environ and hands it down.
"""

import os
import base64
import typing
from dataclasses import dataclass, asdict, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from web3 import Web3

from .errors import ConfigurationError
from .liquidity import RebalancePolicy
from .orchestrator import WorkflowParams
from .retry import RetryPolicy
from .utils import logger, validate_address

NATIVE_TOKEN = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"

SECRET_FIELDS = ("seed_phrase", "exchange_api_key", "exchange_api_secret")
ENCRYPTED_PREFIX = "enc:"

# Extra environment names accepted for some fields
ENV_ALIASES = {
    "MNEMONIC": "seed_phrase",
    "SATELLITE_VARIANCE_MIN": "satellite_variance_min",
    "SATELLITE_VARIANCE_MAX": "satellite_variance_max",
    "REBALANCE_PRICE_THRESHOLD_PERCENT": "rebalance_price_threshold_percent",
    "FEE_GAS_MULTIPLE_TRIGGER": "rebalance_gas_multiplier",
    "LP_RANGE_PCT": "lp_range_percent",
    "LP_MINUTES_BEFORE_COLLECT": "collect_delay_minutes",
}


@dataclass
class Config:
    """Bot configuration settings."""

    # Networks (source chain holds the hub, destination chain runs the LP)
    source_rpc_url: str = "https://mainnet.base.org"
    source_chain_id: int = 8453
    dest_rpc_url: str = "https://api.mainnet.abs.xyz"
    dest_chain_id: int = 2741

    # Wallets
    seed_phrase: Optional[str] = None
    wallet_count: int = 5
    hub_wallet_index: int = 0
    satellite_start_index: int = 1

    # Hub distribution
    gas_price_gwei: Optional[float] = None
    min_transfer_wei: int = 200_000_000_000_000
    satellite_variance_min: float = 0.85
    satellite_variance_max: float = 1.15
    hub_funding_timeout_seconds: int = 600
    hub_funding_poll_seconds: int = 30
    sweep_keep_wei: int = 0

    # Gas top-up thresholds
    min_native_balance_wei: int = 0
    gas_top_up_target_wei: int = 0

    # Workflow
    bridge_from_token: str = NATIVE_TOKEN
    bridge_to_token: str = NATIVE_TOKEN
    bridge_amount_wei: int = 0
    swap_token_in: str = NATIVE_TOKEN
    swap_token_out: Optional[str] = None
    swap_amount_wei: int = 0
    pool_address: Optional[str] = None
    position_manager_address: Optional[str] = None
    pool_token0: Optional[str] = None
    pool_token1: Optional[str] = None
    pool_fee: int = 3000
    lp_amount0_wei: int = 0
    lp_amount1_wei: int = 0
    lp_range_percent: float = 5.0
    bridge_slippage_bps: int = 50
    swap_slippage_bps: int = 100
    lp_slippage_bps: int = 100
    bridge_timeout_seconds: int = 600
    bridge_poll_seconds: int = 3
    collect_delay_minutes: float = 10.0

    # Rebalance
    rebalance_price_threshold_percent: float = 5.0
    rebalance_gas_multiplier: float = 2.0

    # Fan-out
    max_concurrency: int = 5
    wallet_pause_seconds: float = 2.0
    batch_pause_seconds: float = 5.0

    # Retry tuning
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    receipt_timeout_seconds: int = 120

    # External APIs
    lifi_api_key: Optional[str] = None
    lifi_integrator: str = "lp-swarm"
    zerox_api_key: Optional[str] = None
    exchange_id: str = "bybit"
    exchange_api_key: Optional[str] = None
    exchange_api_secret: Optional[str] = None
    withdraw_token: str = "ETH"
    withdraw_network: str = "BASE"

    # Security
    salt: Optional[str] = None

    # Operation
    state_dir: str = ".state"
    dry_run: bool = False
    log_level: str = "INFO"
    log_file: str = "./lp_swarm.log"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        valid_fields = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__}
        return cls(**valid_fields)

    @classmethod
    def from_env(cls, environ: Mapping[str, str], base: Optional["Config"] = None) -> "Config":
        """
        Build a Config from an environment mapping.

        Variables are the upper-cased field names (plus ENV_ALIASES); values
        already in `base` are kept unless overridden.
        """
        data = base.to_dict() if base else {}
        names = {f.name.upper(): f.name for f in fields(cls)}
        names.update(ENV_ALIASES)

        for env_name, field_name in names.items():
            raw = environ.get(env_name)
            if raw is None or raw == "":
                continue
            data[field_name] = _coerce(cls.__dataclass_fields__[field_name].type, raw, env_name)
        return cls.from_dict(data)

    # Derived values

    @property
    def gas_price_wei(self) -> Optional[int]:
        if self.gas_price_gwei is None:
            return None
        return Web3.to_wei(Decimal(str(self.gas_price_gwei)), "gwei")

    @property
    def variance(self) -> Tuple[float, float]:
        return (self.satellite_variance_min, self.satellite_variance_max)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay_seconds,
            max_delay=self.retry_max_delay_seconds,
        )

    def rebalance_policy(self) -> RebalancePolicy:
        return RebalancePolicy(
            price_threshold_percent=self.rebalance_price_threshold_percent,
            gas_multiplier=self.rebalance_gas_multiplier,
        )

    def workflow_params(self) -> WorkflowParams:
        return WorkflowParams(
            source_chain_id=self.source_chain_id,
            dest_chain_id=self.dest_chain_id,
            bridge_from_token=self.bridge_from_token,
            bridge_to_token=self.bridge_to_token,
            bridge_amount_wei=self.bridge_amount_wei,
            swap_token_in=self.swap_token_in,
            swap_token_out=self.swap_token_out or "",
            swap_amount_wei=self.swap_amount_wei,
            pool_token0=self.pool_token0 or "",
            pool_token1=self.pool_token1 or "",
            pool_fee=self.pool_fee,
            lp_amount0_wei=self.lp_amount0_wei,
            lp_amount1_wei=self.lp_amount1_wei,
            lp_range_percent=self.lp_range_percent,
            bridge_slippage_bps=self.bridge_slippage_bps,
            swap_slippage_bps=self.swap_slippage_bps,
            lp_slippage_bps=self.lp_slippage_bps,
            bridge_timeout=self.bridge_timeout_seconds,
            collect_delay_seconds=self.collect_delay_minutes * 60,
            min_native_balance_wei=self.min_native_balance_wei,
        )

    def validate(self, require_seed: bool = True, require_workflow: bool = False) -> "Config":
        """Raise ConfigurationError listing every problem found."""
        problems: List[str] = []

        if require_seed and not self.seed_phrase:
            problems.append("seed_phrase (SEED_PHRASE) is required")
        if not 1 <= self.wallet_count <= 1000:
            problems.append(f"wallet_count must be 1-1000, got {self.wallet_count}")
        if not 0 <= self.hub_wallet_index <= 99:
            problems.append(f"hub_wallet_index must be 0-99, got {self.hub_wallet_index}")
        if self.satellite_start_index < 0:
            problems.append("satellite_start_index must be >= 0")
        elif self.satellite_start_index <= self.hub_wallet_index < self.satellite_start_index + self.wallet_count:
            problems.append("hub_wallet_index overlaps the satellite index range")
        if not 5 <= self.rebalance_price_threshold_percent <= 50:
            problems.append("rebalance_price_threshold_percent must be 5-50")
        if not 1 <= self.rebalance_gas_multiplier <= 10:
            problems.append("rebalance_gas_multiplier must be 1-10")
        if not 0 < self.satellite_variance_min < self.satellite_variance_max:
            problems.append("satellite_variance_min must be positive and below satellite_variance_max")
        if self.gas_price_gwei is not None and self.gas_price_gwei <= 0:
            problems.append("gas_price_gwei must be positive")
        if self.min_transfer_wei < 0:
            problems.append("min_transfer_wei must be >= 0")
        for name in ("bridge_slippage_bps", "swap_slippage_bps", "lp_slippage_bps"):
            if not 1 <= getattr(self, name) <= 5000:
                problems.append(f"{name} must be 1-5000")
        if self.lp_range_percent <= 0:
            problems.append("lp_range_percent must be positive")
        if self.max_concurrency < 1:
            problems.append("max_concurrency must be >= 1")
        if self.max_retries < 1:
            problems.append("max_retries must be >= 1")
        if self.retry_base_delay_seconds < 0 or self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            problems.append("retry delays must satisfy 0 <= base <= max")

        if require_workflow:
            for name in ("swap_token_out", "pool_address", "position_manager_address",
                         "pool_token0", "pool_token1"):
                value = getattr(self, name)
                if not value:
                    problems.append(f"{name} is required")
                elif not validate_address(value):
                    problems.append(f"{name} is not a valid address: {value}")

        if problems:
            raise ConfigurationError("Invalid configuration:\n  - " + "\n  - ".join(problems))
        return self


def _coerce(field_type: Any, raw: str, env_name: str) -> Any:
    target = field_type
    if typing.get_origin(field_type) is typing.Union:
        target = next(t for t in typing.get_args(field_type) if t is not type(None))
    try:
        if target is bool:
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if target is int:
            return int(Decimal(raw))
        if target is float:
            return float(raw)
    except (ArithmeticError, ValueError) as e:
        raise ConfigurationError(f"{env_name} must be a number, got {raw!r}") from e
    return raw


class ConfigManager:
    """Manages configuration file with encrypted secrets."""

    def __init__(self, config_path: Path = Path("./lp_swarm.yaml")):
        self.config_path = Path(config_path)
        self._kdf_iterations = 480000

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self._kdf_iterations,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def _encrypt_secrets(self, data: Dict[str, Any], password: str, salt: bytes) -> Dict[str, Any]:
        f = Fernet(self._derive_key(password, salt))
        out = dict(data)
        for name in SECRET_FIELDS:
            value = out.get(name)
            if value and not str(value).startswith(ENCRYPTED_PREFIX):
                out[name] = ENCRYPTED_PREFIX + f.encrypt(str(value).encode()).decode()
        return out

    def _decrypt_secrets(self, data: Dict[str, Any], password: str) -> Dict[str, Any]:
        encrypted = [n for n in SECRET_FIELDS if str(data.get(n) or "").startswith(ENCRYPTED_PREFIX)]
        if not encrypted:
            return dict(data)
        if not data.get("salt"):
            raise ConfigurationError(f"{self.config_path} has encrypted secrets but no salt")

        f = Fernet(self._derive_key(password, base64.b64decode(data["salt"])))
        out = dict(data)
        try:
            for name in encrypted:
                token = out[name][len(ENCRYPTED_PREFIX):]
                out[name] = f.decrypt(token.encode()).decode()
        except InvalidToken as e:
            raise ConfigurationError("Could not decrypt configuration secrets (wrong password?)") from e
        return out

    def create_config(self, config_data: Dict[str, Any], password: str) -> Config:
        """Create new configuration file, encrypting its secrets."""
        config = Config.from_dict(config_data)
        config.validate(require_seed=False)

        salt = os.urandom(16)
        data = config.to_dict()
        data["salt"] = base64.b64encode(salt).decode()
        self._write(self._encrypt_secrets(data, password, salt))

        logger.info(f"Configuration created at {self.config_path}")
        return config

    def load_config(self, password: Optional[str]) -> Config:
        """Load and decrypt configuration."""
        data = self.read_raw_config()
        if password is None and any(
            str(data.get(n) or "").startswith(ENCRYPTED_PREFIX) for n in SECRET_FIELDS
        ):
            raise ConfigurationError("A password is required to decrypt the configuration")
        config = Config.from_dict(self._decrypt_secrets(data, password or ""))
        logger.info("Configuration loaded successfully")
        return config

    def read_raw_config(self) -> Dict[str, Any]:
        """Read config without decrypting (for status checks)."""
        if not self.config_path.exists():
            raise ConfigurationError(f"Config file not found: {self.config_path}")
        with open(self.config_path, "r") as f:
            try:
                return yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Malformed YAML in {self.config_path}: {e}") from e

    def _write(self, data: Dict[str, Any]) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        os.chmod(self.config_path, 0o600)

    def update_config(self, updates: Dict[str, Any]):
        """Update non-secret configuration values."""
        secret_updates = set(updates) & set(SECRET_FIELDS)
        if secret_updates:
            raise ConfigurationError(f"Use rotate_password/create_config to change {sorted(secret_updates)}")
        data = self.read_raw_config()
        data.update(updates)
        self._write(data)
        logger.info("Configuration updated")

    def rotate_password(self, old_password: str, new_password: str):
        """Change encryption password."""
        plain = self._decrypt_secrets(self.read_raw_config(), old_password)
        salt = os.urandom(16)
        plain["salt"] = base64.b64encode(salt).decode()
        self._write(self._encrypt_secrets(plain, new_password, salt))
        logger.info("Password rotated successfully")


# Default configuration template
DEFAULT_CONFIG = """
# lp-swarm configuration
# Secrets are encrypted by `lp-swarm init`; keep this file private.

source_rpc_url: https://mainnet.base.org
source_chain_id: 8453
dest_rpc_url: https://api.mainnet.abs.xyz
dest_chain_id: 2741

wallet_count: 5
hub_wallet_index: 0
satellite_start_index: 1

# Hub distribution
min_transfer_wei: 200000000000000
satellite_variance_min: 0.85
satellite_variance_max: 1.15

# Workflow
bridge_amount_wei: 0
swap_amount_wei: 0
pool_fee: 3000
lp_range_percent: 5.0
collect_delay_minutes: 10

# Rebalance
rebalance_price_threshold_percent: 5.0
rebalance_gas_multiplier: 2.0

# Operation
max_concurrency: 5
max_retries: 3
dry_run: false
log_level: INFO
"""
