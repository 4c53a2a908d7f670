"""
Orchestrator state and its durable store.

One JSON document per wallet under the state directory. Integer amounts are
written as decimal strings so nothing loses precision on the way to disk,
and every write goes through a temp file plus rename so a crash never
leaves a truncated record behind.
"""

import hashlib
import json
import os
import tempfile
import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Optional, Set, Tuple, Union

from .errors import InvalidParamsError, StateCorruptedError
from .liquidity import LiquidityPosition
from .utils import logger, format_address

STATE_FILE_PREFIX = "orchestrator-"


class OrchestratorStep(str, Enum):
    IDLE = "idle"
    BRIDGE_PENDING = "bridge_pending"
    BRIDGE_DONE = "bridge_done"
    SWAP_PENDING = "swap_pending"
    SWAP_DONE = "swap_done"
    LP_PENDING = "lp_pending"
    LP_DONE = "lp_done"
    COLLECT_PENDING = "collect_pending"
    COLLECT_DONE = "collect_done"
    ERROR = "error"


class OperationIntent(str, Enum):
    BRIDGE = "bridge"
    SWAP = "swap"
    LP_CREATE = "lp_create"
    LP_COLLECT = "lp_collect"
    WITHDRAW = "withdraw"
    DISTRIBUTE = "distribute"


def operation_id(address: str, intent: Union[OperationIntent, str], params: Optional[Dict[str, Any]] = None) -> str:
    """Deterministic ID for one financial action of one wallet."""
    intent_value = intent.value if isinstance(intent, OperationIntent) else str(intent)
    canonical = json.dumps(params or {}, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{address.lower()}|{intent_value}|{canonical}".encode()).hexdigest()
    return f"op_{digest[:16]}"


class _Record:
    """to_dict/from_dict for result records, with big integers as strings."""

    INT_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in self.INT_FIELDS:
            if data.get(name) is not None:
                data[name] = str(data[name])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        valid = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        for name in cls.INT_FIELDS:
            if valid.get(name) is not None:
                valid[name] = int(valid[name])
        return cls(**valid)


@dataclass
class BridgeResult(_Record):
    route_id: str
    tx_hash: str
    from_amount: int
    to_amount: int
    status: str
    success: bool
    error: Optional[str] = None

    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("from_amount", "to_amount")


@dataclass
class SwapResult(_Record):
    token_in: str
    token_out: str
    amount_in: int
    amount_out: int
    tx_hash: str
    success: bool
    target: str = ""
    error: Optional[str] = None

    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("amount_in", "amount_out")


@dataclass
class LpResult(_Record):
    token0: str
    token1: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    amount0: int
    amount1: int
    tx_hash: str
    success: bool
    token_id: Optional[int] = None
    error: Optional[str] = None

    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("liquidity", "amount0", "amount1", "token_id")


@dataclass
class CollectResult(_Record):
    amount0: int
    amount1: int
    tx_hash: str
    success: bool
    token_id: Optional[int] = None
    error: Optional[str] = None

    INT_FIELDS: ClassVar[Tuple[str, ...]] = ("amount0", "amount1", "token_id")


@dataclass
class PendingTx(_Record):
    """A step transaction the node accepted whose receipt has not been seen yet."""
    step: str
    tx_hash: str
    data: Dict[str, str] = field(default_factory=dict)


StepResult = Union[BridgeResult, SwapResult, LpResult, CollectResult]

# state attribute holding each step's result
RESULT_FIELDS = {
    "bridge": ("bridge_result", BridgeResult),
    "swap": ("swap_result", SwapResult),
    "lp": ("position_result", LpResult),
    "collect": ("collect_result", CollectResult),
}


@dataclass
class OrchestratorState:
    wallet: str
    current_step: OrchestratorStep = OrchestratorStep.IDLE
    bridge_result: Optional[BridgeResult] = None
    swap_result: Optional[SwapResult] = None
    position_result: Optional[LpResult] = None
    collect_result: Optional[CollectResult] = None
    position: Optional[LiquidityPosition] = None
    pending_tx: Optional[PendingTx] = None
    executed_operations: Set[str] = field(default_factory=set)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def result_for(self, step: str) -> Optional[StepResult]:
        return getattr(self, RESULT_FIELDS[step][0])

    def is_operation_executed(self, op_id: str) -> bool:
        return op_id in self.executed_operations

    def mark_operation_executed(self, op_id: str) -> None:
        self.executed_operations.add(op_id)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "wallet": self.wallet,
            "current_step": self.current_step.value,
            "executed_operations": sorted(self.executed_operations),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "position": self.position.to_dict() if self.position else None,
            "pending_tx": self.pending_tx.to_dict() if self.pending_tx else None,
        }
        for attr, _ in RESULT_FIELDS.values():
            result = getattr(self, attr)
            data[attr] = result.to_dict() if result else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OrchestratorState":
        kwargs: Dict[str, Any] = {
            "wallet": data["wallet"],
            "current_step": OrchestratorStep(data.get("current_step", "idle")),
            "executed_operations": set(data.get("executed_operations") or []),
            "created_at": data.get("created_at", time.time()),
            "updated_at": data.get("updated_at", time.time()),
        }
        if data.get("position"):
            kwargs["position"] = LiquidityPosition.from_dict(data["position"])
        if data.get("pending_tx"):
            kwargs["pending_tx"] = PendingTx.from_dict(data["pending_tx"])
        for attr, result_cls in RESULT_FIELDS.values():
            if data.get(attr):
                kwargs[attr] = result_cls.from_dict(data[attr])
        return cls(**kwargs)


class StateStore:
    """Crash-safe per-wallet persistence of OrchestratorState."""

    def __init__(self, state_dir: Union[str, Path] = ".state"):
        self.state_dir = Path(state_dir)

    def state_path(self, address: str) -> Path:
        return self.state_dir / f"{STATE_FILE_PREFIX}{address.lower()}.json"

    def has_state(self, address: str) -> bool:
        return self.state_path(address).exists()

    def load_state(self, address: str) -> Optional[OrchestratorState]:
        """Return the stored state, or None on first run."""
        path = self.state_path(address)
        if not path.exists():
            return None
        return self._read(path)

    def _read(self, path: Path) -> OrchestratorState:
        try:
            with open(path, "r") as f:
                return OrchestratorState.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            raise StateCorruptedError(f"Corrupt state file {path}: {e}", context={"path": str(path)}) from e

    def save_state(self, state: OrchestratorState) -> OrchestratorState:
        """Atomically write the full state."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.state_path(state.wallet)
        payload = json.dumps(state.to_dict(), indent=2)

        fd, tmp_name = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=self.state_dir)
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return state

    def create_state(self, address: str, persist: bool = True) -> OrchestratorState:
        state = OrchestratorState(wallet=address)
        if persist:
            self.save_state(state)
        logger.debug(f"Created fresh state for {format_address(address)}")
        return state

    def update_state(self, state: OrchestratorState, persist: bool = True, **updates: Any) -> OrchestratorState:
        """Merge `updates` into `state`, refresh updated_at and persist."""
        for name, value in updates.items():
            if name not in OrchestratorState.__dataclass_fields__:
                raise InvalidParamsError(f"Unknown state field: {name}")
            setattr(state, name, value)
        state.updated_at = time.time()
        if persist:
            self.save_state(state)
        return state

    def delete_state(self, address: str) -> bool:
        path = self.state_path(address)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted state for {format_address(address)}")
        return True

    def list_states(self) -> List[OrchestratorState]:
        """Every readable stored state; corrupt files are logged and skipped."""
        if not self.state_dir.exists():
            return []

        states = []
        with os.scandir(self.state_dir) as entries:
            for entry in sorted(entries, key=lambda e: e.name):
                if not (entry.is_file() and entry.name.startswith(STATE_FILE_PREFIX)
                        and entry.name.endswith(".json")):
                    continue
                try:
                    states.append(self._read(Path(entry.path)))
                except StateCorruptedError as e:
                    logger.warning(str(e))
        return states
