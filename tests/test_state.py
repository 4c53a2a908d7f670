"""
Tests for orchestrator state records and the atomic JSON store.
"""

import json
import os
import stat
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from lp_swarm.errors import InvalidParamsError, StateCorruptedError
from lp_swarm.liquidity import LiquidityPosition
from lp_swarm.state import (
    BridgeResult, LpResult, OperationIntent, OrchestratorState,
    OrchestratorStep, PendingTx, StateStore, SwapResult, operation_id,
)

WALLET = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
BIG = 123456789012345678901234567890


def full_state() -> OrchestratorState:
    state = OrchestratorState(wallet=WALLET, current_step=OrchestratorStep.LP_DONE)
    state.bridge_result = BridgeResult("route-1", "0xabc", BIG, BIG - 1, "DONE", True)
    state.swap_result = SwapResult("0xin", "0xout", 10 ** 18, 2_500_000, "0xdef", True, target="0xrouter")
    state.position_result = LpResult("0xt0", "0xt1", -540, 540, BIG, 1, 2, "0xmint", True, token_id=77)
    state.position = LiquidityPosition(-540, 540, liquidity=BIG, token_id=77, last_rebalance_price=1_000_000)
    state.mark_operation_executed("op_1234")
    return state


class TestOperationId:
    def test_deterministic_and_case_insensitive(self):
        a = operation_id(WALLET, OperationIntent.SWAP, {"amount": 1, "in": "x"})
        b = operation_id(WALLET.lower(), "swap", {"in": "x", "amount": 1})
        assert a == b
        assert a.startswith("op_") and len(a) == 19

    def test_params_change_the_id(self):
        assert operation_id(WALLET, OperationIntent.SWAP, {"amount": 1}) != \
            operation_id(WALLET, OperationIntent.SWAP, {"amount": 2})
        assert operation_id(WALLET, OperationIntent.SWAP) != operation_id(WALLET, OperationIntent.BRIDGE)


class TestOrchestratorState:
    def test_round_trip_keeps_big_integers(self):
        """Amounts beyond 2**53 survive JSON as decimal strings."""
        state = full_state()
        data = json.loads(json.dumps(state.to_dict()))
        assert data["bridge_result"]["from_amount"] == str(BIG)

        restored = OrchestratorState.from_dict(data)
        assert restored.bridge_result.from_amount == BIG
        assert restored.position.liquidity == BIG
        assert restored.position_result.token_id == 77
        assert restored.current_step == OrchestratorStep.LP_DONE
        assert restored.is_operation_executed("op_1234")
        assert restored.to_dict() == state.to_dict()

    def test_result_for(self):
        state = full_state()
        assert state.result_for("swap") is state.swap_result
        assert state.result_for("collect") is None


class TestStateStore:
    def test_pending_tx_survives_reload(self, tmp_path):
        store = StateStore(tmp_path)
        state = OrchestratorState(wallet=WALLET, current_step=OrchestratorStep.ERROR)
        state.pending_tx = PendingTx("swap", "0x" + "12" * 32, {"amount_out": str(BIG), "target": "0xrouter"})
        store.save_state(state)

        restored = store.load_state(WALLET)
        assert restored.pending_tx.step == "swap"
        assert restored.pending_tx.tx_hash == "0x" + "12" * 32
        assert int(restored.pending_tx.data["amount_out"]) == BIG

    def test_load_missing_returns_none(self, tmp_path):
        assert StateStore(tmp_path).load_state(WALLET) is None

    def test_save_and_load(self, tmp_path):
        store = StateStore(tmp_path)
        store.save_state(full_state())
        loaded = store.load_state(WALLET.lower())
        assert loaded.swap_result.target == "0xrouter"
        assert store.state_path(WALLET).name == f"orchestrator-{WALLET.lower()}.json"

    def test_file_permissions(self, tmp_path):
        store = StateStore(tmp_path)
        store.create_state(WALLET)
        if os.name != 'nt':
            assert stat.S_IMODE(store.state_path(WALLET).stat().st_mode) == 0o600

    def test_failed_write_keeps_previous_file(self, tmp_path):
        """A crash mid-write leaves the old document and no temp files."""
        store = StateStore(tmp_path)
        store.save_state(full_state())
        before = store.state_path(WALLET).read_text()

        broken = full_state()
        broken.current_step = OrchestratorStep.COLLECT_DONE
        with patch("lp_swarm.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.save_state(broken)

        assert store.state_path(WALLET).read_text() == before
        assert [p.name for p in tmp_path.iterdir()] == [store.state_path(WALLET).name]

    def test_corrupt_file_raises(self, tmp_path):
        store = StateStore(tmp_path)
        store.state_path(WALLET).write_text("{not json")
        with pytest.raises(StateCorruptedError):
            store.load_state(WALLET)

    def test_update_state(self, tmp_path):
        store = StateStore(tmp_path)
        state = store.create_state(WALLET)
        store.update_state(state, current_step=OrchestratorStep.SWAP_DONE)
        assert store.load_state(WALLET).current_step == OrchestratorStep.SWAP_DONE

    def test_update_without_persist(self, tmp_path):
        store = StateStore(tmp_path)
        state = store.create_state(WALLET, persist=False)
        store.update_state(state, persist=False, current_step=OrchestratorStep.BRIDGE_DONE)
        assert state.current_step == OrchestratorStep.BRIDGE_DONE
        assert not store.has_state(WALLET)

    def test_update_unknown_field(self, tmp_path):
        store = StateStore(tmp_path)
        state = store.create_state(WALLET)
        with pytest.raises(InvalidParamsError):
            store.update_state(state, nonsense=1)

    def test_delete_state(self, tmp_path):
        store = StateStore(tmp_path)
        store.create_state(WALLET)
        assert store.delete_state(WALLET)
        assert not store.delete_state(WALLET)
        assert not store.has_state(WALLET)

    def test_list_states_skips_corrupt_and_foreign_files(self, tmp_path):
        store = StateStore(tmp_path)
        store.create_state(WALLET)
        store.save_state(OrchestratorState(wallet="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"))
        (tmp_path / "orchestrator-0xbad.json").write_text("[]")
        (tmp_path / "notes.txt").write_text("hello")

        wallets = {s.wallet for s in store.list_states()}
        assert wallets == {WALLET, "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"}

    def test_list_states_without_directory(self, tmp_path):
        assert StateStore(tmp_path / "missing").list_states() == []
