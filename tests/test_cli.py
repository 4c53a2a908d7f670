"""
Tests for the command line entry point.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from lp_swarm.cli import PASSWORD_ENV, build_parser, main
from lp_swarm.config import ConfigManager
from lp_swarm.state import StateStore
from lp_swarm.wallets import derive_wallet
from fakes import TEST_MNEMONIC

PASSWORD = "test_password_123"


@pytest.fixture
def env(tmp_path, monkeypatch):
    for name in ("SEED_PHRASE", "MNEMONIC", PASSWORD_ENV, "DRY_RUN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "lp_swarm.log"))
    return monkeypatch


class TestParser:
    def test_run_requires_wallet(self):
        """run needs --wallet."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run"])

    def test_resume_and_fresh_are_exclusive(self):
        """--resume and --fresh cannot be combined."""
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "--wallet", "1", "--resume", "--fresh"])

    def test_run_multi_flags(self):
        args = build_parser().parse_args(["--dry-run", "run-multi", "--concurrency", "4", "--fresh"])
        assert args.dry_run
        assert args.concurrency == 4
        assert args.fresh

    def test_no_command_prints_help(self, env):
        assert main([]) == 1


class TestMain:
    def test_status_with_empty_state_dir(self, env, tmp_path):
        """status works without a config file or seed."""
        assert main(["--config", str(tmp_path / "missing.yaml"), "status"]) == 0

    def test_missing_seed_is_reported(self, env, tmp_path, capsys):
        """Commands that derive wallets need a seed phrase."""
        assert main(["--config", str(tmp_path / "missing.yaml"), "wallets"]) == 1
        assert "seed_phrase" in capsys.readouterr().out

    def test_wallets_from_environment_seed(self, env, tmp_path):
        """MNEMONIC in the environment is enough to list wallets."""
        env.setenv("MNEMONIC", TEST_MNEMONIC)
        assert main(["--config", str(tmp_path / "missing.yaml"), "wallets"]) == 0

    def test_unknown_satellite(self, env, tmp_path):
        """An index outside the swarm is rejected."""
        env.setenv("MNEMONIC", TEST_MNEMONIC)
        assert main(["--config", str(tmp_path / "missing.yaml"), "reset", "--wallet", "99"]) == 1

    def test_reset_deletes_state(self, env, tmp_path):
        """reset --wallet removes that wallet's state file."""
        env.setenv("MNEMONIC", TEST_MNEMONIC)
        store = StateStore(tmp_path / "state")
        address = derive_wallet(TEST_MNEMONIC, 1).address
        store.create_state(address)

        assert main(["--config", str(tmp_path / "missing.yaml"), "reset", "--wallet", "1"]) == 0
        assert not store.has_state(address)

    def test_encrypted_config_with_password_env(self, env, tmp_path):
        """Encrypted secrets are unlocked with LP_SWARM_PASSWORD."""
        path = tmp_path / "lp_swarm.yaml"
        ConfigManager(path).create_config({"seed_phrase": TEST_MNEMONIC, "wallet_count": 2}, PASSWORD)

        env.setenv(PASSWORD_ENV, PASSWORD)
        assert main(["--config", str(path), "wallets"]) == 0

        env.setenv(PASSWORD_ENV, "wrong_password_456")
        assert main(["--config", str(path), "wallets"]) == 1
