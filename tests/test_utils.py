"""
Tests for log redaction, logging setup and formatting helpers.
"""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from lp_swarm.errors import OperationTimeoutError
from lp_swarm.utils import (
    LOGGER_NAME, format_address, format_duration, format_eth, format_tx_hash, format_wei,
    redact, sanitize_error_message, setup_logging, validate_address,
)
from fakes import TEST_MNEMONIC

PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TX_HASH = "0x" + "5c" * 32


class TestRedaction:
    def test_private_key(self):
        """64-hex secrets never survive."""
        assert PRIVATE_KEY not in redact(f"signing with {PRIVATE_KEY}")
        assert "[PRIVATE_KEY_REDACTED]" in redact(f"signing with {PRIVATE_KEY}")

    def test_seed_phrase(self):
        text = redact(f"seed_phrase: {TEST_MNEMONIC}")
        assert "junk" not in text
        assert text.startswith("seed_phrase=[REDACTED]")

    def test_credentials(self):
        assert "hunter2hunter2" not in redact("password='hunter2hunter2'")
        assert "abcd1234efgh" not in redact("api_key=abcd1234efgh")
        assert "abcd1234efgh" not in redact('{"x-lifi-api-key": "abcd1234efgh"}')

    def test_labelled_tx_hash_stays_readable(self):
        """A hash after "tx " survives so a stuck transaction can be looked up."""
        error = OperationTimeoutError(f"swap tx {TX_HASH} not mined within 120s")
        assert TX_HASH in sanitize_error_message(error)
        assert redact(f"tx_hash={TX_HASH}") == f"tx_hash={TX_HASH}"
        assert TX_HASH not in redact(f"sent {TX_HASH}")

    def test_plain_text_untouched(self):
        message = "Bridge route 42 delivered to 0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
        assert redact(message) == message

    def test_error_message_truncated(self):
        text = sanitize_error_message(RuntimeError("x" * 500), max_length=50)
        assert len(text) == 53
        assert text.endswith("...")

    def test_empty_error_uses_class_name(self):
        assert sanitize_error_message(TimeoutError()) == "TimeoutError"


class TestSetupLogging:
    def test_file_handler_receives_redacted_records(self, tmp_path):
        log_file = tmp_path / "logs" / "lp_swarm.log"
        secure = setup_logging("DEBUG", str(log_file))
        secure.info("loaded key %s", PRIVATE_KEY)
        for handler in logging.getLogger(LOGGER_NAME).handlers:
            handler.flush()

        content = log_file.read_text()
        assert "loaded key [PRIVATE_KEY_REDACTED]" in content
        assert PRIVATE_KEY not in content

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        setup_logging("INFO", str(tmp_path / "a.log"))
        setup_logging("WARNING", None)
        base = logging.getLogger(LOGGER_NAME)
        assert len(base.handlers) == 1
        assert base.level == logging.WARNING


class TestFormatting:
    def test_format_wei(self):
        assert format_wei(0) == "0"
        assert format_wei(10 ** 18) == "1.0000"
        assert format_wei(5 * 10 ** 14) == "0.000500"
        assert format_eth(2_500 * 10 ** 18) == "2,500.00 ETH"

    def test_format_duration(self):
        assert format_duration(45) == "45s"
        assert format_duration(90) == "1m 30s"
        assert format_duration(600) == "10m"
        assert format_duration(7200) == "2h"
        assert format_duration(3900) == "1h 5m"

    def test_shortening(self):
        assert format_address("0x70997970C51812dc3A010C7d01b50e0d17dc79C8") == "0x709979...dc79C8"
        assert format_tx_hash("0x" + "ab" * 32) == "0xababab...abababab"
        assert format_tx_hash("0xDRYRUN") == "0xDRYRUN"

    def test_validate_address(self):
        assert validate_address("0x70997970C51812dc3A010C7d01b50e0d17dc79C8")
        assert not validate_address("0x1234")
        assert not validate_address(None)
