"""
Unit tests for round result extraction (core/round_result.py)
"""

import base64

from solders.pubkey import Pubkey

from ore_learner.core.constants import ORE_PROGRAM_ID
from ore_learner.core.metrics import get_metrics
from ore_learner.core.round_result import (
    SOURCE_LOGS,
    SOURCE_RETURN_DATA,
    decode_from_logs_or_return_data,
    parse_result_bytes,
    parse_result_logs,
)


class TestParseResultBytes:
    """Structured layout"""

    def test_full_layout(self, result_bytes):
        result = parse_result_bytes(result_bytes(77, 12, motherlode=5))

        assert result.round_id == 77
        assert result.winning_square == 12
        assert result.is_jackpot is True
        assert result.source == SOURCE_RETURN_DATA
        assert result.start_slot == 1000
        assert result.end_slot == 1150

    def test_minimum_size_without_motherlode(self, result_bytes):
        result = parse_result_bytes(result_bytes(5, 3)[:48])

        assert result.winning_square == 3
        assert result.is_jackpot is False

    def test_too_short(self, result_bytes):
        assert parse_result_bytes(result_bytes(5, 3)[:47]) is None

    def test_square_out_of_range(self, result_bytes):
        assert parse_result_bytes(result_bytes(5, 25)) is None

    def test_round_id_zero_is_unknown(self, result_bytes):
        result = parse_result_bytes(result_bytes(0, 4))

        assert result.round_id is None
        assert result.round_known is False


class TestLogs:
    """Free-text fallback"""

    def test_winning_square_line(self):
        result = parse_result_logs([
            "Program log: Instruction: Reset",
            "Program log: Winning square: 17",
        ])

        assert result.winning_square == 17
        assert result.source == SOURCE_LOGS
        assert result.round_known is False

    def test_underscore_form_and_motherlode(self):
        result = parse_result_logs(["Program log: winning_square=2 MOTHERLODE hit"])

        assert result.winning_square == 2
        assert result.is_jackpot is True

    def test_out_of_range_square_ignored(self):
        assert parse_result_logs(["Program log: winning square 40"]) is None


class TestDecodeFromMeta:
    """Return data first, then logs"""

    def test_return_data_preferred(self, result_bytes):
        meta = {
            "returnData": {
                "programId": ORE_PROGRAM_ID,
                "data": [base64.b64encode(result_bytes(9, 6)).decode(), "base64"],
            },
            "logMessages": ["Program log: winning square: 1"],
        }

        result = decode_from_logs_or_return_data(meta)

        assert result.winning_square == 6
        assert result.round_id == 9

    def test_return_data_from_other_program_ignored(self, result_bytes):
        meta = {
            "returnData": {
                "programId": str(Pubkey.new_unique()),
                "data": [base64.b64encode(result_bytes(9, 6)).decode(), "base64"],
            },
            "logMessages": ["Program log: winning square: 1"],
        }

        result = decode_from_logs_or_return_data(meta)

        assert result.winning_square == 1
        assert result.source == SOURCE_LOGS

    def test_program_return_log_line(self, result_bytes):
        encoded = base64.b64encode(result_bytes(11, 20)).decode()
        meta = {"logMessages": [f"Program return: {ORE_PROGRAM_ID} {encoded}"]}

        result = decode_from_logs_or_return_data(meta)

        assert result.round_id == 11
        assert result.winning_square == 20

    def test_nothing_found_counts_unknown(self):
        assert decode_from_logs_or_return_data({"logMessages": ["Program log: hi"]}) is None
        assert get_metrics().get_counter("round_result_unknown") == 1
