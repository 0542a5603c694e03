"""
Round result extraction
Round results are not carried in the Reset instruction body; they surface as
program return data or in log lines. Fallback order:

1. Structured return data (meta.returnData, or a "Program return:" log line)
2. Free-text "winning square: N" log lines

A log-line match never carries a round id. Round id 0 is treated as unknown,
callers must take the id from board state.
"""

import base64
import binascii
import re
import struct
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from ore_learner.core.constants import BOARD_SIZE, ORE_PROGRAM_ID
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()

# disc(8) round_id(8) start_slot(8) end_slot(8) winning_square(8) reserved(8) motherlode(8)
RESULT_MIN_SIZE = 48
_RESULT_HEAD = struct.Struct("<QQQQQ")
_U64 = struct.Struct("<Q")

SOURCE_RETURN_DATA = "return_data"
SOURCE_LOGS = "logs"

_RETURN_LOG_PREFIX = "Program return: "
_WINNING_SQUARE = re.compile(r"winning[_ ]square\D*(\d+)", re.IGNORECASE)
_MOTHERLODE = re.compile(r"motherlode", re.IGNORECASE)


@dataclass(frozen=True)
class RoundResultFields:
    """Revealed outcome of a finished round"""
    winning_square: int
    is_jackpot: bool
    source: str
    round_id: Optional[int] = None
    start_slot: Optional[int] = None
    end_slot: Optional[int] = None

    @property
    def round_known(self) -> bool:
        return self.round_id is not None


def parse_result_bytes(raw: bytes) -> Optional[RoundResultFields]:
    """
    Parse the structured round result layout

    Returns:
        RoundResultFields, or None when the buffer is too short or names a
        square outside the board
    """
    if len(raw) < RESULT_MIN_SIZE:
        return None

    _disc, round_id, start_slot, end_slot, winning_square = _RESULT_HEAD.unpack_from(raw)
    if winning_square >= BOARD_SIZE:
        logger.warning("return_data_square_out_of_range", winning_square=winning_square)
        metrics.increment_counter("round_result_rejected", labels={"reason": "square_range"})
        return None

    motherlode = _U64.unpack_from(raw, 48)[0] if len(raw) >= 56 else 0

    return RoundResultFields(
        winning_square=winning_square,
        is_jackpot=motherlode > 0,
        source=SOURCE_RETURN_DATA,
        round_id=round_id or None,
        start_slot=start_slot,
        end_slot=end_slot,
    )


def _b64(data: str) -> Optional[bytes]:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return None


def _return_data_payload(meta: Dict[str, Any], program_id: str) -> Optional[bytes]:
    return_data = meta.get("returnData") or meta.get("return_data")
    if return_data:
        if return_data.get("programId", program_id) == program_id:
            data = return_data.get("data")
            if isinstance(data, (list, tuple)) and data:
                data = data[0]
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
            if isinstance(data, str):
                return _b64(data)

    for line in _logs(meta):
        if line.startswith(_RETURN_LOG_PREFIX):
            parts = line[len(_RETURN_LOG_PREFIX):].split()
            if len(parts) == 2 and parts[0] == program_id:
                return _b64(parts[1])
    return None


def _logs(meta: Dict[str, Any]) -> Iterable[str]:
    return meta.get("logMessages") or meta.get("logs") or []


def parse_result_logs(logs: Iterable[str]) -> Optional[RoundResultFields]:
    """Scan free-text logs for a winning square announcement"""
    for line in logs:
        match = _WINNING_SQUARE.search(line)
        if not match:
            continue
        square = int(match.group(1))
        if square >= BOARD_SIZE:
            continue
        return RoundResultFields(
            winning_square=square,
            is_jackpot=bool(_MOTHERLODE.search(line)),
            source=SOURCE_LOGS,
        )
    return None


def decode_from_logs_or_return_data(
    meta: Dict[str, Any],
    program_id: str = ORE_PROGRAM_ID
) -> Optional[RoundResultFields]:
    """
    Extract a round result from transaction metadata

    Args:
        meta: Transaction meta as returned by getTransaction
              (returnData, logMessages)
        program_id: Program whose return data is trusted

    Returns:
        RoundResultFields, or None when the outcome is unknown
    """
    payload = _return_data_payload(meta, program_id)
    if payload is not None:
        result = parse_result_bytes(payload)
        if result is not None:
            return result
        logger.debug("return_data_unusable", size=len(payload))

    result = parse_result_logs(_logs(meta))
    if result is None:
        metrics.increment_counter("round_result_unknown")
    return result
