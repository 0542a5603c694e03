"""
Event classifier
Maps each top-level ORE instruction of a transaction to a ParsedEvent
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import base58

from ore_learner.core.constants import ORE_PROGRAM_ID
from ore_learner.core.errors import DecodeError
from ore_learner.core.instructions import (
    DecodedInstruction,
    InstructionKind,
    decode,
)
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics
from ore_learner.core.round_result import decode_from_logs_or_return_data


logger = get_logger(__name__)
metrics = get_metrics()


class EventKind(str, Enum):
    """Domain event categories"""
    DEPLOY = "deploy"
    ROUND_RESULT = "round_result"
    CLAIM = "claim"
    AUTOMATE = "automate"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    YIELD = "yield"
    OTHER = "other"
    UNKNOWN = "unknown"


_EVENT_KINDS: Dict[InstructionKind, EventKind] = {
    InstructionKind.DEPLOY: EventKind.DEPLOY,
    InstructionKind.RESET: EventKind.ROUND_RESULT,
    InstructionKind.CLAIM_SOL: EventKind.CLAIM,
    InstructionKind.CLAIM_ORE: EventKind.CLAIM,
    InstructionKind.AUTOMATE: EventKind.AUTOMATE,
    InstructionKind.DEPOSIT: EventKind.DEPOSIT,
    InstructionKind.WITHDRAW: EventKind.WITHDRAW,
    InstructionKind.CLAIM_YIELD: EventKind.YIELD,
    InstructionKind.COMPOUND_YIELD: EventKind.YIELD,
    InstructionKind.UNKNOWN: EventKind.UNKNOWN,
}


def event_kind_for(kind: InstructionKind) -> EventKind:
    return _EVENT_KINDS.get(kind, EventKind.OTHER)


@dataclass(frozen=True)
class RawInstruction:
    """Top-level instruction with resolved addresses"""
    program_id: str
    accounts: Tuple[str, ...]
    data: bytes


@dataclass
class RawTransaction:
    """Transport-neutral view of a fetched transaction"""
    signature: str
    slot: int
    account_keys: List[str]
    instructions: List[RawInstruction]
    success: bool = True
    block_time: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def signer(self) -> str:
        return self.account_keys[0] if self.account_keys else ""

    @classmethod
    def from_rpc(cls, result: Dict[str, Any]) -> "RawTransaction":
        """
        Build from a getTransaction result (json encoding, base58 data)

        Address lookup table entries from meta.loadedAddresses are appended
        to the static keys, writable before readonly, matching the
        runtime's account index order.
        """
        meta = result.get("meta") or {}
        transaction = result.get("transaction") or {}
        message = transaction.get("message") or {}

        keys = [
            key["pubkey"] if isinstance(key, dict) else key
            for key in message.get("accountKeys", [])
        ]
        loaded = meta.get("loadedAddresses") or {}
        keys.extend(loaded.get("writable", []))
        keys.extend(loaded.get("readonly", []))

        instructions = []
        for ix in message.get("instructions", []):
            program_index = ix.get("programIdIndex")
            if program_index is None or program_index >= len(keys):
                continue
            try:
                data = base58.b58decode(ix.get("data", ""))
            except ValueError:
                # Left empty so the decoder reports it as truncated
                data = b""
            instructions.append(RawInstruction(
                program_id=keys[program_index],
                accounts=tuple(keys[i] for i in ix.get("accounts", []) if i < len(keys)),
                data=data,
            ))

        signatures = transaction.get("signatures") or [""]

        return cls(
            signature=signatures[0],
            slot=result.get("slot", 0),
            account_keys=keys,
            instructions=instructions,
            success=meta.get("err") is None,
            block_time=result.get("blockTime"),
            meta=meta,
        )


@dataclass(frozen=True)
class ParsedEvent:
    """One invocation of the tracked program"""
    signature: str
    slot: int
    signer: str
    accounts: Tuple[str, ...]
    success: bool
    kind: EventKind
    instruction_kind: InstructionKind
    payload: Any = None  # instruction fields, or RoundResultFields for ROUND_RESULT
    block_time: Optional[int] = None
    decode_error: Optional[str] = None

    @property
    def is_gap(self) -> bool:
        """Program touched but nothing usable decoded"""
        return self.kind is EventKind.UNKNOWN or (
            self.kind is EventKind.ROUND_RESULT and self.payload is None
        )


class EventClassifier:
    """
    Turns transactions into ParsedEvents

    Pure transform: holds only the tracked program id. Malformed payloads
    become UNKNOWN events carrying the decode error so gaps stay visible
    downstream.
    """

    def __init__(self, program_id: str = ORE_PROGRAM_ID):
        self.program_id = program_id

    def classify(self, tx: RawTransaction) -> Optional[ParsedEvent]:
        """First tracked-program invocation in the transaction, or None"""
        for ix in tx.instructions:
            if ix.program_id == self.program_id:
                return self._event(tx, ix)
        return None

    def classify_all(self, tx: RawTransaction) -> List[ParsedEvent]:
        """Every top-level tracked-program invocation, in instruction order"""
        return [
            self._event(tx, ix)
            for ix in tx.instructions
            if ix.program_id == self.program_id
        ]

    def _event(self, tx: RawTransaction, ix: RawInstruction) -> ParsedEvent:
        try:
            decoded = decode(ix.program_id, ix.data, self.program_id)
        except DecodeError as e:
            logger.warning(
                "instruction_decode_failed",
                signature=tx.signature,
                error=str(e),
            )
            metrics.increment_counter("decode_errors", labels={"error": type(e).__name__})
            return self._build(tx, ix, EventKind.UNKNOWN, InstructionKind.UNKNOWN, None, str(e))

        kind = event_kind_for(decoded.kind)
        payload = self._payload(tx, decoded)

        if kind is EventKind.UNKNOWN:
            metrics.increment_counter("unknown_instructions")
        elif kind is EventKind.ROUND_RESULT and payload is None:
            logger.info("round_completion_outcome_unknown", signature=tx.signature, slot=tx.slot)

        metrics.increment_counter("events_classified", labels={"kind": kind.value})
        return self._build(tx, ix, kind, decoded.kind, payload, None)

    def _payload(self, tx: RawTransaction, decoded: DecodedInstruction) -> Any:
        if decoded.kind is InstructionKind.RESET:
            return decode_from_logs_or_return_data(tx.meta, self.program_id)
        return decoded.fields

    @staticmethod
    def _build(
        tx: RawTransaction,
        ix: RawInstruction,
        kind: EventKind,
        instruction_kind: InstructionKind,
        payload: Any,
        error: Optional[str]
    ) -> ParsedEvent:
        return ParsedEvent(
            signature=tx.signature,
            slot=tx.slot,
            signer=tx.signer,
            accounts=ix.accounts,
            success=tx.success,
            kind=kind,
            instruction_kind=instruction_kind,
            payload=payload,
            block_time=tx.block_time,
            decode_error=error,
        )
