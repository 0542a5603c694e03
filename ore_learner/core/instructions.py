"""
ORE instruction decoder
Turns raw instruction bytes into typed, immutable instruction records

Layout: the first byte is the discriminator, followed by little-endian
fields. Square sets are bitmasks where bit i selects square i.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, Iterable, Tuple, Union

import base58
from solders.pubkey import Pubkey

from ore_learner.core.constants import BOARD_SIZE, ORE_PROGRAM_ID
from ore_learner.core.errors import TruncatedInstructionError, UnsupportedProgramError
from ore_learner.core.logger import get_logger
from ore_learner.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


class InstructionKind(IntEnum):
    """ORE instruction discriminators"""
    AUTOMATE = 0
    CHECKPOINT = 2
    CLAIM_SOL = 3
    CLAIM_ORE = 4
    CLOSE = 5
    DEPLOY = 6
    LOG = 8
    RESET = 9
    DEPOSIT = 10
    WITHDRAW = 11
    CLAIM_YIELD = 12
    BUYBACK = 13
    WRAP = 14
    SET_ADMIN = 15
    NEW_VAR = 19
    RELOAD_SOL = 21
    COMPOUND_YIELD = 22
    BURY = 24
    LIQ = 25
    UNKNOWN = 255

    @classmethod
    def from_discriminator(cls, value: int) -> "InstructionKind":
        try:
            kind = cls(value)
        except ValueError:
            return cls.UNKNOWN
        return kind


# Field records -------------------------------------------------------------

@dataclass(frozen=True)
class DeployFields:
    amount: int  # lamports, deployed to every selected square
    squares_mask: int
    squares: Tuple[int, ...]
    dropped_bits: Tuple[int, ...] = ()


@dataclass(frozen=True)
class AutomateFields:
    amount: int
    deposit: int
    fee: int
    squares_mask: int
    squares: Tuple[int, ...]
    strategy: int
    reload: bool
    dropped_bits: Tuple[int, ...] = ()


@dataclass(frozen=True)
class DepositFields:
    amount: int
    compound_fee: int


@dataclass(frozen=True)
class AmountFields:
    """Single-amount payload (Withdraw, ClaimYield, Bury, Wrap)"""
    amount: int


@dataclass(frozen=True)
class SetAdminFields:
    admin: str


@dataclass(frozen=True)
class NewVarFields:
    var_id: int
    commit: bytes
    samples: int


@dataclass(frozen=True)
class RawFields:
    """Discriminator-only kinds; any trailing bytes are kept verbatim"""
    data: bytes = b""


@dataclass(frozen=True)
class UnknownFields:
    discriminator: int
    data: bytes = b""


InstructionFields = Union[
    DeployFields, AutomateFields, DepositFields, AmountFields,
    SetAdminFields, NewVarFields, RawFields, UnknownFields,
]


@dataclass(frozen=True)
class DecodedInstruction:
    kind: InstructionKind
    fields: InstructionFields


# Layouts -------------------------------------------------------------------

_DEPLOY = struct.Struct("<QI")
_AUTOMATE = struct.Struct("<QQQQBQ")
_DEPOSIT = struct.Struct("<QQ")
_AMOUNT = struct.Struct("<Q")
_NEW_VAR = struct.Struct("<Q32sQ")

AMOUNT_KINDS = frozenset({
    InstructionKind.WITHDRAW,
    InstructionKind.CLAIM_YIELD,
    InstructionKind.BURY,
    InstructionKind.WRAP,
})

# Minimum buffer length per kind, discriminator byte included
MIN_LENGTHS: Dict[InstructionKind, int] = {
    InstructionKind.DEPLOY: 1 + _DEPLOY.size,          # 13
    InstructionKind.AUTOMATE: 1 + _AUTOMATE.size,      # 42
    InstructionKind.DEPOSIT: 1 + _DEPOSIT.size,        # 17
    InstructionKind.SET_ADMIN: 1 + 32,                 # 33
    InstructionKind.NEW_VAR: 1 + _NEW_VAR.size,        # 49
}
for _kind in AMOUNT_KINDS:
    MIN_LENGTHS[_kind] = 1 + _AMOUNT.size              # 9


def min_length(kind: InstructionKind) -> int:
    return MIN_LENGTHS.get(kind, 1)


def expand_mask(mask: int, width: int = BOARD_SIZE) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    """
    Expand a square bitmask into ascending square indices

    Returns:
        (squares, dropped_bits). Bits at positions >= width cannot name a
        square and are reported in dropped_bits instead of being indexed.
    """
    squares = []
    dropped = []
    position = 0
    while mask >> position:
        if (mask >> position) & 1:
            if position < width:
                squares.append(position)
            else:
                dropped.append(position)
        position += 1
    return tuple(squares), tuple(dropped)


def build_mask(squares: Iterable[int]) -> int:
    """Inverse of expand_mask for valid square indices"""
    mask = 0
    for square in squares:
        if not 0 <= square < BOARD_SIZE:
            raise ValueError(f"Square index out of range: {square}")
        mask |= 1 << square
    return mask


def _expand_checked(kind: InstructionKind, mask: int) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    squares, dropped = expand_mask(mask)
    if dropped:
        logger.warning(
            "square_mask_bits_dropped",
            kind=kind.name,
            mask=hex(mask),
            dropped_bits=list(dropped),
        )
        metrics.increment_counter("square_mask_bits_dropped", len(dropped))
    return squares, dropped


def _decode_deploy(body: bytes) -> DeployFields:
    amount, mask = _DEPLOY.unpack_from(body)
    squares, dropped = _expand_checked(InstructionKind.DEPLOY, mask)
    return DeployFields(amount=amount, squares_mask=mask, squares=squares, dropped_bits=dropped)


def _decode_automate(body: bytes) -> AutomateFields:
    amount, deposit, fee, mask, strategy, reload = _AUTOMATE.unpack_from(body)
    squares, dropped = _expand_checked(InstructionKind.AUTOMATE, mask)
    return AutomateFields(
        amount=amount,
        deposit=deposit,
        fee=fee,
        squares_mask=mask,
        squares=squares,
        strategy=strategy,
        reload=reload != 0,
        dropped_bits=dropped,
    )


def _decode_deposit(body: bytes) -> DepositFields:
    amount, compound_fee = _DEPOSIT.unpack_from(body)
    return DepositFields(amount=amount, compound_fee=compound_fee)


def _decode_amount(body: bytes) -> AmountFields:
    return AmountFields(amount=_AMOUNT.unpack_from(body)[0])


def _decode_set_admin(body: bytes) -> SetAdminFields:
    return SetAdminFields(admin=str(Pubkey.from_bytes(body[:32])))


def _decode_new_var(body: bytes) -> NewVarFields:
    var_id, commit, samples = _NEW_VAR.unpack_from(body)
    return NewVarFields(var_id=var_id, commit=commit, samples=samples)


_DECODERS: Dict[InstructionKind, Callable[[bytes], InstructionFields]] = {
    InstructionKind.DEPLOY: _decode_deploy,
    InstructionKind.AUTOMATE: _decode_automate,
    InstructionKind.DEPOSIT: _decode_deposit,
    InstructionKind.SET_ADMIN: _decode_set_admin,
    InstructionKind.NEW_VAR: _decode_new_var,
}
for _kind in AMOUNT_KINDS:
    _DECODERS[_kind] = _decode_amount


def decode(
    program_id: Union[str, Pubkey],
    data: bytes,
    tracked_program: str = ORE_PROGRAM_ID
) -> DecodedInstruction:
    """
    Decode one instruction of the tracked program

    Args:
        program_id: Program the instruction was sent to
        data: Raw instruction bytes (discriminator first)
        tracked_program: Program id this decoder understands

    Returns:
        DecodedInstruction. Unrecognized discriminators decode to UNKNOWN
        with the raw bytes preserved.

    Raises:
        UnsupportedProgramError: program_id is not the tracked program
        TruncatedInstructionError: buffer shorter than the kind's layout
    """
    if str(program_id) != tracked_program:
        raise UnsupportedProgramError(str(program_id))

    if not data:
        raise TruncatedInstructionError("empty", 1, 0)

    discriminator = data[0]
    kind = InstructionKind.from_discriminator(discriminator)
    body = bytes(data[1:])

    if kind is InstructionKind.UNKNOWN:
        return DecodedInstruction(kind, UnknownFields(discriminator=discriminator, data=body))

    needed = min_length(kind)
    if len(data) < needed:
        raise TruncatedInstructionError(kind.name, needed, len(data))

    decoder = _DECODERS.get(kind)
    fields = decoder(body) if decoder else RawFields(data=body)
    return DecodedInstruction(kind, fields)


def decode_base58(program_id: Union[str, Pubkey], data: str, tracked_program: str = ORE_PROGRAM_ID) -> DecodedInstruction:
    """Decode base58 instruction data as returned by getTransaction (json encoding)"""
    return decode(program_id, base58.b58decode(data), tracked_program)


def encode(instruction: DecodedInstruction) -> bytes:
    """
    Serialize an instruction back to its wire bytes

    Raises:
        ValueError: fields do not match the instruction kind
    """
    kind = instruction.kind
    fields = instruction.fields

    if kind is InstructionKind.UNKNOWN:
        if not isinstance(fields, UnknownFields):
            raise ValueError("UNKNOWN instruction requires UnknownFields")
        return bytes([fields.discriminator]) + fields.data

    head = bytes([int(kind)])

    if kind is InstructionKind.DEPLOY and isinstance(fields, DeployFields):
        return head + _DEPLOY.pack(fields.amount, fields.squares_mask)
    if kind is InstructionKind.AUTOMATE and isinstance(fields, AutomateFields):
        return head + _AUTOMATE.pack(
            fields.amount, fields.deposit, fields.fee, fields.squares_mask,
            fields.strategy, 1 if fields.reload else 0,
        )
    if kind is InstructionKind.DEPOSIT and isinstance(fields, DepositFields):
        return head + _DEPOSIT.pack(fields.amount, fields.compound_fee)
    if kind in AMOUNT_KINDS and isinstance(fields, AmountFields):
        return head + _AMOUNT.pack(fields.amount)
    if kind is InstructionKind.SET_ADMIN and isinstance(fields, SetAdminFields):
        return head + bytes(Pubkey.from_string(fields.admin))
    if kind is InstructionKind.NEW_VAR and isinstance(fields, NewVarFields):
        return head + _NEW_VAR.pack(fields.var_id, fields.commit, fields.samples)
    if kind not in _DECODERS and isinstance(fields, RawFields):
        return head + fields.data

    raise ValueError(f"{type(fields).__name__} does not match {kind.name}")


def deploy_instruction(amount: int, squares: Iterable[int]) -> DecodedInstruction:
    """Build a Deploy instruction record for the given squares"""
    mask = build_mask(squares)
    expanded, _ = expand_mask(mask)
    return DecodedInstruction(
        InstructionKind.DEPLOY,
        DeployFields(amount=amount, squares_mask=mask, squares=expanded),
    )
