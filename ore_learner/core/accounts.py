"""
ORE account snapshots
Fixed-layout Board, Round, Treasury and Miner records

Every account starts with an 8-byte discriminator header that is skipped
before the typed payload is read. All integers are little-endian.
"""

import struct
from dataclasses import dataclass
from typing import Optional, Tuple

from solders.pubkey import Pubkey

from ore_learner.core.constants import (
    ACCOUNT_HEADER_SIZE,
    BOARD_SEED,
    BOARD_SIZE,
    MINER_SEED,
    MOTHERLODE_ODDS,
    ORE_PROGRAM,
    ROUND_SEED,
    TREASURY_SEED,
)
from ore_learner.core.errors import AccountLayoutError


_BOARD = struct.Struct("<QQQ")
_ROUND = struct.Struct("<Q200s32s200sQQ32s32sQQQQ")
_TREASURY = struct.Struct("<QQ16s16sQQQ")
_MINER = struct.Struct("<32s200s200sQQqq16sQQQQQQ")
_SQUARES = struct.Struct("<25Q")
_HASH_WORDS = struct.Struct("<4Q")

BOARD_ACCOUNT_SIZE = ACCOUNT_HEADER_SIZE + _BOARD.size
ROUND_ACCOUNT_SIZE = ACCOUNT_HEADER_SIZE + _ROUND.size
TREASURY_ACCOUNT_SIZE = ACCOUNT_HEADER_SIZE + _TREASURY.size
MINER_ACCOUNT_SIZE = ACCOUNT_HEADER_SIZE + _MINER.size


def _payload(name: str, raw: bytes, layout: struct.Struct) -> tuple:
    needed = ACCOUNT_HEADER_SIZE + layout.size
    if len(raw) < needed:
        raise AccountLayoutError(name, needed, len(raw))
    return layout.unpack_from(raw, ACCOUNT_HEADER_SIZE)


def _squares(raw: bytes) -> Tuple[int, ...]:
    return _SQUARES.unpack(raw)


def _reverse_bits_u64(value: int) -> int:
    return int(format(value, "064b")[::-1], 2)


@dataclass(frozen=True)
class BoardAccount:
    """Global board: which round is live and its slot window"""
    round_id: int
    start_slot: int
    end_slot: int

    @classmethod
    def from_bytes(cls, raw: bytes) -> "BoardAccount":
        round_id, start_slot, end_slot = _payload("Board", raw, _BOARD)
        return cls(round_id=round_id, start_slot=start_slot, end_slot=end_slot)

    def is_active(self, slot: int) -> bool:
        return self.start_slot <= slot < self.end_slot


@dataclass(frozen=True)
class RoundAccount:
    """Per-round deployment vector and the slot hash that picks the winner"""
    round_id: int
    deployed: Tuple[int, ...]
    slot_hash: bytes
    count: Tuple[int, ...]
    expires_at: int
    motherlode: int
    rent_payer: str
    top_miner: str
    top_miner_reward: int
    total_deployed: int
    total_vaulted: int
    total_winnings: int

    @classmethod
    def from_bytes(cls, raw: bytes) -> "RoundAccount":
        (round_id, deployed, slot_hash, count, expires_at, motherlode,
         rent_payer, top_miner, top_miner_reward, total_deployed,
         total_vaulted, total_winnings) = _payload("Round", raw, _ROUND)

        return cls(
            round_id=round_id,
            deployed=_squares(deployed),
            slot_hash=slot_hash,
            count=_squares(count),
            expires_at=expires_at,
            motherlode=motherlode,
            rent_payer=str(Pubkey.from_bytes(rent_payer)),
            top_miner=str(Pubkey.from_bytes(top_miner)),
            top_miner_reward=top_miner_reward,
            total_deployed=total_deployed,
            total_vaulted=total_vaulted,
            total_winnings=total_winnings,
        )

    def rng(self) -> Optional[int]:
        """XOR-fold of the slot hash; None until the hash is revealed"""
        if self.slot_hash in (bytes(32), b"\xff" * 32):
            return None
        a, b, c, d = _HASH_WORDS.unpack(self.slot_hash)
        return a ^ b ^ c ^ d

    def winning_square(self) -> Optional[int]:
        rng = self.rng()
        if rng is None:
            return None
        return rng % BOARD_SIZE

    def hit_motherlode(self) -> bool:
        rng = self.rng()
        if rng is None:
            return False
        return _reverse_bits_u64(rng) % MOTHERLODE_ODDS == 0

    @property
    def miner_entries(self) -> int:
        """Miner-square entries; a miner on two squares counts twice"""
        return sum(self.count)


@dataclass(frozen=True)
class TreasuryAccount:
    balance: int
    motherlode: int
    total_staked: int
    total_unclaimed: int
    total_refined: int

    @classmethod
    def from_bytes(cls, raw: bytes) -> "TreasuryAccount":
        (balance, motherlode, _miner_factor, _stake_factor,
         total_staked, total_unclaimed, total_refined) = _payload("Treasury", raw, _TREASURY)
        return cls(
            balance=balance,
            motherlode=motherlode,
            total_staked=total_staked,
            total_unclaimed=total_unclaimed,
            total_refined=total_refined,
        )


@dataclass(frozen=True)
class MinerAccount:
    authority: str
    deployed: Tuple[int, ...]
    cumulative: Tuple[int, ...]
    checkpoint_fee: int
    checkpoint_id: int
    last_claim_ore_at: int
    last_claim_sol_at: int
    rewards_sol: int
    rewards_ore: int
    refined_ore: int
    round_id: int
    lifetime_rewards_sol: int
    lifetime_rewards_ore: int

    @classmethod
    def from_bytes(cls, raw: bytes) -> "MinerAccount":
        (authority, deployed, cumulative, checkpoint_fee, checkpoint_id,
         last_claim_ore_at, last_claim_sol_at, _rewards_factor, rewards_sol,
         rewards_ore, refined_ore, round_id, lifetime_rewards_sol,
         lifetime_rewards_ore) = _payload("Miner", raw, _MINER)

        return cls(
            authority=str(Pubkey.from_bytes(authority)),
            deployed=_squares(deployed),
            cumulative=_squares(cumulative),
            checkpoint_fee=checkpoint_fee,
            checkpoint_id=checkpoint_id,
            last_claim_ore_at=last_claim_ore_at,
            last_claim_sol_at=last_claim_sol_at,
            rewards_sol=rewards_sol,
            rewards_ore=rewards_ore,
            refined_ore=refined_ore,
            round_id=round_id,
            lifetime_rewards_sol=lifetime_rewards_sol,
            lifetime_rewards_ore=lifetime_rewards_ore,
        )

    @property
    def squares(self) -> Tuple[int, ...]:
        """Squares this miner has stake on in its current round"""
        return tuple(i for i, amount in enumerate(self.deployed) if amount > 0)


def board_pda(program_id: Pubkey = ORE_PROGRAM) -> Pubkey:
    return Pubkey.find_program_address([BOARD_SEED], program_id)[0]


def round_pda(round_id: int, program_id: Pubkey = ORE_PROGRAM) -> Pubkey:
    return Pubkey.find_program_address([ROUND_SEED, round_id.to_bytes(8, "little")], program_id)[0]


def treasury_pda(program_id: Pubkey = ORE_PROGRAM) -> Pubkey:
    return Pubkey.find_program_address([TREASURY_SEED], program_id)[0]


def miner_pda(authority: Pubkey, program_id: Pubkey = ORE_PROGRAM) -> Pubkey:
    return Pubkey.find_program_address([MINER_SEED, bytes(authority)], program_id)[0]
