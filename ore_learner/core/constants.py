"""
ORE program constants
"""

from solders.pubkey import Pubkey

ORE_PROGRAM_ID = "oreV3EG1i9BEgiAJ8b177Z2S2rMarzak4NMv1kULvWv"
ORE_PROGRAM = Pubkey.from_string(ORE_PROGRAM_ID)

BOARD_SIZE = 25  # 5x5 grid, squares 0..24
BOARD_WIDTH = 5
UNIFORM_WIN_PROBABILITY = 1.0 / BOARD_SIZE

LAMPORTS_PER_SOL = 1_000_000_000
ORE_DECIMALS = 11
ONE_ORE = 10 ** ORE_DECIMALS

# Anchor-style discriminator preceding every account payload
ACCOUNT_HEADER_SIZE = 8

# PDA seeds
BOARD_SEED = b"board"
ROUND_SEED = b"round"
TREASURY_SEED = b"treasury"
MINER_SEED = b"miner"

# One in 625 rounds hits the motherlode (jackpot)
MOTHERLODE_ODDS = 625
