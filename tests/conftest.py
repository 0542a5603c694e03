"""
Pytest configuration and shared fixtures
These fixtures are available to all test files
"""

import random
import struct
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
import yaml
from solders.pubkey import Pubkey

from ore_learner.core.classifier import RawInstruction, RawTransaction
from ore_learner.core.constants import ORE_PROGRAM_ID
from ore_learner.core.instructions import deploy_instruction, encode
from ore_learner.core.metrics import get_metrics
from ore_learner.core.pipeline import OrePipeline
from ore_learner.core.state_tracker import StateTracker


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts from empty counters"""
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def test_config_dict() -> Dict[str, Any]:
    """
    Sample configuration dictionary for testing

    Returns valid config that can be modified per test
    """
    return {
        "rpc": {
            "endpoints": [
                {
                    "url": "https://api.testnet.solana.com",
                    "priority": 1,
                    "label": "solana_labs_testnet",
                    "timeout_ms": 5000
                },
                {
                    "url": "https://api.devnet.solana.com",
                    "priority": 0,
                    "label": "solana_labs_devnet",
                    "timeout_ms": 5000
                }
            ],
            "failover_threshold_errors": 3
        },
        "logging": {
            "level": "DEBUG",
            "format": "json",
            "output_file": None
        },
        "metrics": {
            "enable_histogram": True,
            "window_size": 1000
        },
        "optimizer": {
            "min_wallet_sol": 0.05,
            "max_bet_per_round_sol": 0.04,
            "sizing_mode": "even"
        }
    }


@pytest.fixture
def test_config_file(test_config_dict, tmp_path):
    """Write test_config_dict to a temporary YAML file and return its path"""
    config_file = tmp_path / "test_config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(test_config_dict, f)
    return str(config_file)


@pytest.fixture
def wallets() -> List[str]:
    """Five distinct wallet addresses"""
    return [str(Pubkey.new_unique()) for _ in range(5)]


@pytest.fixture
def tracker() -> StateTracker:
    return StateTracker()


@pytest.fixture
def pipeline() -> OrePipeline:
    """Pipeline with a seeded exploration source"""
    return OrePipeline(rng=random.Random(7))


def _signature(n: int) -> str:
    return f"sig{n:08d}"


@pytest.fixture
def make_tx() -> Callable[..., RawTransaction]:
    """
    Build a RawTransaction carrying ORE instructions

    Usage:
        tx = make_tx(signer, [deploy_bytes], slot=100)
    """
    counter = {"n": 0}

    def _make(
        signer: str,
        payloads: Iterable[bytes],
        slot: int = 100,
        success: bool = True,
        meta: Optional[Dict[str, Any]] = None,
        program_id: str = ORE_PROGRAM_ID
    ) -> RawTransaction:
        counter["n"] += 1
        return RawTransaction(
            signature=_signature(counter["n"]),
            slot=slot,
            account_keys=[signer, program_id],
            instructions=[
                RawInstruction(program_id=program_id, accounts=(signer,), data=data)
                for data in payloads
            ],
            success=success,
            meta=meta or {},
        )

    return _make


@pytest.fixture
def deploy_bytes() -> Callable[[int, Iterable[int]], bytes]:
    """Wire bytes of a Deploy of `amount` lamports on `squares`"""
    def _deploy(amount: int, squares: Iterable[int]) -> bytes:
        return encode(deploy_instruction(amount, squares))
    return _deploy


@pytest.fixture
def result_bytes() -> Callable[..., bytes]:
    """Structured round result as the program returns it"""
    def _result(round_id: int, winning_square: int, motherlode: int = 0) -> bytes:
        return struct.pack("<QQQQQQQ", 0, round_id, 1000, 1150, winning_square, 0, motherlode)
    return _result
