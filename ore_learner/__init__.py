"""
ORE Learner

Decodes the ORE program's transaction stream into typed events and learns
staking strategies from observed rounds.
"""

__version__ = "0.1.0"
