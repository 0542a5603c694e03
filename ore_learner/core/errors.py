"""
Error taxonomy for ORE Learner

Decode errors are recoverable: the offending instruction is skipped and
processing continues. StateInvariantViolation signals a programming bug and
is never swallowed.
"""


class OreLearnerError(Exception):
    """Base class for all learner errors"""


class DecodeError(OreLearnerError):
    """Malformed instruction or account bytes"""


class TruncatedInstructionError(DecodeError):
    """Instruction buffer shorter than its kind's fixed minimum length"""

    def __init__(self, kind: str, expected: int, actual: int):
        self.kind = kind
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{kind} instruction needs {expected} bytes, got {actual}"
        )


class UnsupportedProgramError(DecodeError):
    """Instruction belongs to a program other than the tracked one"""

    def __init__(self, program_id: str):
        self.program_id = program_id
        super().__init__(f"Not the tracked program: {program_id}")


class AccountLayoutError(DecodeError):
    """Account snapshot too short for its fixed layout"""

    def __init__(self, account: str, expected: int, actual: int):
        self.account = account
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{account} account needs {expected} bytes, got {actual}"
        )


class StateInvariantViolation(OreLearnerError):
    """Internal invariant broken, e.g. a square index outside [0, 25)"""


class RpcError(OreLearnerError):
    """JSON-RPC call failed on every configured endpoint"""
