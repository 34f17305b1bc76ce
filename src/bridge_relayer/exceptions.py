"""
Exception types for the bridge relayer.

Configuration problems are reported as plain ``ValueError`` from the config
dataclasses; everything raised at runtime by relayer components derives from
``RelayerError``.
"""


class RelayerError(Exception):
    """Base class for relayer runtime errors."""


class TransientRPCError(RelayerError):
    """An RPC call kept failing after all retry attempts for this tick."""

    def __init__(self, label: str, attempts: int, cause: BaseException | None = None):
        self.label = label
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{label} failed after {attempts} attempt(s): {cause}")


class SettlementError(RelayerError):
    """A settlement transaction reverted, timed out or could not be submitted.

    The deposit stays pending and is retried on a later tick.
    """

    def __init__(self, nonce: int, reason: str, tx_hash: str | None = None):
        self.nonce = nonce
        self.reason = reason
        self.tx_hash = tx_hash
        super().__init__(f"settlement of nonce {nonce} failed: {reason}")


class CursorRegressionError(RelayerError, ValueError):
    """Attempt to move a chain cursor backwards."""

    def __init__(self, chain: str, current: int, requested: int):
        self.chain = chain
        self.current = current
        self.requested = requested
        super().__init__(
            f"refusing to move {chain} cursor backwards from {current} to {requested}"
        )


class DepositExpiredError(SettlementError):
    """The escrow reports the deposit as expired, so it can no longer be released.

    Not retried automatically; an operator has to resolve the deposit.
    """

    def __init__(self, nonce: int, tx_hash: str | None = None):
        super().__init__(nonce, "deposit is expired on the escrow", tx_hash)
