"""Error taxonomy for the unlock client."""


class VmUnlockError(Exception):
    """Base class for every failure raised by the unlock client."""


class ConfigError(VmUnlockError):
    """Malformed address constant, config table or key file."""


class DerivationExhausted(VmUnlockError):
    """No bump produced a valid program address for the given seeds."""


class PdaVerificationFailed(VmUnlockError):
    """A derived address disagrees with its independently recomputed value."""


class NotFound(VmUnlockError):
    """No account exists at the requested address."""

    def __init__(self, address: str) -> None:
        super().__init__(f"Account not found: {address}")
        self.address = address


class CorruptAccount(VmUnlockError):
    """Account data does not match the expected binary layout."""


class InvalidUnlockState(VmUnlockError):
    """Unlock account is neither waiting for timeout nor unlocked."""


class TransportError(VmUnlockError):
    """The RPC endpoint could not be reached or returned garbage."""


class SubmissionError(VmUnlockError):
    """Transaction was rejected by the cluster or failed on-chain."""


class ConfirmationTimeout(VmUnlockError):
    """Transaction was sent but never reached the requested commitment."""


class PollCancelled(VmUnlockError):
    """Unlock polling was cancelled before the timelock expired."""
