"""Exception types raised by the rebalancer."""


class RebalancerError(Exception):
    """Base class for all rebalancer errors."""


class DataUnavailable(RebalancerError):
    """Price or history could not be fetched, or has too few bars."""

    def __init__(self, code: str, message: str = "data unavailable"):
        super().__init__(f"{code}: {message}")
        self.code = code


class MalformedProposal(RebalancerError):
    """The AI response could not be parsed into a proposal."""


class AIProviderError(RebalancerError):
    """An AI provider call failed (missing CLI, HTTP error, timeout)."""


class ConcurrentRunConflict(RebalancerError):
    """A rebalance was requested while another one is running."""

    def __init__(self, message: str = "A rebalance run is already in progress"):
        super().__init__(message)


class PersistenceFailure(RebalancerError):
    """A snapshot could not be written to the store."""
