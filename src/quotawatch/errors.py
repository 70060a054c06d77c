class QuotaWatchError(Exception):
    """
    base class for all classified fetch errors.
    """


class NoCandidates(QuotaWatchError):
    def __init__(self) -> "None":
        super().__init__("no fetch candidates to try")


class StrategyUnavailable(QuotaWatchError):
    """
    raised when a strategy's availability probe fails. The
    fetch pipeline skips such strategies without reporting
    an error.
    """

    def __init__(self, strategy_id: "str") -> "None":
        super().__init__(f"strategy {strategy_id} is not available")
        self.strategy_id = strategy_id


class FetchFailed(QuotaWatchError):
    """
    wraps a transport or subprocess failure. The original
    exception is kept as __cause__.
    """

    def __init__(self, reason: "str") -> "None":
        super().__init__(reason)
        self.reason = reason


class OAuthFailed(QuotaWatchError):
    def __init__(self, reason: "str") -> "None":
        super().__init__(f"OAuth failed: {reason}")
        self.reason = reason


class ParseFailed(QuotaWatchError):
    """
    raised when a payload lacks required fields.
    """

    def __init__(self, reason: "str") -> "None":
        super().__init__(f"could not parse usage: {reason}")
        self.reason = reason
