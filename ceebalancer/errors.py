"""
Exception types for ceebalancer.

Channel-level errors (ChannelDataError, PolicyApplyError) are isolated to
the one channel that raised them. ChannelFetchError aborts the whole run.
RunInProgressError is raised to a trigger that arrives while a run holds
the run lock.
"""


class CeebalancerError(Exception):
    """Base class for all ceebalancer errors."""


class ParameterError(CeebalancerError):
    """A policy parameter set violates its invariants."""


class ChannelDataError(CeebalancerError):
    """Channel snapshot cannot be evaluated (e.g. zero capacity)."""

    def __init__(self, channel_id, message):
        self.channel_id = channel_id
        super().__init__(f"{channel_id}: {message}")


class ChannelFetchError(CeebalancerError):
    """Listing channels from lightningd failed."""


class PolicyApplyError(CeebalancerError):
    """setchannel failed for a single channel."""

    def __init__(self, channel_id, message):
        self.channel_id = channel_id
        super().__init__(f"{channel_id}: {message}")


class RunInProgressError(CeebalancerError):
    """A rebalance run is already in progress."""

    def __init__(self, trigger: str = "manual"):
        self.trigger = trigger
        super().__init__(f"Rebalance run already in progress (rejected {trigger} trigger)")
