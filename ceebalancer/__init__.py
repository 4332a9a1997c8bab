"""
ceebalancer package

This package contains the core modules for the ceebalancer plugin:
- config: PolicyParameters, runtime ParameterStore and plugin Config
- fee_policy: Fee curve, HTLC max ladder and per-channel evaluation
- node_client: listfunds/setchannel access and ChannelSnapshot parsing
- rebalancer: Timer and on-demand rebalance runs with per-channel isolation
- database: SQLite storage layer
- rpc: Thread-safe RPC proxy
- errors: Exception types
"""

from .config import Config, PolicyParameters, ParameterStore
from .database import Database
from .errors import (
    CeebalancerError,
    ParameterError,
    ChannelDataError,
    ChannelFetchError,
    PolicyApplyError,
    RunInProgressError,
)
from .fee_policy import (
    PolicyDecision,
    ChannelSkip,
    SkipReason,
    calculate_fee_target,
    calculate_htlc_max,
    evaluate_channel,
)
from .node_client import NodeClient, ChannelSnapshot, ChannelState
from .rebalancer import RebalanceScheduler, RunReport, SchedulerState
from .rpc import ThreadSafePluginProxy

__all__ = [
    'Config',
    'PolicyParameters',
    'ParameterStore',
    'Database',
    'CeebalancerError',
    'ParameterError',
    'ChannelDataError',
    'ChannelFetchError',
    'PolicyApplyError',
    'RunInProgressError',
    'PolicyDecision',
    'ChannelSkip',
    'SkipReason',
    'calculate_fee_target',
    'calculate_htlc_max',
    'evaluate_channel',
    'NodeClient',
    'ChannelSnapshot',
    'ChannelState',
    'RebalanceScheduler',
    'RunReport',
    'SchedulerState',
    'ThreadSafePluginProxy',
]
