#!/usr/bin/env python3
"""
ceebalancer: A liquidity-rebalancing fee plugin for Core Lightning

This plugin periodically inspects every local channel, measures how much of
its capacity has drained away from our side, and advertises a fee rate and
HTLC maximum that steer future traffic back toward balance:

- Channels where we hold most of the funds get the minimum fee
- Drained channels get the maximum fee, choking off further draining
- In between, the fee rises linearly with the drained proportion
- The HTLC maximum is a conservative step function of our balance

Runs fire on a timer (dynamic-fee-interval) when dynamic-fees is enabled,
and on demand via `lightning-cli ceebalancer-run`. Only one run executes at
a time; a trigger arriving mid-run is rejected, not queued.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
import signal
import threading
from typing import Dict, Any, Optional

from pyln.client import Plugin

from ceebalancer.config import Config, ParameterStore, CONFIG_FIELD_TYPES, IMMUTABLE_CONFIG_KEYS
from ceebalancer.database import Database
from ceebalancer.errors import ParameterError, ChannelFetchError, RunInProgressError
from ceebalancer.node_client import NodeClient
from ceebalancer.rebalancer import RebalanceScheduler
from ceebalancer.rpc import ThreadSafePluginProxy


# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# Signals the timer thread to exit at its next wait instead of sleeping for
# the remainder of dynamic-fee-interval.

shutdown_event = threading.Event()

# Global instances (initialized in init)
config: Optional[Config] = None
parameters: Optional[ParameterStore] = None
database: Optional[Database] = None
node_client: Optional[NodeClient] = None
scheduler: Optional[RebalanceScheduler] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='dynamic-fees',
    default='false',
    description='Adjust fees dynamically to try to keep channels in balance'
)

plugin.add_option(
    name='dynamic-fee-min',
    default='0',
    description='Min fee in PPM for the dynamic range (default: 0)'
)

plugin.add_option(
    name='dynamic-fee-max',
    default='1000',
    description='Max fee in PPM for the dynamic range (default: 1000)'
)

plugin.add_option(
    name='dynamic-fee-interval',
    default='3600',
    description='Update/evaluation interval in seconds (default: 1 hour)'
)

plugin.add_option(
    name='ceebalancer-db-path',
    default='~/.lightning/ceebalancer.db',
    description='Path to the SQLite database for run history and config overrides'
)

plugin.add_option(
    name='ceebalancer-dry-run',
    default='false',
    description='Log computed policies without calling setchannel (default: false)'
)


def _option_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == 'true'


# =============================================================================
# INITIALIZATION
# =============================================================================

@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the ceebalancer plugin.

    This is called once when the plugin starts. We:
    1. Parse and validate options
    2. Initialize the database and apply persisted overrides
    3. Run startup sanity checks (getinfo, on-chain balance)
    4. Start the timer loop if dynamic-fees is enabled
    """
    global config, parameters, database, node_client, scheduler, safe_plugin

    plugin.log("Initializing ceebalancer plugin...")

    # Build configuration from options
    try:
        config = Config(
            db_path=os.path.expanduser(options['ceebalancer-db-path']),
            dynamic_fees=_option_bool(options['dynamic-fees']),
            fee_min=int(options['dynamic-fee-min']),
            fee_max=int(options['dynamic-fee-max']),
            update_interval=int(options['dynamic-fee-interval']),
            dry_run=_option_bool(options['ceebalancer-dry-run']),
        )
        initial_params = config.snapshot()
    except (ValueError, ParameterError) as e:
        plugin.log(f"Invalid ceebalancer configuration: {e}", level='error')
        return {"disable": f"Invalid configuration: {e}"}

    # Serialize RPC access between the timer thread and RPC method handlers
    safe_plugin = ThreadSafePluginProxy(plugin)

    database = Database(config.db_path, safe_plugin)
    database.initialize()

    parameters = ParameterStore(initial_params)
    applied, rejected = parameters.load_overrides(database)
    if applied:
        plugin.log(f"Applied persisted config overrides: {', '.join(applied)}")
    for key, reason in sorted(rejected.items()):
        plugin.log(f"Ignoring persisted override {key}: {reason}", level='warn')

    active = parameters.get()
    plugin.log(f"Configuration loaded: dynamic_fees={active.dynamic_fees}, "
               f"fee_range=[{active.fee_min}, {active.fee_max}], "
               f"interval={active.update_interval}s, dry_run={active.dry_run}")

    node_client = NodeClient(safe_plugin)
    node_client.sanity_check()

    scheduler = RebalanceScheduler(safe_plugin, node_client, parameters, database, shutdown_event)

    # =========================================================================
    # SIGNAL HANDLER: Clean Shutdown on `lightning-cli plugin stop`
    # =========================================================================
    def handle_shutdown_signal(signum, frame):
        """
        Handle SIGTERM for graceful shutdown.

        Sets shutdown_event so the timer loop exits immediately instead of
        waiting out its sleep.
        """
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if database:
            try:
                database.close()
            except Exception as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    if active.dynamic_fees:
        scheduler.start()
        plugin.log("Dynamic fees enabled, rebalance timer started")
    else:
        plugin.log("`dynamic-fees` is disabled; use ceebalancer-run for manual runs")

    plugin.log("ceebalancer plugin initialized successfully!")
    return None


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("ceebalancer-run")
def ceebalancer_run(plugin: Plugin) -> Dict[str, Any]:
    """
    Run a rebalance pass over all channels now.

    Usage: lightning-cli ceebalancer-run

    Returns status 'busy' if a run is already in progress; retry later.
    """
    if scheduler is None:
        return {"error": "Plugin not fully initialized"}

    try:
        report = scheduler.run_rebalance(trigger="manual")
    except RunInProgressError as e:
        return {"status": "busy", "error": str(e)}

    return report.to_dict()


@plugin.method("ceebalancer-status")
def ceebalancer_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the ceebalancer plugin.

    Usage: lightning-cli ceebalancer-status
    """
    if scheduler is None or parameters is None:
        return {"error": "Plugin not fully initialized"}

    last = scheduler.last_report
    return {
        "status": "running",
        "scheduler_state": scheduler.state.value,
        "timer_active": scheduler.timer_active,
        "parameters": parameters.get().to_dict(),
        "last_run": last.to_dict() if last else None,
    }


@plugin.method("ceebalancer-preview")
def ceebalancer_preview(plugin: Plugin, channel_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Show the policy each channel would receive, without applying it.

    Usage: lightning-cli ceebalancer-preview [channel_id]
    """
    if scheduler is None:
        return {"error": "Plugin not fully initialized"}

    try:
        channels = scheduler.preview(channel_id)
    except ChannelFetchError as e:
        return {"error": str(e)}

    return {"channels": channels, "count": len(channels)}


@plugin.method("ceebalancer-config")
def ceebalancer_config(plugin: Plugin, action: str, key: str = None, value: str = None) -> Dict[str, Any]:
    """
    Get or set runtime configuration.

    Usage:
      lightning-cli ceebalancer-config get                 # Get all config
      lightning-cli ceebalancer-config get <key>           # Get specific key
      lightning-cli ceebalancer-config set <key> <value>   # Set key
      lightning-cli ceebalancer-config reset <key>         # Restore startup value
      lightning-cli ceebalancer-config list-mutable        # List changeable keys

    Examples:
      lightning-cli ceebalancer-config set fee_max 2000
      lightning-cli ceebalancer-config set dynamic_fees true
    """
    if parameters is None or database is None:
        return {"error": "Plugin not initialized"}

    if action == "get":
        active = parameters.get()
        if key:
            if not hasattr(active, key):
                return {"error": f"Unknown config key: {key}"}
            return {"key": key, "value": getattr(active, key), "version": active.version}
        return {"config": active.to_dict(), "version": active.version}

    elif action == "set":
        if not key or value is None:
            return {"error": "Usage: ceebalancer-config set <key> <value>"}

        result = parameters.update_runtime(database, key, str(value))

        if result.get("status") == "success":
            plugin.log(
                f"CONFIG UPDATE: {key} changed from {result['old_value']} "
                f"to {result['new_value']} (v{result['version']})",
                level='info'
            )
            _sync_timer()

        return result

    elif action == "reset":
        if not key:
            return {"error": "Usage: ceebalancer-config reset <key>"}

        result = parameters.reset_runtime(database, key)
        if result.get("status") == "success":
            plugin.log(f"CONFIG RESET: {key} restored to {result['new_value']}", level='info')
            _sync_timer()
        return result

    elif action == "list-mutable":
        mutable = [k for k in CONFIG_FIELD_TYPES.keys() if k not in IMMUTABLE_CONFIG_KEYS]
        return {"mutable_keys": sorted(mutable), "count": len(mutable)}

    else:
        return {"error": f"Unknown action: {action}. Use 'get', 'set', 'reset', or 'list-mutable'"}


def _sync_timer():
    """Start the timer if dynamic_fees was switched on at runtime."""
    if scheduler and parameters and parameters.get().dynamic_fees:
        scheduler.start()


@plugin.method("ceebalancer-history")
def ceebalancer_history(plugin: Plugin, limit: int = 10, channel_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Show recent rebalance runs and applied policies.

    Usage: lightning-cli ceebalancer-history [limit] [channel_id]
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}

    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return {"error": "limit must be an integer"}

    return {
        "runs": database.get_recent_runs(limit=limit),
        "policy_changes": database.get_recent_policy_changes(limit=limit, channel_id=channel_id),
    }


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@plugin.subscribe("forward_event")
def on_forward_event(forward_event: Dict, plugin: Plugin, **kwargs):
    """Log forwards; fee policy reacts to the resulting balances on the next run."""
    plugin.log(
        f"Forward {forward_event.get('status', '?')}: "
        f"{forward_event.get('in_channel', '?')} -> {forward_event.get('out_channel', '?')}",
        level='debug'
    )


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
