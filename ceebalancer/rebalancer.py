"""
Rebalance scheduler for ceebalancer

Applies the fee policy to every channel, either on a timer or on demand.

RUN LIFECYCLE:
    IDLE --(trigger, run lock acquired)--> RUNNING --(loop done)--> IDLE

Only one run may hold the run lock. A trigger that arrives while a run is in
progress is rejected immediately with RunInProgressError; it is neither
queued nor dropped silently. The timer treats a rejection as "try again next
tick".

Within a run:
1. Read the active PolicyParameters once
2. Fetch all channels once (failure here aborts the run)
3. For each channel: evaluate, then apply via setchannel
4. A failure on one channel is logged, recorded in the RunReport, and the
   loop moves on to the next channel
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any

from pyln.client import Plugin

from .config import ParameterStore, PolicyParameters
from .errors import ChannelFetchError, RunInProgressError
from .fee_policy import PolicyDecision, ChannelSkip, evaluate_channel
from .node_client import NodeClient, ChannelSnapshot


class SchedulerState(Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ChannelFailure:
    """A channel whose evaluation or setchannel call failed this run."""
    channel_id: str
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"channel_id": self.channel_id, "error": self.error}


@dataclass
class RunReport:
    """
    Outcome of one rebalance run.

    Attributes:
        trigger: 'timer' or 'manual'
        status: 'success' unless the channel fetch failed
        channels: Number of channels returned by lightningd
        evaluated: Channels that received a PolicyDecision
        applied: Decisions successfully sent to lightningd
        skipped: Ineligible channels (offline, awaiting lock-in, not normal)
        failed: Channels whose evaluation or apply raised
        skip_reasons: Skip count per SkipReason value
        failures: Per-channel failure details
        decisions: Every decision computed this run
        error: Fatal error text when status is 'failed'
        params_version: Version of the PolicyParameters used
        dry_run: True if decisions were not applied
    """
    trigger: str
    started_at: float
    finished_at: float = 0.0
    status: str = "success"
    channels: int = 0
    evaluated: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    skip_reasons: Dict[str, int] = field(default_factory=dict)
    failures: List[ChannelFailure] = field(default_factory=list)
    decisions: List[PolicyDecision] = field(default_factory=list)
    error: Optional[str] = None
    params_version: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "status": self.status,
            "started_at": int(self.started_at),
            "finished_at": int(self.finished_at),
            "duration_seconds": round(max(0.0, self.finished_at - self.started_at), 3),
            "channels": self.channels,
            "evaluated": self.evaluated,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
            "skip_reasons": dict(self.skip_reasons),
            "failures": [f.to_dict() for f in self.failures],
            "decisions": [d.to_dict() for d in self.decisions],
            "error": self.error,
            "params_version": self.params_version,
            "dry_run": self.dry_run,
        }


def _channel_label(channel: ChannelSnapshot) -> str:
    """Identifier for logs: short channel id, else funding txid prefix."""
    if channel.channel_id:
        return channel.channel_id
    if channel.funding_txid:
        return f"{channel.funding_txid[:16]}:{channel.funding_output}"
    return f"peer {channel.peer_id[:16]}"


class RebalanceScheduler:
    """
    Drives timer and on-demand rebalance runs over all channels.

    Args:
        plugin: pyln Plugin, used for logging
        node: NodeClient for listfunds / setchannel
        parameters: ParameterStore holding the active PolicyParameters
        database: Optional Database for the audit log and run history
        shutdown_event: Event that stops the timer loop when set
    """

    # Days of policy_changes / rebalance_runs rows kept by the timer loop
    HISTORY_DAYS = 30

    def __init__(self, plugin: Plugin, node: NodeClient, parameters: ParameterStore,
                 database=None, shutdown_event: Optional[threading.Event] = None):
        self.plugin = plugin
        self.node = node
        self.parameters = parameters
        self.database = database
        self.shutdown_event = shutdown_event or threading.Event()

        self._run_lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._last_report: Optional[RunReport] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def last_report(self) -> Optional[RunReport]:
        return self._last_report

    @property
    def timer_active(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # =========================================================================
    # Runs
    # =========================================================================

    def run_rebalance(self, params: Optional[PolicyParameters] = None,
                      trigger: str = "manual") -> RunReport:
        """
        Evaluate and apply policy for every channel.

        Args:
            params: Parameters for this run; defaults to the active set
            trigger: 'timer' or 'manual', recorded in the report

        Returns:
            RunReport for the run. status is 'failed' only if the channel
            list could not be fetched.

        Raises:
            RunInProgressError: if another run holds the run lock
        """
        if not self._run_lock.acquire(blocking=False):
            self.plugin.log(
                f"Rejected {trigger} rebalance trigger: run already in progress",
                level='warn'
            )
            raise RunInProgressError(trigger)

        try:
            self._state = SchedulerState.RUNNING
            cfg = params if params is not None else self.parameters.get()
            report = self._run(cfg, trigger)
        finally:
            self._state = SchedulerState.IDLE
            self._run_lock.release()

        self._last_report = report
        if self.database:
            try:
                self.database.record_run(report.to_dict())
            except Exception as e:
                self.plugin.log(f"Failed to record rebalance run: {e}", level='warn')

        return report

    def _run(self, cfg: PolicyParameters, trigger: str) -> RunReport:
        report = RunReport(
            trigger=trigger,
            started_at=time.time(),
            params_version=cfg.version,
            dry_run=cfg.dry_run,
        )

        self.plugin.log(
            f"Starting {trigger} rebalance run (fee_range=[{cfg.fee_min}, {cfg.fee_max}], "
            f"version={cfg.version})"
        )

        try:
            channels = self.node.list_channels()
        except ChannelFetchError as e:
            report.status = "failed"
            report.error = str(e)
            report.finished_at = time.time()
            self.plugin.log(f"Rebalance run aborted: {e}", level='error')
            return report

        report.channels = len(channels)

        for channel in channels:
            self._process_channel(channel, cfg, trigger, report)

        report.finished_at = time.time()

        summary = (
            f"Rebalance run complete: {report.applied}/{report.evaluated} applied, "
            f"{report.skipped} skipped, {report.failed} failed"
        )
        if report.skip_reasons:
            summary += f". Skip reasons: {report.skip_reasons}"
        self.plugin.log(summary, level='warn' if report.failed else 'info')

        return report

    def _process_channel(self, channel: ChannelSnapshot, cfg: PolicyParameters,
                         trigger: str, report: RunReport) -> None:
        label = _channel_label(channel)

        try:
            outcome = evaluate_channel(channel, cfg)
        except Exception as e:
            self._record_failure(report, label, e)
            return

        if isinstance(outcome, ChannelSkip):
            report.skipped += 1
            reason = outcome.reason.value
            report.skip_reasons[reason] = report.skip_reasons.get(reason, 0) + 1
            self.plugin.log(f"Skipping {label}: {reason}")
            return

        report.evaluated += 1
        report.decisions.append(outcome)
        self.plugin.log(
            f"Calculated policy for {label}: fee={outcome.fee_ppm} PPM, "
            f"htlc_max={outcome.htlc_max_msat}msat "
            f"(drained={outcome.proportion_drained:.1%})",
            level='debug'
        )

        if cfg.dry_run:
            self.plugin.log(
                f"[DRY RUN] Would set {label} to {outcome.fee_ppm} PPM, "
                f"htlc_max {outcome.htlc_max_msat}msat"
            )
            return

        try:
            self.node.apply_channel_policy(
                outcome.channel_id, outcome.fee_ppm, outcome.htlc_max_msat
            )
        except Exception as e:
            self._record_failure(report, label, e)
            return

        report.applied += 1
        self.plugin.log(
            f"Set policy for {label}: {outcome.fee_ppm} PPM, "
            f"htlc_max {outcome.htlc_max_msat}msat"
        )

        if self.database:
            try:
                self.database.record_policy_change(
                    channel_id=outcome.channel_id,
                    fee_ppm=outcome.fee_ppm,
                    htlc_max_msat=outcome.htlc_max_msat,
                    our_amount_msat=channel.our_amount_msat,
                    amount_msat=channel.amount_msat,
                    trigger=trigger,
                )
            except Exception as e:
                self.plugin.log(f"Failed to record policy change for {label}: {e}", level='warn')

    def _record_failure(self, report: RunReport, label: str, error: Exception) -> None:
        report.failed += 1
        report.failures.append(ChannelFailure(channel_id=label, error=str(error)))
        self.plugin.log(f"Error updating policy for {label}: {error}", level='error')

    def preview(self, channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Evaluate channels with the active parameters without applying anything.

        Raises:
            ChannelFetchError: if the channel list could not be fetched
        """
        cfg = self.parameters.get()
        results = []
        for channel in self.node.list_channels():
            if channel_id and channel.channel_id != channel_id:
                continue
            entry: Dict[str, Any] = {"channel": channel.to_dict()}
            try:
                outcome = evaluate_channel(channel, cfg)
            except Exception as e:
                entry["error"] = str(e)
            else:
                if isinstance(outcome, ChannelSkip):
                    entry["skipped"] = outcome.reason.value
                else:
                    entry["decision"] = outcome.to_dict()
            results.append(entry)
        return results

    # =========================================================================
    # Timer
    # =========================================================================

    def start(self) -> threading.Thread:
        """Start the timer loop on a daemon thread."""
        if self.timer_active:
            return self._thread
        self._thread = threading.Thread(
            target=self._timer_loop, daemon=True, name="rebalance-timer"
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self.shutdown_event.set()

    def _timer_loop(self) -> None:
        """Background loop: wait update_interval, run, repeat until shutdown."""
        while not self.shutdown_event.is_set():
            interval = self.parameters.get().update_interval
            self.plugin.log(f"Rebalance timer sleeping for {interval}s", level='debug')

            # Interruptible sleep: wait for timeout OR shutdown signal
            if self.shutdown_event.wait(interval):
                self.plugin.log("Rebalance timer stopping due to shutdown signal")
                break

            self.tick()

    def tick(self) -> Optional[RunReport]:
        """
        One timer firing. Never raises: contention and errors are logged and
        the next tick tries again.
        """
        if not self.parameters.get().dynamic_fees:
            self.plugin.log("Dynamic fees disabled, skipping scheduled run", level='debug')
            return None

        try:
            report = self.run_rebalance(trigger="timer")
        except RunInProgressError:
            self.plugin.log("Scheduled run skipped: manual run in progress", level='info')
            return None
        except Exception as e:
            self.plugin.log(f"Error in scheduled rebalance run: {e}", level='error')
            return None

        if self.database:
            try:
                self.database.cleanup_old_data(days_to_keep=self.HISTORY_DAYS)
            except Exception as e:
                self.plugin.log(f"History cleanup failed: {e}", level='warn')

        return report
