"""
Node control-plane access for ceebalancer

Wraps the lightningd RPC calls the rebalancing loop depends on:
- listfunds: channel balances/states and on-chain outputs
- setchannel: advertise a new fee rate and HTLC maximum
- getinfo: startup sanity check

Responses are converted into read-only ChannelSnapshot values here so the
policy code never touches raw RPC dicts.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Any

from pyln.client import Plugin, RpcError

from .errors import ChannelFetchError, ChannelDataError, PolicyApplyError


# Raised by pyln when lightningd rejects a call, is unreachable or answers
# with something undecodable
TRANSPORT_ERRORS = (RpcError, OSError, ValueError)


class ChannelState(Enum):
    """
    Channel lifecycle states as reported by lightningd.

    Only CHANNELD_NORMAL channels are eligible for fee changes.
    """
    OPENINGD = "OPENINGD"
    CHANNELD_AWAITING_LOCKIN = "CHANNELD_AWAITING_LOCKIN"
    CHANNELD_NORMAL = "CHANNELD_NORMAL"
    CHANNELD_SHUTTING_DOWN = "CHANNELD_SHUTTING_DOWN"
    CLOSINGD_SIGEXCHANGE = "CLOSINGD_SIGEXCHANGE"
    CLOSINGD_COMPLETE = "CLOSINGD_COMPLETE"
    AWAITING_UNILATERAL = "AWAITING_UNILATERAL"
    FUNDING_SPEND_SEEN = "FUNDING_SPEND_SEEN"
    ONCHAIN = "ONCHAIN"
    DUALOPEND_OPEN_INIT = "DUALOPEND_OPEN_INIT"
    DUALOPEND_AWAITING_LOCKIN = "DUALOPEND_AWAITING_LOCKIN"
    CHANNELD_AWAITING_SPLICE = "CHANNELD_AWAITING_SPLICE"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: Optional[str]) -> "ChannelState":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Multipliers for the amount suffixes lightningd has used over time
_MSAT_UNITS = (
    ('msat', 1),
    ('sat', 1000),
    ('btc', 100_000_000_000),
)


def parse_msat(msat_val: Any) -> int:
    """
    Convert an amount field to integer millisatoshis.

    Handles raw integers, Millisatoshi objects, and '1000msat' / '1sat' /
    '1btc' strings.

    Raises:
        ValueError: if the value is not a recognizable amount
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        raise ValueError(f"Unable to parse amount: {msat_val!r}")
    if isinstance(msat_val, int):
        if msat_val < 0:
            raise ValueError(f"Negative amount: {msat_val}")
        return msat_val
    if isinstance(msat_val, str):
        s = msat_val.strip().lower()
        if s.isdigit():
            return int(s)
        for suffix, multiplier in _MSAT_UNITS:
            if s.endswith(suffix):
                number = s[:-len(suffix)]
                if number.isdigit():
                    return int(number) * multiplier
                break
    raise ValueError(f"Unable to parse amount: {msat_val!r}")


@dataclass(frozen=True)
class ChannelSnapshot:
    """
    Point-in-time view of one local channel.

    Attributes:
        channel_id: Short channel ID, None until the funding tx has locked in
        peer_id: Node ID of the peer
        connected: Whether the peer is currently connected
        our_amount_msat: Our side of the channel balance
        amount_msat: Total channel capacity
        state: Channel lifecycle state
        funding_txid: Funding transaction ID
        funding_output: Funding output index
    """
    channel_id: Optional[str]
    peer_id: str
    connected: bool
    our_amount_msat: int
    amount_msat: int
    state: ChannelState
    funding_txid: str = ""
    funding_output: int = 0

    @classmethod
    def from_listfunds(cls, channel: Dict[str, Any]) -> "ChannelSnapshot":
        """
        Build a snapshot from one entry of listfunds()["channels"].

        Raises:
            ChannelDataError: if an amount field is malformed
        """
        if not isinstance(channel, dict):
            raise ChannelDataError("?", f"Expected channel object, got {type(channel).__name__}")
        channel_id = channel.get("short_channel_id")
        label = channel_id or channel.get("funding_txid", "?")
        try:
            our_amount = parse_msat(channel.get("our_amount_msat"))
            total_amount = parse_msat(channel.get("amount_msat"))
        except ValueError as e:
            raise ChannelDataError(label, str(e))

        return cls(
            channel_id=channel_id,
            peer_id=channel.get("peer_id", ""),
            connected=bool(channel.get("connected", False)),
            our_amount_msat=our_amount,
            amount_msat=total_amount,
            state=ChannelState.parse(channel.get("state")),
            funding_txid=channel.get("funding_txid", ""),
            funding_output=int(channel.get("funding_output", 0) or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "channel_id": self.channel_id,
            "peer_id": self.peer_id,
            "connected": self.connected,
            "our_amount_msat": self.our_amount_msat,
            "amount_msat": self.amount_msat,
            "state": self.state.value,
            "funding_txid": self.funding_txid,
            "funding_output": self.funding_output,
        }


class NodeClient:
    """
    Typed access to the lightningd calls used by the rebalancing loop.

    The plugin passed in is normally a ThreadSafePluginProxy, so calls from
    the timer thread and the plugin's main thread are serialized.
    """

    def __init__(self, plugin: Plugin):
        self.plugin = plugin

    def get_info(self) -> Dict[str, Any]:
        return self.plugin.rpc.getinfo()

    def sanity_check(self) -> bool:
        """
        Log node identity and on-chain balance at startup.

        Never raises; returns False if either call failed.
        """
        ok = True
        try:
            info = self.get_info()
            if not isinstance(info, dict):
                raise ValueError(f"getinfo returned {type(info).__name__}, expected object")
            self.plugin.log(f"Connected to node {str(info.get('id', '?'))[:16]}... "
                            f"({info.get('alias', '')}, {info.get('network', '?')})")
        except TRANSPORT_ERRORS as e:
            self.plugin.log(f"getinfo sanity check failed: {e}", level='warn')
            ok = False

        try:
            balance = self.get_onchain_balance()
            self.plugin.log(f"Onchain balance: {balance}msat", level='debug')
        except ChannelFetchError as e:
            self.plugin.log(f"Could not read on-chain balance: {e}", level='warn')
            ok = False

        return ok

    def _listfunds(self) -> Dict[str, Any]:
        try:
            result = self.plugin.rpc.listfunds()
        except TRANSPORT_ERRORS as e:
            raise ChannelFetchError(f"listfunds failed: {e}") from e
        if not isinstance(result, dict):
            raise ChannelFetchError(f"listfunds returned {type(result).__name__}, expected object")
        return result

    def list_channels(self) -> List[ChannelSnapshot]:
        """
        Get a fresh snapshot of every local channel.

        Raises:
            ChannelFetchError: if lightningd is unreachable or the response
                is malformed
        """
        result = self._listfunds()
        channels = result.get("channels")
        if not isinstance(channels, list):
            raise ChannelFetchError("listfunds response has no 'channels' list")

        snapshots = []
        for channel in channels:
            try:
                snapshots.append(ChannelSnapshot.from_listfunds(channel))
            except ChannelDataError as e:
                raise ChannelFetchError(f"Malformed listfunds channel entry: {e}") from e
        return snapshots

    def get_onchain_balance(self) -> int:
        """Sum of all listfunds outputs in msat."""
        result = self._listfunds()
        total = 0
        for output in result.get("outputs", []):
            try:
                total += parse_msat(output.get("amount_msat"))
            except ValueError as e:
                raise ChannelFetchError(f"Malformed listfunds output: {e}") from e
        return total

    def apply_channel_policy(self, channel_id: str, fee_ppm: int, htlc_max_msat: int) -> Dict[str, Any]:
        """
        Set a channel's advertised fee rate and HTLC maximum.

        setchannel is idempotent, so re-applying an unchanged policy is safe.

        Raises:
            PolicyApplyError: if lightningd rejects the call
        """
        try:
            return self.plugin.rpc.setchannel(
                id=channel_id,
                feeppm=fee_ppm,
                htlcmax=htlc_max_msat,
            )
        except TRANSPORT_ERRORS as e:
            raise PolicyApplyError(channel_id, f"setchannel failed: {e}") from e
