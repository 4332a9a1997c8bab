"""
Fee policy module for ceebalancer

Turns a channel's balance snapshot into the fee rate and HTLC maximum we
advertise for it.

FEE CURVE:
The fee scales with how much of the channel has drained away from our side:

    proportion_drained = 1 - our_balance / capacity

    drained <= 20%  -> fee_min   (we hold most of the funds)
    drained >= 80%  -> fee_max   (choke off further draining)
    otherwise       -> linear interpolation, truncated to a multiple of 10

HTLC MAXIMUM:
A step function of our balance. We pick the largest bucket on a fixed
ladder that our balance covers and advertise 90% of it, leaving headroom for
concurrent in-flight forwards.

Everything in this module is pure: no RPC, no logging, no shared state.
"""

import bisect
import math
from fractions import Fraction
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Union

from .config import PolicyParameters
from .errors import ChannelDataError
from .node_client import ChannelSnapshot, ChannelState


# Fee results between the saturated endpoints are truncated to this step
FEE_ROUNDING_STEP = 10

# HTLC maximum ladder in msat, ascending
HTLC_MAX_BUCKETS = (
    1_000,
    100_000,
    250_000,
    1_000_000,
    10_000_000,
    50_000_000,
    100_000_000,
    250_000_000,
    500_000_000,
    1_000_000_000,
    2_000_000_000,
    3_000_000_000,
    4_000_000_000,
    5_000_000_000,
    7_500_000_000,
    10_000_000_000,
    15_000_000_000,
    20_000_000_000,
)

# Advertise 9/10 of the selected bucket
HTLC_MAX_NUMERATOR = 9
HTLC_MAX_DENOMINATOR = 10


class SkipReason(Enum):
    """Why a channel received no policy this run."""
    OFFLINE = "offline"
    AWAITING_LOCKIN = "awaiting_lockin"
    NOT_NORMAL = "not_normal"


@dataclass(frozen=True)
class PolicyDecision:
    """
    Fee rate and HTLC maximum computed for one channel.

    Attributes:
        channel_id: Short channel ID the decision applies to
        fee_ppm: Fee rate, within [fee_min, fee_max]
        htlc_max_msat: Maximum forward amount, never above our balance
        proportion_drained: Balance skew the fee was derived from
    """
    channel_id: str
    fee_ppm: int
    htlc_max_msat: int
    proportion_drained: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "fee_ppm": self.fee_ppm,
            "htlc_max_msat": self.htlc_max_msat,
            "proportion_drained": round(self.proportion_drained, 4),
        }


@dataclass(frozen=True)
class ChannelSkip:
    """A channel that is not eligible for a policy update this run."""
    channel_id: Optional[str]
    reason: SkipReason

    def to_dict(self) -> Dict[str, Any]:
        return {"channel_id": self.channel_id, "reason": self.reason.value}


def calculate_proportion_drained(our_msat: int, total_msat: int) -> float:
    """
    Fraction of capacity that is NOT on our side.

    0.0 = we hold everything, 1.0 = fully drained.

    Raises:
        ChannelDataError: if total_msat is zero
    """
    if total_msat <= 0:
        raise ChannelDataError("?", f"Channel capacity must be positive, got {total_msat}")
    return 1.0 - (our_msat / total_msat)


def calculate_fee_target(our_msat: int, total_msat: int, params: PolicyParameters) -> int:
    """
    Map a channel balance onto the fee curve.

    The saturated endpoints return fee_min / fee_max as configured. Only the
    interpolated region is truncated to a multiple of FEE_ROUNDING_STEP, so a
    fee_min or fee_max that is not itself a multiple of the step is returned
    unchanged at the endpoints.

    Args:
        our_msat: Our side of the channel balance
        total_msat: Channel capacity (must be > 0)
        params: Active policy parameters

    Returns:
        Fee rate in PPM within [fee_min, fee_max]

    Raises:
        ChannelDataError: if total_msat is zero
    """
    if total_msat <= 0:
        raise ChannelDataError("?", f"Channel capacity must be positive, got {total_msat}")

    # Exact rational arithmetic; the floor below must see the true value
    proportion = Fraction(total_msat - our_msat, total_msat)
    low = Fraction(str(params.balance_threshold_low))
    high = Fraction(str(params.balance_threshold_high))

    if proportion <= low:
        return params.fee_min
    if proportion >= high:
        return params.fee_max

    t = (proportion - low) / (high - low)
    raw = params.fee_min + t * (params.fee_max - params.fee_min)
    stepped = math.floor(raw / FEE_ROUNDING_STEP) * FEE_ROUNDING_STEP

    return max(params.fee_min, min(params.fee_max, stepped))


def calculate_htlc_max(our_msat: int) -> int:
    """
    Select the advertised HTLC maximum for our balance.

    Uses the largest HTLC_MAX_BUCKETS entry not above our_msat, or our_msat
    itself below the first bucket, and returns 90% of it rounded half-up.
    """
    if our_msat < 0:
        raise ValueError(f"Balance must be non-negative, got {our_msat}")

    idx = bisect.bisect_right(HTLC_MAX_BUCKETS, our_msat)
    bucket = HTLC_MAX_BUCKETS[idx - 1] if idx > 0 else our_msat

    # Integer half-up rounding of bucket * 0.9
    return (bucket * HTLC_MAX_NUMERATOR * 2 + HTLC_MAX_DENOMINATOR) // (HTLC_MAX_DENOMINATOR * 2)


def evaluate_channel(channel: ChannelSnapshot,
                     params: PolicyParameters) -> Union[PolicyDecision, ChannelSkip]:
    """
    Decide the policy for one channel.

    Eligibility is checked in order: connected, locked in (has a short
    channel id), CHANNELD_NORMAL. Ineligible channels yield a ChannelSkip.

    Raises:
        ChannelDataError: if the channel has zero capacity
    """
    if not channel.connected:
        return ChannelSkip(channel.channel_id, SkipReason.OFFLINE)

    if not channel.channel_id:
        return ChannelSkip(None, SkipReason.AWAITING_LOCKIN)

    if channel.state != ChannelState.CHANNELD_NORMAL:
        return ChannelSkip(channel.channel_id, SkipReason.NOT_NORMAL)

    if channel.amount_msat <= 0:
        raise ChannelDataError(channel.channel_id, "zero capacity, balance proportion undefined")

    return PolicyDecision(
        channel_id=channel.channel_id,
        fee_ppm=calculate_fee_target(channel.our_amount_msat, channel.amount_msat, params),
        htlc_max_msat=calculate_htlc_max(channel.our_amount_msat),
        proportion_drained=calculate_proportion_drained(
            channel.our_amount_msat, channel.amount_msat
        ),
    )
