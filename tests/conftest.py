"""
Pytest fixtures for ceebalancer tests.

Provides mock plugin, RPC, database, and channel fixtures.
"""

import pytest
import tempfile
import os
import sys
from unittest.mock import MagicMock

# Add package to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ceebalancer.config import PolicyParameters, ParameterStore
from ceebalancer.node_client import ChannelSnapshot, ChannelState


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    # Default return values
    rpc.getinfo.return_value = {
        "id": "02" + "a" * 64,
        "alias": "test-node",
        "network": "regtest"
    }

    rpc.listfunds.return_value = {"channels": [], "outputs": []}
    rpc.setchannel.return_value = {"channels": []}

    return rpc


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """Create an initialized Database on a temp file."""
    from ceebalancer.database import Database

    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def params():
    """Policy parameters used throughout the fee curve examples."""
    return PolicyParameters(fee_min=10, fee_max=500, update_interval=100)


@pytest.fixture
def parameter_store(params):
    return ParameterStore(params)


@pytest.fixture
def make_channel():
    """Factory for ChannelSnapshot values."""
    def _make(channel_id="123x456x0", our_amount_msat=500_000, amount_msat=1_000_000,
              connected=True, state=ChannelState.CHANNELD_NORMAL,
              peer_id="03" + "b" * 64):
        return ChannelSnapshot(
            channel_id=channel_id,
            peer_id=peer_id,
            connected=connected,
            our_amount_msat=our_amount_msat,
            amount_msat=amount_msat,
            state=state,
            funding_txid="724ee70bc1670368c3db3c2ebed30d00fa595774356cebf509196c68a471ca91",
            funding_output=0,
        )
    return _make


@pytest.fixture
def sample_listfunds():
    """listfunds response with one normal and one unconfirmed channel."""
    return {
        "outputs": [
            {"txid": "aa" * 32, "output": 0, "amount_msat": "150000000msat", "status": "confirmed"},
            {"txid": "bb" * 32, "output": 1, "amount_msat": 50_000_000, "status": "confirmed"},
        ],
        "channels": [
            {
                "peer_id": "039b9e260863e6d8735325b286931d73be9f8e766970ad4fe1cbcc470cd8964635",
                "connected": True,
                "state": "CHANNELD_NORMAL",
                "short_channel_id": "206x5x0",
                "our_amount_msat": "4000000000msat",
                "amount_msat": "4000000000msat",
                "funding_txid": "724ee70bc1670368c3db3c2ebed30d00fa595774356cebf509196c68a471ca91",
                "funding_output": 0
            },
            {
                "peer_id": "035954e4f315fd0067fbc41a05bf2f35be6020ab67f047a1c46bac3126d0614574",
                "connected": True,
                "state": "CHANNELD_AWAITING_LOCKIN",
                "our_amount_msat": 1_000_000_000,
                "amount_msat": 2_000_000_000,
                "funding_txid": "b" * 64,
                "funding_output": 1
            },
        ]
    }
