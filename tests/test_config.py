"""
Tests for PolicyParameters validation and the runtime ParameterStore.
"""

import pytest

from ceebalancer.config import (
    Config,
    ParameterStore,
    PolicyParameters,
    CONFIG_FIELD_TYPES,
    IMMUTABLE_CONFIG_KEYS,
)
from ceebalancer.errors import ParameterError


class TestPolicyParameters:
    """Test PolicyParameters invariants."""

    def test_valid_parameters(self):
        p = PolicyParameters(fee_min=0, fee_max=1000, update_interval=3600)
        assert p.balance_threshold_low == 0.2
        assert p.balance_threshold_high == 0.8
        assert p.version == 0

    def test_fee_min_above_fee_max_rejected(self):
        with pytest.raises(ParameterError):
            PolicyParameters(fee_min=600, fee_max=500, update_interval=60)

    def test_negative_fee_min_rejected(self):
        with pytest.raises(ParameterError):
            PolicyParameters(fee_min=-1, fee_max=500, update_interval=60)

    @pytest.mark.parametrize("low,high", [(0.8, 0.2), (0.5, 0.5), (-0.1, 0.8), (0.2, 1.1)])
    def test_bad_thresholds_rejected(self, low, high):
        with pytest.raises(ParameterError):
            PolicyParameters(fee_min=0, fee_max=500, update_interval=60,
                             balance_threshold_low=low, balance_threshold_high=high)

    def test_zero_interval_rejected(self):
        with pytest.raises(ParameterError):
            PolicyParameters(fee_min=0, fee_max=500, update_interval=0)

    def test_frozen(self, params):
        with pytest.raises(AttributeError):
            params.fee_max = 9000

    def test_to_dict(self, params):
        d = params.to_dict()
        assert d["fee_min"] == 10
        assert d["fee_max"] == 500
        assert d["dynamic_fees"] is False


class TestConfig:
    """Test Config defaults and snapshot."""

    def test_defaults_match_plugin_options(self):
        config = Config()
        assert config.dynamic_fees is False
        assert config.fee_min == 0
        assert config.fee_max == 1000
        assert config.update_interval == 3600

    def test_snapshot_carries_flags(self):
        snap = Config(dynamic_fees=True, dry_run=True).snapshot(version=3)
        assert snap.dynamic_fees is True
        assert snap.dry_run is True
        assert snap.version == 3

    def test_invalid_snapshot_raises(self):
        with pytest.raises(ParameterError):
            Config(fee_min=2000, fee_max=1000).snapshot()


class TestParameterStore:
    """Test atomic replacement and runtime updates."""

    def test_replace_returns_previous(self, parameter_store, params):
        new = PolicyParameters(fee_min=0, fee_max=2000, update_interval=60)
        old = parameter_store.replace(new)
        assert old is params
        assert parameter_store.get() is new

    def test_replace_rejects_non_parameters(self, parameter_store):
        with pytest.raises(ParameterError):
            parameter_store.replace({"fee_min": 0})

    def test_held_snapshot_unaffected_by_swap(self, parameter_store):
        """A reader keeps its snapshot even after a writer swaps a new one in."""
        held = parameter_store.get()
        parameter_store.replace(PolicyParameters(fee_min=0, fee_max=2000, update_interval=60))
        assert held.fee_max == 500

    def test_update_runtime_success(self, parameter_store, database):
        result = parameter_store.update_runtime(database, "fee_max", "800")

        assert result["status"] == "success"
        assert result["old_value"] == 500
        assert result["new_value"] == 800
        assert result["version"] == 1
        assert parameter_store.get().fee_max == 800
        assert parameter_store.get().version == 1
        assert database.get_config_override("fee_max") == "800"

    def test_update_runtime_bool(self, parameter_store, database):
        result = parameter_store.update_runtime(database, "dynamic_fees", "true")
        assert result["status"] == "success"
        assert parameter_store.get().dynamic_fees is True

    def test_immutable_key_rejected(self, parameter_store, database):
        result = parameter_store.update_runtime(database, "dry_run", "true")
        assert "error" in result
        assert parameter_store.get().dry_run is False

    def test_unknown_key_rejected(self, parameter_store, database):
        result = parameter_store.update_runtime(database, "nonsense", "1")
        assert "Unknown config key" in result["error"]

    def test_bad_type_rejected(self, parameter_store, database):
        result = parameter_store.update_runtime(database, "fee_min", "ten")
        assert "error" in result
        assert database.get_config_override("fee_min") is None

    def test_out_of_range_rejected(self, parameter_store, database):
        result = parameter_store.update_runtime(database, "update_interval", "0")
        assert "out of range" in result["error"]

    def test_cross_field_violation_not_persisted(self, parameter_store, database):
        """fee_min above the active fee_max is rejected before the DB write."""
        result = parameter_store.update_runtime(database, "fee_min", "600")

        assert "error" in result
        assert parameter_store.get().fee_min == 10
        assert database.get_config_override("fee_min") is None
        assert database.get_config_version() == 0

    def test_reset_runtime_restores_default(self, parameter_store, database):
        parameter_store.update_runtime(database, "fee_max", "800")

        result = parameter_store.reset_runtime(database, "fee_max")

        assert result["status"] == "success"
        assert result["new_value"] == 500
        assert parameter_store.get().fee_max == 500
        assert parameter_store.get().version == 2
        assert database.get_config_override("fee_max") is None

    def test_reset_without_override(self, parameter_store, database):
        result = parameter_store.reset_runtime(database, "fee_max")
        assert "No override" in result["error"]

    def test_load_overrides(self, params, database):
        database.set_config_override("fee_max", "900")
        database.set_config_override("dynamic_fees", "true")
        database.set_config_override("dry_run", "true")  # immutable, ignored

        store = ParameterStore(params)
        applied, rejected = store.load_overrides(database)

        assert applied == ["dynamic_fees", "fee_max"]
        assert list(rejected) == ["dry_run"]
        assert store.get().fee_max == 900
        assert store.get().dynamic_fees is True
        assert store.get().dry_run is False
        assert store.get().version == database.get_config_version()
        assert store.defaults is params

    def test_load_invalid_combination_rejected(self, params, database):
        database.set_config_override("fee_max", "5")  # below fee_min=10

        store = ParameterStore(params)
        applied, rejected = store.load_overrides(database)

        assert applied == []
        assert "fee_max" in rejected
        assert store.get() is params
        assert database.get_config_override("fee_max") == "5"

    def test_load_bad_value_rejected_alone(self, params, database):
        database.set_config_override("fee_max", "lots")
        database.set_config_override("update_interval", "120")

        store = ParameterStore(params)
        applied, rejected = store.load_overrides(database)

        assert applied == ["update_interval"]
        assert list(rejected) == ["fee_max"]
        assert store.get().update_interval == 120

    def test_reset_conflicting_with_other_override_keeps_state(self, database):
        """Resetting fee_max below a persisted fee_min leaves DB and memory untouched."""
        store = ParameterStore(PolicyParameters(fee_min=0, fee_max=1000, update_interval=60))
        store.update_runtime(database, "fee_max", "2000")
        store.update_runtime(database, "fee_min", "1500")
        version = database.get_config_version()

        result = store.reset_runtime(database, "fee_max")

        assert "error" in result
        assert database.get_all_config_overrides() == {"fee_max": "2000", "fee_min": "1500"}
        assert database.get_config_version() == version
        assert store.get().fee_max == 2000

        restarted = ParameterStore(PolicyParameters(fee_min=0, fee_max=1000, update_interval=60))
        applied, rejected = restarted.load_overrides(database)
        assert applied == ["fee_max", "fee_min"]
        assert rejected == {}
        assert restarted.get().fee_min == 1500
        assert restarted.get().fee_max == 2000

    def test_mutable_keys_disjoint_from_immutable(self):
        assert not set(CONFIG_FIELD_TYPES) & IMMUTABLE_CONFIG_KEYS
