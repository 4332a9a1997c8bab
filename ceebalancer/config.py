"""
Configuration module for ceebalancer

Contains the Config dataclass built from plugin options at startup, the
immutable PolicyParameters value consumed by the policy calculators, and the
ParameterStore that holds the active PolicyParameters and swaps it atomically
on runtime reconfiguration.

Every rebalance run reads the active parameters exactly once, at run start:

    def run(self):
        params = self.parameters.get()   # Immutable for this run
        # All logic uses params, never the store directly
"""

import threading
from dataclasses import dataclass, asdict, replace
from typing import Dict, Any, FrozenSet, List, Tuple, TYPE_CHECKING

from .errors import ParameterError

if TYPE_CHECKING:
    from .database import Database


# Drained-proportion thresholds for the fee curve. Fixed, not configurable.
BALANCE_THRESHOLD_LOW = 0.2
BALANCE_THRESHOLD_HIGH = 0.8

# Keys that cannot be changed at runtime
IMMUTABLE_CONFIG_KEYS: FrozenSet[str] = frozenset({
    'db_path',
    'dry_run',  # Safety: don't allow toggling dry_run to hide actions
    'balance_threshold_low',
    'balance_threshold_high',
})

# Type mapping for runtime-mutable fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'dynamic_fees': bool,
    'fee_min': int,
    'fee_max': int,
    'update_interval': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'fee_min': (0, 100000),
    'fee_max': (0, 100000),
    'update_interval': (1, 7 * 86400),
}


def _convert(key: str, value: str) -> Any:
    """Convert an option/override string to the field's type."""
    field_type = CONFIG_FIELD_TYPES.get(key, str)
    if field_type == bool:
        return value.lower() in ('true', '1', 'yes', 'on')
    if field_type == int:
        return int(value)
    if field_type == float:
        return float(value)
    return value


@dataclass(frozen=True)
class PolicyParameters:
    """
    Immutable policy configuration consumed by the fee curve and scheduler.

    Attributes:
        fee_min: Lowest fee rate in PPM (charged to balance-healthy channels)
        fee_max: Highest fee rate in PPM (charged to drained channels)
        update_interval: Seconds between timer-driven runs
        balance_threshold_low: Drained proportion at or below which fee_min applies
        balance_threshold_high: Drained proportion at or above which fee_max applies
        dynamic_fees: Whether the timer loop is enabled
        dry_run: Compute decisions but never call setchannel
        version: Bumped on every persisted runtime update
    """
    fee_min: int
    fee_max: int
    update_interval: int
    balance_threshold_low: float = BALANCE_THRESHOLD_LOW
    balance_threshold_high: float = BALANCE_THRESHOLD_HIGH
    dynamic_fees: bool = False
    dry_run: bool = False
    version: int = 0

    def __post_init__(self):
        if self.fee_min < 0:
            raise ParameterError(f"fee_min must be non-negative, got {self.fee_min}")
        if self.fee_min > self.fee_max:
            raise ParameterError(
                f"fee_min ({self.fee_min}) must not exceed fee_max ({self.fee_max})"
            )
        if not (0.0 <= self.balance_threshold_low < self.balance_threshold_high <= 1.0):
            raise ParameterError(
                f"Balance thresholds must satisfy 0 <= low < high <= 1, got "
                f"low={self.balance_threshold_low}, high={self.balance_threshold_high}"
            )
        if self.update_interval <= 0:
            raise ParameterError(
                f"update_interval must be positive, got {self.update_interval}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Config:
    """
    Configuration container for the ceebalancer plugin.

    All values can be set via plugin options at startup.
    """

    # Database path
    db_path: str = '~/.lightning/ceebalancer.db'

    # Dynamic fee parameters
    dynamic_fees: bool = False     # Master switch for the timer loop
    fee_min: int = 0               # Floor fee in PPM
    fee_max: int = 1000            # Ceiling fee in PPM
    update_interval: int = 3600    # 1 hour

    # Safety flags
    dry_run: bool = False          # If True, log but don't execute

    def snapshot(self, version: int = 0) -> PolicyParameters:
        """
        Create the immutable PolicyParameters for this configuration.

        Raises:
            ParameterError: if the options violate the parameter invariants
        """
        return PolicyParameters(
            fee_min=self.fee_min,
            fee_max=self.fee_max,
            update_interval=self.update_interval,
            dynamic_fees=self.dynamic_fees,
            dry_run=self.dry_run,
            version=version,
        )


class ParameterStore:
    """
    Holds the active PolicyParameters and replaces it atomically.

    Readers call get() and keep the returned object for the duration of their
    work. Writers build a complete new PolicyParameters and swap it in with
    replace(); fields are never assigned one at a time.
    """

    def __init__(self, initial: PolicyParameters):
        self._lock = threading.Lock()
        self._params = initial
        self._defaults = initial

    def get(self) -> PolicyParameters:
        with self._lock:
            return self._params

    def replace(self, params: PolicyParameters) -> PolicyParameters:
        """Swap in a new parameter set, returning the previous one."""
        if not isinstance(params, PolicyParameters):
            raise ParameterError(f"Expected PolicyParameters, got {type(params).__name__}")
        with self._lock:
            old = self._params
            self._params = params
        return old

    @property
    def defaults(self) -> PolicyParameters:
        return self._defaults

    def load_overrides(self, database: 'Database') -> Tuple[List[str], Dict[str, str]]:
        """
        Apply persisted overrides on startup.

        An override that fails type conversion is rejected on its own. If the
        combined result violates the parameter invariants, every override is
        rejected and the startup parameters stay active. Rejected rows are
        left in the database.

        Returns:
            (names of applied overrides, {rejected key: reason})
        """
        overrides = database.get_all_config_overrides()
        changes: Dict[str, Any] = {}
        rejected: Dict[str, str] = {}
        for key, value in overrides.items():
            if key in IMMUTABLE_CONFIG_KEYS:
                rejected[key] = "not changeable at runtime"
                continue
            if key not in CONFIG_FIELD_TYPES:
                rejected[key] = "unknown config key"
                continue
            try:
                changes[key] = _convert(key, value)
            except (ValueError, TypeError) as e:
                rejected[key] = f"invalid value {value!r}: {e}"

        try:
            candidate = replace(self.get(), version=database.get_config_version(), **changes)
        except ParameterError as e:
            for key in changes:
                rejected[key] = f"conflicting overrides: {e}"
            return [], rejected

        self.replace(candidate)
        return sorted(changes), rejected

    def update_runtime(self, database: 'Database', key: str, value: str) -> Dict[str, Any]:
        """
        Transactional runtime update: Validate → Write DB → Read-Back → Swap.

        Returns:
            Dict with status, old_value, new_value, version (or error)
        """
        # 1. VALIDATE: Check if key exists and is mutable
        if key in IMMUTABLE_CONFIG_KEYS:
            return {"error": f"Key '{key}' cannot be changed at runtime"}

        if key not in CONFIG_FIELD_TYPES:
            return {"error": f"Unknown config key: {key}"}

        # 2. VALIDATE: Type check
        field_type = CONFIG_FIELD_TYPES[key]
        try:
            typed_value = _convert(key, value)
        except (ValueError, TypeError) as e:
            return {"error": f"Invalid value for {key} (expected {field_type.__name__}): {e}"}

        # 3. VALIDATE: Range check
        if key in CONFIG_FIELD_RANGES:
            min_val, max_val = CONFIG_FIELD_RANGES[key]
            if not (min_val <= typed_value <= max_val):
                return {"error": f"Value {typed_value} out of range [{min_val}, {max_val}] for {key}"}

        # 4. VALIDATE: Cross-field invariants on the candidate set
        current = self.get()
        try:
            candidate = replace(current, **{key: typed_value})
        except ParameterError as e:
            return {"error": str(e)}

        # 5. WRITE to database
        new_version = database.set_config_override(key, value)

        # 6. READ-BACK verification
        read_back = database.get_config_override(key)
        if read_back != value:
            return {"error": "Database write verification failed"}

        # 7. SWAP in-memory
        self.replace(replace(candidate, version=new_version))

        return {
            "status": "success",
            "key": key,
            "old_value": getattr(current, key),
            "new_value": typed_value,
            "version": new_version
        }

    def reset_runtime(self, database: 'Database', key: str) -> Dict[str, Any]:
        """Drop a persisted override and restore the startup value."""
        if key not in CONFIG_FIELD_TYPES:
            return {"error": f"Unknown config key: {key}"}

        if database.get_config_override(key) is None:
            return {"error": f"No override found for '{key}'"}

        # Validate before touching the database
        current = self.get()
        default_value = getattr(self._defaults, key)
        try:
            candidate = replace(current, **{key: default_value})
        except ParameterError as e:
            return {"error": f"Cannot reset {key}: default conflicts with active config: {e}"}

        if not database.delete_config_override(key):
            return {"error": f"No override found for '{key}'"}

        self.replace(replace(candidate, version=database.get_config_version()))

        return {
            "status": "success",
            "key": key,
            "old_value": getattr(current, key),
            "new_value": default_value,
            "version": self.get().version,
        }
