"""
INFOLOOP v1.0: Configuration Module
Defaults for every tunable, JSON config loading with validation, and
pushing a config into a live pipeline through the validated setters.
"""

import copy
import json
import os
from pathlib import Path

from aggregator import DEFAULT_AGGREGATION_THRESHOLD
from capacity import DEFAULT_CHANNEL_LENGTH, DEFAULT_UNITS_PER_LENGTH
from conversion import DEFAULT_FILTER_PERCENT
from core import (
    CHANNELS,
    StopRule,
    dual_hash,
    emit_receipt,
    reject_parameter,
    validate_percent,
    validate_rate,
    validate_threshold,
)
from stages import (
    DEFAULT_DATA_PERCENT,
    DEFAULT_LOSS_PERCENT,
    DEFAULT_NOISE_PERCENT,
    DEFAULT_RATE,
    validate_distribution,
)

# ============================================
# DEFAULTS
# ============================================
DEFAULTS = {
    "seed": None,
    "aggregation_threshold": DEFAULT_AGGREGATION_THRESHOLD,
    "capacity": {
        "units_per_length": DEFAULT_UNITS_PER_LENGTH,
        "channel_lengths": {channel: DEFAULT_CHANNEL_LENGTH for channel in CHANNELS},
        "threshold": None,
    },
    "store": {"max_records": None},
    "generator": {
        "rate": DEFAULT_RATE,
        "loss_percent": DEFAULT_LOSS_PERCENT,
        "noise_percent": DEFAULT_NOISE_PERCENT,
    },
    "uptake": {
        "rate": DEFAULT_RATE,
        "loss_percent": DEFAULT_LOSS_PERCENT,
        "data_percent": DEFAULT_DATA_PERCENT,
    },
    "pool": {
        "rate": DEFAULT_RATE,
        "loss_percent": DEFAULT_LOSS_PERCENT,
        "data_percent": DEFAULT_DATA_PERCENT,
    },
    "converter": {
        "rate": DEFAULT_RATE,
        "loss_percent": DEFAULT_LOSS_PERCENT,
        "filter_percent": DEFAULT_FILTER_PERCENT,
    },
    "channel_intake": {
        "rate": DEFAULT_RATE,
        "data_percent": DEFAULT_DATA_PERCENT,
    },
    "channel_update": {
        channel: {"rate": DEFAULT_RATE, "loss_percent": DEFAULT_LOSS_PERCENT}
        for channel in CHANNELS
    },
    "recycler": {"rate": DEFAULT_RATE},
}

# Stage sections and the keys each accepts
STAGE_KEYS = {
    "generator": {"rate", "loss_percent", "noise_percent"},
    "uptake": {"rate", "loss_percent", "data_percent", "entropy_percent"},
    "pool": {"rate", "loss_percent", "data_percent", "entropy_percent"},
    "converter": {"rate", "loss_percent", "filter_percent"},
    "channel_intake": {"rate", "data_percent", "entropy_percent"},
    "recycler": {"rate"},
}


def _get_config_path() -> Path:
    """INFOLOOP_CONFIG, else data/pipeline_config.json under INFOLOOP_BASE."""
    explicit = os.environ.get("INFOLOOP_CONFIG")
    if explicit:
        return Path(explicit)
    base = Path(os.environ.get("INFOLOOP_BASE", Path(__file__).parent))
    return base / "data" / "pipeline_config.json"


def default_config() -> dict:
    return copy.deepcopy(DEFAULTS)


def merge_config(base: dict, overrides: dict) -> dict:
    """Deep-merge overrides onto a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ============================================
# VALIDATION
# ============================================
def _check_keys(section: str, data, allowed: set) -> None:
    if not isinstance(data, dict):
        raise reject_parameter(section, data, "section must be an object")
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise reject_parameter(section, unknown, f"unknown keys, allowed {sorted(allowed)}")


def _validate_positive(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise reject_parameter(name, value, "must be a positive number")
    return float(value)


def _validate_stage(section: str, data: dict) -> None:
    _check_keys(section, data, STAGE_KEYS.get(section, {"rate", "loss_percent"}))
    validate_rate(f"{section}.rate", data["rate"])
    for key in ("loss_percent", "noise_percent", "filter_percent"):
        if key in data:
            validate_percent(f"{section}.{key}", data[key])
    if "data_percent" in data:
        validate_distribution(section, data["data_percent"], data.get("entropy_percent"))


def validate_config(config: dict) -> dict:
    """Validate a full (merged) config. Returns it unchanged.

    Raises:
        InvalidParameter: On the first out-of-range or unknown field
    """
    _check_keys("config", config, set(DEFAULTS))

    seed = config["seed"]
    if seed is not None and (isinstance(seed, bool) or not isinstance(seed, int)):
        raise reject_parameter("seed", seed, "must be an integer or null")

    validate_threshold("aggregation_threshold", config["aggregation_threshold"])

    capacity = config["capacity"]
    _check_keys("capacity", capacity, set(DEFAULTS["capacity"]))
    _validate_positive("capacity.units_per_length", capacity["units_per_length"])
    _check_keys("capacity.channel_lengths", capacity["channel_lengths"], set(CHANNELS))
    for channel, length in capacity["channel_lengths"].items():
        _validate_positive(f"capacity.channel_lengths.{channel}", length)
    threshold = capacity["threshold"]
    if threshold is not None:
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)) or threshold < 0:
            raise reject_parameter("capacity.threshold", threshold, "must be >= 0 or null")

    store = config["store"]
    _check_keys("store", store, set(DEFAULTS["store"]))
    max_records = store["max_records"]
    if max_records is not None:
        if isinstance(max_records, bool) or not isinstance(max_records, int) or max_records < 1:
            raise reject_parameter("store.max_records", max_records, "must be >= 1 or null")

    for section in STAGE_KEYS:
        _validate_stage(section, config[section])

    updates = config["channel_update"]
    _check_keys("channel_update", updates, set(CHANNELS))
    for channel in CHANNELS:
        _validate_stage(f"channel_update.{channel}", updates[channel])

    return config


# ============================================
# LOAD + APPLY
# ============================================
def load_pipeline_config(path: str | None = None) -> dict:
    """Load, merge onto defaults, and validate a pipeline config file.

    Args:
        path: JSON file (default: INFOLOOP_CONFIG or data/pipeline_config.json)

    Returns:
        Validated config dict

    Raises:
        StopRule: config_not_found / config_malformed
        InvalidParameter: Any field out of range
    """
    if path is None:
        path = str(_get_config_path())

    config_path = Path(path)
    if not config_path.exists():
        raise StopRule(
            "config_not_found", f"Pipeline config not found: {path}", {"path": path}
        )

    try:
        with open(config_path) as f:
            raw = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        raise StopRule(
            "config_malformed", f"Failed to parse config: {e}", {"path": path}
        )

    if not isinstance(raw, dict):
        raise StopRule(
            "config_malformed", "Config root must be an object", {"path": path}
        )

    config = validate_config(merge_config(DEFAULTS, raw))

    emit_receipt(
        "config_ingest",
        {
            "config_hash": dual_hash(json.dumps(config, sort_keys=True)),
            "path": str(config_path),
            "aggregation_threshold": config["aggregation_threshold"],
            "seed": config["seed"],
        },
    )
    return config


def apply_config(pipeline, overrides: dict) -> dict:
    """Push tunables into a pipeline. Nothing is applied unless all of it validates.

    Seed and store bounds only take effect when a pipeline is built.
    """
    config = validate_config(merge_config(pipeline.config, overrides))
    threshold = config["capacity"]["threshold"]
    if threshold is not None and threshold < pipeline.capacity.used():
        raise reject_parameter(
            "capacity.threshold", threshold, f"below current usage {pipeline.capacity.used()}"
        )

    for section in ("generator", "uptake", "pool", "converter", "channel_intake", "recycler"):
        _apply_stage(pipeline.stage(section), config[section])
    for channel in CHANNELS:
        _apply_stage(
            pipeline.stage(f"update_{channel.lower()}"), config["channel_update"][channel]
        )

    pipeline.stage("converter").set_threshold(config["aggregation_threshold"])

    capacity = config["capacity"]
    if hasattr(pipeline.oracle, "units_per_length"):
        pipeline.oracle.units_per_length = capacity["units_per_length"]
    if capacity["threshold"] is None:
        if pipeline.capacity.threshold is not None:
            pipeline.capacity.clear_threshold()
    elif capacity["threshold"] != pipeline.capacity.threshold:
        pipeline.capacity.set_threshold(capacity["threshold"])

    pipeline.config = config
    return config


def _apply_stage(stage, settings: dict) -> None:
    if "loss_percent" in settings:
        stage.set_loss(settings["loss_percent"])
    if "noise_percent" in settings:
        stage.set_noise(settings["noise_percent"])
    if "filter_percent" in settings:
        stage.set_filter(settings["filter_percent"])
    if "data_percent" in settings:
        stage.set_distribution(settings["data_percent"], settings.get("entropy_percent"))
    if settings["rate"] != stage.rate:
        stage.set_rate(settings["rate"])
