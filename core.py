"""
INFOLOOP v1.0: Core Module
Error taxonomy, dual hashing, receipt emission, parameter validation.
Every other module imports its failures and its ledger writes from here.
"""

import hashlib
import json
import math
import os
from datetime import datetime, timezone
from pathlib import Path

try:
    import blake3

    HAS_BLAKE3 = True
except ImportError:
    HAS_BLAKE3 = False


# ============================================
# PARAMETER RANGES
# ============================================
RATE_MIN = 0.0
RATE_MAX = 1000.0  # symbols/second
PERCENT_MIN = 0.0
PERCENT_MAX = 100.0
THRESHOLD_MIN = 0

# Channel identifiers (routing partitions)
CHANNELS = ["NC1", "NC2", "NC3"]
NO_CHANNEL = "none"

# Record classifications
KIND_DATA = "data"
KIND_ENTROPY = "entropy"
KINDS = [KIND_DATA, KIND_ENTROPY]

# Receipt types persisted to the ledger
RECEIPT_TYPES = [
    "config_ingest",
    "stage_start",
    "stage_stop",
    "stage_rate_change",
    "invalid_parameter",
    "capacity_full",
    "capacity_warning",
    "capacity_revalidated",
    "threshold_set",
    "threshold_cleared",
    "store_failure",
    "rollback_failed",
    "unknown_symbol",
    "unroutable_symbol",
    "aggregate_emitted",
    "tick_error",
    "observer_error",
    "pipeline_reset",
    "pipeline_snapshot",
]

# Observer-only events, too frequent for the ledger
OBSERVER_EVENTS = ["stage_tick", "channel_delta", "data_added", "data_removed"]


# ============================================
# STOPRULE TAXONOMY
# ============================================
class StopRule(Exception):
    """Base failure: carries the rule that stopped the operation."""

    def __init__(self, rule_name: str, message: str, context: dict | None = None):
        self.rule_name = rule_name
        self.context = context or {}
        super().__init__(f"STOPRULE[{rule_name}]: {message}")


class InvalidParameter(StopRule):
    """Out-of-range rate, probability, percentage or threshold."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__("invalid_parameter", message, context)


class CapacityExceeded(StopRule):
    """Admission refused by the capacity ledger."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__("capacity_exceeded", message, context)


class UnknownSymbol(StopRule):
    """Value with no channel or Greek mapping."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__("unknown_symbol", message, context)


class StoreFailure(StopRule):
    """Transient persistence error."""

    def __init__(self, message: str, context: dict | None = None):
        super().__init__("store_failure", message, context)


# ============================================
# HASHING + RECEIPTS
# ============================================
def dual_hash(data: bytes | str) -> str:
    """Compute SHA256:BLAKE3 hash."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    sha256_hex = hashlib.sha256(data).hexdigest()
    blake3_hex = (
        blake3.blake3(data).hexdigest()
        if HAS_BLAKE3
        else hashlib.sha256(b"blake3:" + data).hexdigest()
    )
    return f"{sha256_hex}:{blake3_hex}"


# Receipt storage path - use function for lazy evaluation (test compatibility)
def _get_receipts_path() -> Path:
    return Path(
        os.environ.get(
            "INFOLOOP_RECEIPTS", Path.home() / "infoloop" / "receipts.jsonl"
        )
    )


def now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def emit_receipt(receipt_type: str, data: dict) -> dict:
    """Emit a receipt to the receipts ledger.

    SCHEMA: {type, ts, hash, **data}
    STOPRULE: receipt_emission on write failure

    Args:
        receipt_type: Type identifier for the receipt
        data: Receipt payload data

    Returns:
        Complete receipt dict with hash and timestamp
    """
    receipt = {
        "type": receipt_type,
        "ts": now_iso(),
        **data,
    }
    receipt["hash"] = dual_hash(
        json.dumps(
            {k: v for k, v in receipt.items() if k != "hash"},
            sort_keys=True,
            default=str,
        )
    )

    try:
        receipts_path = _get_receipts_path()
        receipts_path.parent.mkdir(parents=True, exist_ok=True)
        with open(receipts_path, "a") as f:
            f.write(json.dumps(receipt, default=str) + "\n")
    except Exception as e:
        raise StopRule(
            "receipt_emission",
            f"Failed to emit receipt: {e}",
            {"receipt_type": receipt_type},
        )

    return receipt


def load_receipts(receipt_type: str | None = None) -> list[dict]:
    """Read the receipts ledger back, optionally filtered by type."""
    receipts_path = _get_receipts_path()
    receipts = []
    if not receipts_path.exists():
        return receipts
    with open(receipts_path, "r") as f:
        for line in f:
            if not line.strip():
                continue
            try:
                receipt = json.loads(line)
            except json.JSONDecodeError:
                continue
            if receipt_type is None or receipt.get("type") == receipt_type:
                receipts.append(receipt)
    return receipts


# ============================================
# VALIDATION
# ============================================
def reject_parameter(name: str, value, reason: str) -> InvalidParameter:
    """Record an invalid_parameter receipt and build the exception to raise."""
    emit_receipt(
        "invalid_parameter",
        {"parameter": name, "value": repr(value), "reason": reason},
    )
    return InvalidParameter(
        f"{name}={value!r} rejected: {reason}", {"parameter": name, "value": value}
    )


def _require_number(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise reject_parameter(name, value, "not a number")
    if math.isnan(value) or math.isinf(value):
        raise reject_parameter(name, value, "not finite")
    return float(value)


def validate_rate(name: str, value) -> float:
    """Rate in symbols/second, 0..RATE_MAX."""
    value = _require_number(name, value)
    if not RATE_MIN <= value <= RATE_MAX:
        raise reject_parameter(name, value, f"outside [{RATE_MIN}, {RATE_MAX}]")
    return value


def validate_percent(name: str, value) -> float:
    value = _require_number(name, value)
    if not PERCENT_MIN <= value <= PERCENT_MAX:
        raise reject_parameter(
            name, value, f"outside [{PERCENT_MIN}, {PERCENT_MAX}]"
        )
    return value


def validate_probability(name: str, value) -> float:
    value = _require_number(name, value)
    if not 0.0 <= value <= 1.0:
        raise reject_parameter(name, value, "outside [0, 1]")
    return value


def validate_percent_pair(name: str, first, second) -> tuple[float, float]:
    """Two percentages that must sum to 100."""
    first = validate_percent(f"{name}[0]", first)
    second = validate_percent(f"{name}[1]", second)
    if not math.isclose(first + second, PERCENT_MAX, abs_tol=1e-9):
        raise reject_parameter(name, (first, second), "pair must sum to 100")
    return first, second


def validate_threshold(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise reject_parameter(name, value, "not an integer")
    if value < THRESHOLD_MIN:
        raise reject_parameter(name, value, f"below {THRESHOLD_MIN}")
    return value


def percent_to_probability(percent: float) -> float:
    return percent / PERCENT_MAX
