"""
INFOLOOP v1.0: Symbol Registry
Static tables: the 30-symbol alphabet, its Greek glyphs, and the
partition of the 27 channel-eligible symbols into NC1/NC2/NC3.
Symbol records are plain dicts built here.
"""

import random
import uuid

from core import (
    CHANNELS,
    KIND_DATA,
    KIND_ENTROPY,
    NO_CHANNEL,
    StopRule,
    UnknownSymbol,
    now_iso,
)

# ============================================
# REGISTRY TABLES
# ============================================
LATIN = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
OPERATORS = ["/", "+", "&"]
EMPTY_SET = "∅"
ALPHABET = list(LATIN) + OPERATORS + [EMPTY_SET]

GREEK_MAP = {
    "A": "α",
    "B": "β",
    "C": "χ",
    "D": "δ",
    "E": "ε",
    "F": "φ",
    "G": "γ",
    "H": "η",
    "I": "ι",
    "J": "ξ",
    "K": "κ",
    "L": "λ",
    "M": "μ",
    "N": "ν",
    "O": "ο",
    "P": "π",
    "Q": "ψ",
    "R": "ρ",
    "S": "σ",
    "T": "τ",
    "U": "υ",
    "V": "ϑ",
    "W": "ω",
    "X": "χ",
    "Y": "ψ",
    "Z": "ζ",
    "/": "ς",
    "+": "Σ",
    "&": "Ω",
    EMPTY_SET: "θ",
}

CHANNEL_TABLE = {
    "NC1": frozenset("ADGJMPSVY"),
    "NC2": frozenset("BEHKNQTWZ"),
    "NC3": frozenset(list("CFILORUX") + [EMPTY_SET]),
}

CHANNEL_SIZE = 9

_CHANNEL_INDEX = {
    symbol: channel for channel, symbols in CHANNEL_TABLE.items() for symbol in symbols
}

# Record units
UNIT_SYMBOL = "symbol"
UNIT_AGGREGATE = "aggregate"
RECORD_TYPES = [KIND_DATA, KIND_ENTROPY, UNIT_AGGREGATE]


# ============================================
# LOOKUPS
# ============================================
def require_known(value: str) -> str:
    """Raise UnknownSymbol for anything outside the alphabet."""
    if value not in GREEK_MAP:
        raise UnknownSymbol(f"No mapping for symbol {value!r}", {"value": value})
    return value


def channel_of(value: str) -> str:
    """NC1/NC2/NC3 for eligible symbols, 'none' for operators."""
    require_known(value)
    return _CHANNEL_INDEX.get(value, NO_CHANNEL)


def greek_of(value: str) -> str:
    require_known(value)
    return GREEK_MAP[value]


def is_eligible(value: str) -> bool:
    return value in _CHANNEL_INDEX


def validate_channel_table(table: dict | None = None) -> dict:
    """Check the partition: 3 disjoint sets of 9 covering every eligible symbol.

    Returns:
        Summary dict with channel sizes

    Raises:
        StopRule: If the table is not a partition of the eligible symbols
    """
    if table is None:
        table = CHANNEL_TABLE

    eligible = set(ALPHABET) - set(OPERATORS)

    if sorted(table) != sorted(CHANNELS):
        raise StopRule(
            "channel_table",
            f"Channels must be {CHANNELS}, got {sorted(table)}",
            {"channels": sorted(table)},
        )

    seen = set()
    for channel, symbols in table.items():
        if len(symbols) != CHANNEL_SIZE:
            raise StopRule(
                "channel_table",
                f"{channel} holds {len(symbols)} symbols, expected {CHANNEL_SIZE}",
                {"channel": channel},
            )
        overlap = seen & set(symbols)
        if overlap:
            raise StopRule(
                "channel_table",
                f"Symbols assigned twice: {sorted(overlap)}",
                {"channel": channel, "overlap": sorted(overlap)},
            )
        seen |= set(symbols)

    if seen != eligible:
        missing = sorted(eligible - seen)
        extra = sorted(seen - eligible)
        raise StopRule(
            "channel_table",
            f"Partition mismatch, missing={missing} extra={extra}",
            {"missing": missing, "extra": extra},
        )

    return {
        "channels": {channel: len(symbols) for channel, symbols in table.items()},
        "eligible": len(seen),
        "operators": list(OPERATORS),
    }


# ============================================
# RECORDS
# ============================================
def make_symbol(value: str, kind: str = KIND_DATA) -> dict:
    """Build a fresh symbol record.

    The channel is fixed here and carried unchanged through every later stage.
    """
    require_known(value)
    return {
        "id": uuid.uuid4().hex,
        "value": value,
        "glyph": GREEK_MAP[value] if kind == KIND_ENTROPY else value,
        "kind": kind,
        "channel": channel_of(value),
        "unit": UNIT_SYMBOL,
        "size": 1,
        "created_at": now_iso(),
    }


def random_symbol(rng: random.Random, kind: str = KIND_DATA) -> dict:
    return make_symbol(rng.choice(ALPHABET), kind)


def make_aggregate(value: str, parts: list[dict]) -> dict:
    """Collapse identical DataTokens into one aggregate unit."""
    require_known(value)
    return {
        "id": uuid.uuid4().hex,
        "value": value,
        "glyph": value,
        "kind": KIND_DATA,
        "channel": channel_of(value),
        "unit": UNIT_AGGREGATE,
        "size": len(parts),
        "parts": [p["id"] for p in parts],
        "created_at": now_iso(),
    }


def to_entropy(record: dict) -> dict:
    """EntropyToken form of a record: Greek glyph, single symbol unit."""
    converted = {
        **record,
        "kind": KIND_ENTROPY,
        "glyph": greek_of(record["value"]),
        "unit": UNIT_SYMBOL,
        "size": 1,
    }
    converted.pop("parts", None)
    return converted


def to_raw(record: dict) -> dict:
    """Back to DataToken-eligible raw form (Latin glyph)."""
    raw = {
        **record,
        "kind": KIND_DATA,
        "glyph": record["value"],
        "unit": UNIT_SYMBOL,
        "size": 1,
    }
    raw.pop("parts", None)
    return raw


def record_type(record: dict) -> str:
    """Ledger type: 'aggregate' for aggregate units, else the kind."""
    if record.get("unit") == UNIT_AGGREGATE:
        return UNIT_AGGREGATE
    return record["kind"]
