"""
INFOLOOP v1.0: Loss/Classifier
One uniform draw decides whether a symbol stays a DataToken or
becomes an EntropyToken. Shared by every stage that loses data.
"""

import random

from core import KIND_DATA, KIND_ENTROPY, validate_probability
from symbols import greek_of, require_known, to_entropy


def classify(record: dict, probability: float, rng: random.Random | None = None) -> dict:
    """Classify one record against a loss probability.

    Draws one sample in [0, 1). sample < probability converts the symbol
    to an EntropyToken whose emitted value is its Greek glyph; otherwise it
    stays a DataToken with its original value.

    Args:
        record: Symbol record (only 'value' is read)
        probability: Loss probability in [0, 1]
        rng: Random source (default: module random)

    Returns:
        Dict with kind, emitted_value and the drawn sample

    Raises:
        InvalidParameter: probability outside [0, 1]; nothing is drawn
    """
    probability = validate_probability("loss_probability", probability)
    value = require_known(record["value"])
    sample = (rng or random).random()

    if sample < probability:
        return {"kind": KIND_ENTROPY, "emitted_value": greek_of(value), "sample": sample}
    return {"kind": KIND_DATA, "emitted_value": value, "sample": sample}


def apply_outcome(record: dict, outcome: dict) -> dict:
    """Return the record as classified. The input record is left untouched."""
    if outcome["kind"] == KIND_ENTROPY:
        return to_entropy(record)
    return dict(record)
