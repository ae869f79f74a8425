"""Variant propagation over a frozen corpus of parsed files."""

from contractlens.variants.corpus import CorpusCache, CorpusEntry
from contractlens.variants.propagator import (
    VariantMember,
    VariantPropagator,
    VariantSet,
    fingerprint,
    generalize,
    propagate,
)

__all__ = [
    "CorpusCache",
    "CorpusEntry",
    "VariantMember",
    "VariantPropagator",
    "VariantSet",
    "fingerprint",
    "generalize",
    "propagate",
]
