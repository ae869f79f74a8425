"""Finding classification: vulnerability taxonomy, guard detection and severity modifiers."""

from contractlens.classifier.classifier import FindingClassifier, classify
from contractlens.classifier.guards import GuardDetector, GuardIndex, GuardSite
from contractlens.classifier.taxonomy import TAXONOMY, VulnerabilityClass, lookup_class

__all__ = [
    "TAXONOMY",
    "FindingClassifier",
    "GuardDetector",
    "GuardIndex",
    "GuardSite",
    "VulnerabilityClass",
    "classify",
    "lookup_class",
]
