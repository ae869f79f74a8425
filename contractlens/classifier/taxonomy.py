"""Vulnerability taxonomy: rule category -> class with severity bounds."""

from __future__ import annotations

from dataclasses import dataclass

from contractlens.core.types import Severity


# Applied in this order by the classifier.
MODIFIERS: tuple[str, ...] = ("inside-guard", "test-code", "payable-context")


@dataclass(frozen=True)
class VulnerabilityClass:
    name: str
    base_severity: Severity
    floor: Severity
    ceiling: Severity
    description: str = ""
    modifiers: tuple[str, ...] = MODIFIERS

    def clamp(self, severity: Severity) -> Severity:
        rank = max(self.floor.rank, min(severity.rank, self.ceiling.rank))
        return Severity.from_rank(rank)


TAXONOMY: dict[str, VulnerabilityClass] = {
    cls.name: cls
    for cls in (
        VulnerabilityClass(
            "arithmetic",
            base_severity=Severity.MEDIUM,
            floor=Severity.LOW,
            ceiling=Severity.HIGH,
            description="Integer overflow / underflow in unchecked arithmetic",
        ),
        VulnerabilityClass(
            "payable-validation",
            base_severity=Severity.HIGH,
            floor=Severity.MEDIUM,
            ceiling=Severity.CRITICAL,
            description="Payable entry point that does not validate the attached deposit",
        ),
        VulnerabilityClass(
            "callback-handling",
            base_severity=Severity.HIGH,
            floor=Severity.MEDIUM,
            ceiling=Severity.CRITICAL,
            description="Cross-contract callback that ignores promise failure",
        ),
        VulnerabilityClass(
            "access-control",
            base_severity=Severity.HIGH,
            floor=Severity.MEDIUM,
            ceiling=Severity.CRITICAL,
            description="Privileged operation reachable without an ownership check",
        ),
        VulnerabilityClass(
            "storage-layout",
            base_severity=Severity.HIGH,
            floor=Severity.MEDIUM,
            ceiling=Severity.CRITICAL,
            description="Persisted state layout change that corrupts or orphans data",
        ),
    )
}


def lookup_class(category: str, default: Severity = Severity.MEDIUM) -> VulnerabilityClass:
    """Class for a rule category.

    Unknown categories get an unbounded class whose base is ``default``
    (the classifier passes the rule's declared severity).
    """
    known = TAXONOMY.get(category)
    if known is not None:
        return known
    return VulnerabilityClass(
        category,
        base_severity=default,
        floor=Severity.INFORMATIONAL,
        ceiling=Severity.CRITICAL,
    )
