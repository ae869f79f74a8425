"""contractlens: pattern-based static analysis and variant propagation for smart contracts."""

__version__ = "0.1.0"
