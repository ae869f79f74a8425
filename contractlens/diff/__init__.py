"""Upgrade-safety diffing of two parsed snapshots."""

from contractlens.diff.analyzer import (
    DiffChangeSet,
    Entity,
    NodeRef,
    diff,
    diff_snapshots,
    extract_entities,
)

__all__ = ["DiffChangeSet", "Entity", "NodeRef", "diff", "diff_snapshots", "extract_entities"]
