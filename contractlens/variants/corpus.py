"""Read-only corpus cache used by variant propagation and diffing.

The cache is filled while files are parsed and then frozen; after
``freeze()`` it only serves reads, so propagation can look up any file
without locking.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Iterator

from contractlens.classifier.guards import GuardDetector, GuardIndex
from contractlens.loader.ast import SourceFile, SyntaxTree


@dataclass(frozen=True)
class CorpusEntry:
    source: SourceFile
    tree: SyntaxTree
    guards: GuardIndex

    @property
    def path(self) -> str:
        return self.source.path


class CorpusCache:
    """Build-then-freeze mapping of file path -> parsed entry."""

    def __init__(self) -> None:
        self._entries: dict[str, CorpusEntry] = {}
        self._frozen = False

    @classmethod
    def from_trees(
        cls, trees: Iterable[SyntaxTree], detector: GuardDetector | None = None,
    ) -> "CorpusCache":
        detector = detector or GuardDetector()
        cache = cls()
        for tree in trees:
            cache.add(CorpusEntry(tree.source, tree, detector.index(tree)))
        return cache.freeze()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add(self, entry: CorpusEntry) -> None:
        if self._frozen:
            raise RuntimeError("corpus cache is frozen; no entries can be added")
        if entry.path in self._entries:
            raise ValueError(f"duplicate corpus entry for {entry.path}")
        self._entries[entry.path] = entry

    def freeze(self) -> "CorpusCache":
        if not self._frozen:
            self._entries = MappingProxyType(dict(sorted(self._entries.items())))
            self._frozen = True
        return self

    def get(self, path: str) -> CorpusEntry | None:
        return self._entries.get(path)

    def paths(self) -> list[str]:
        return sorted(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[CorpusEntry]:
        for path in sorted(self._entries):
            yield self._entries[path]

    def __len__(self) -> int:
        return len(self._entries)
