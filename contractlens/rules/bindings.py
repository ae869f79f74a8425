"""Persistent binding environment for the backtracking matcher.

A ``Bindings`` value is never mutated: ``extend`` returns a new environment
that shares its tail with the old one, so abandoning a search branch needs
no undo step.
"""

from __future__ import annotations

from typing import Iterator


class Bindings:
    """Immutable mapping of metavariable name -> source node index."""

    __slots__ = ("_name", "_value", "_parent", "_size")

    def __init__(
        self,
        name: str | None = None,
        value: int = -1,
        parent: "Bindings | None" = None,
    ) -> None:
        self._name = name
        self._value = value
        self._parent = parent
        self._size = 0 if name is None else (parent._size if parent else 0) + 1

    def extend(self, name: str, value: int) -> "Bindings":
        return Bindings(name, value, self)

    def get(self, name: str) -> int | None:
        env: Bindings | None = self
        while env is not None and env._name is not None:
            if env._name == name:
                return env._value
            env = env._parent
        return None

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return self._size

    def items(self) -> Iterator[tuple[str, int]]:
        """Bindings in the order they were made."""
        chain: list[tuple[str, int]] = []
        env: Bindings | None = self
        while env is not None and env._name is not None:
            chain.append((env._name, env._value))
            env = env._parent
        return reversed(chain)

    def as_dict(self) -> dict[str, int]:
        return dict(self.items())

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v}" for k, v in self.items())
        return f"Bindings({inner})"


EMPTY = Bindings()
