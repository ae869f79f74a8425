"""Structural diff of two corpus snapshots for upgrade-safety regressions.

Entities are paired across versions by declared name:

    struct:<Name>                 field layout of a persisted struct
    enum:<Name>                   variant layout of an enum
    storage-key:<Struct>.<field>  collection prefix literal used when the
                                  struct is constructed
    fn:<Impl>::<name>             guards preceding state mutations or
                                  value transfers, and ``#[private]``

Each entity pair yields at most one change set, so a reordered struct is
never also reported as a rename or a removal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import BaseModel, Field

from contractlens.classifier.guards import GuardIndex
from contractlens.core.types import ChangeKind, Severity
from contractlens.loader.ast import SyntaxTree
from contractlens.variants.corpus import CorpusCache

logger = logging.getLogger(__name__)

_LAYOUT_KINDS = ("struct", "enum")
_MUTATING_METHODS = frozenset({
    "insert", "remove", "push", "pop", "set", "extend", "clear", "replace",
    "append", "truncate", "swap_remove", "retain",
})
_TRANSFER_METHODS = frozenset({"transfer", "function_call", "deploy_contract", "delete_account"})
_KEY_LITERALS = ("str_literal", "bytes_literal")

_CHANGE_SEVERITY = {
    ChangeKind.SAFE_APPEND: Severity.INFORMATIONAL,
    ChangeKind.REORDER: Severity.HIGH,
    ChangeKind.RENAME: Severity.HIGH,
    ChangeKind.REMOVAL: Severity.HIGH,
}


# ── Models ───────────────────────────────────────────────────────────────────


class NodeRef(BaseModel):
    file: str
    node_index: int
    kind: str
    line_start: int
    line_end: int


class DiffChangeSet(BaseModel):
    entity: str
    kind: ChangeKind
    severity: Severity
    before: NodeRef | None = None
    after: NodeRef | None = None
    details: list[str] = Field(default_factory=list)

    def sort_key(self) -> tuple:
        ref = self.after or self.before
        file = ref.file if ref else ""
        line = ref.line_start if ref else 0
        return (-self.severity.rank, file, line, self.entity)


@dataclass(frozen=True)
class Entity:
    """A declaration located in one snapshot."""

    id: str
    kind: str
    tree: SyntaxTree
    index: int
    guards: GuardIndex
    key: str | None = None      # storage-key literal

    def ref(self) -> NodeRef:
        node = self.tree.nodes[self.index]
        return NodeRef(
            file=self.tree.path,
            node_index=self.index,
            kind=node.kind,
            line_start=node.start_line,
            line_end=node.end_line,
        )


# ── Entity extraction ────────────────────────────────────────────────────────


def _name_of(tree: SyntaxTree, index: int) -> str:
    """Declared name of a struct/enum/function node."""
    return tree.child(index, 2).value or ""


def _type_name(text: str | None) -> str:
    """``Vault<T>`` -> ``Vault``; ``crate::x::Vault`` -> ``Vault``."""
    base = (text or "").split("<", 1)[0]
    return base.rsplit("::", 1)[-1].strip()


def _impl_target(tree: SyntaxTree, index: int) -> str:
    impl = tree.enclosing(index, "impl")
    if impl is None:
        return ""
    return _type_name(tree.child(impl.index, 1).value)


def _literal_key(tree: SyntaxTree, index: int) -> str | None:
    for i in tree.subtree(index):
        node = tree.nodes[i]
        if node.kind in _KEY_LITERALS:
            return node.value
    return None


def _struct_literal_name(tree: SyntaxTree, index: int) -> str:
    head = tree.child(index, 0)
    if head.kind == "ident":
        name = head.value or ""
    elif head.kind == "path":
        name = tree.nodes[head.children[-1]].value or ""
    else:
        return ""
    if name == "Self":
        return _impl_target(tree, index)
    return name


def extract_entities(tree: SyntaxTree, guards: GuardIndex) -> dict[str, Entity]:
    entities: dict[str, Entity] = {}

    def add(entity: Entity) -> None:
        entities.setdefault(entity.id, entity)

    for node in tree.nodes:
        if node.kind in _LAYOUT_KINDS:
            add(Entity(f"{node.kind}:{_name_of(tree, node.index)}", node.kind, tree, node.index, guards))
        elif node.kind == "function":
            owner = _impl_target(tree, node.index)
            name = _name_of(tree, node.index)
            entity_id = f"fn:{owner}::{name}" if owner else f"fn:{name}"
            add(Entity(entity_id, "fn", tree, node.index, guards))
        elif node.kind == "struct_literal":
            struct = _struct_literal_name(tree, node.index)
            if not struct:
                continue
            inits = tree.child(node.index, 1)
            for init in inits.children:
                init_node = tree.nodes[init]
                if init_node.kind != "field_init":
                    continue
                field = tree.child(init, 0).value
                key = _literal_key(tree, init_node.children[1])
                if key is None:
                    continue
                add(Entity(f"storage-key:{struct}.{field}", "storage-key", tree, init, guards, key=key))
    return entities


def _layout(tree: SyntaxTree, index: int) -> list[tuple[str, str]]:
    """(name, shape) per field of a struct or variant of an enum."""
    container = tree.child(index, 3)
    items: list[tuple[str, str]] = []
    for child in container.children:
        node = tree.nodes[child]
        if node.kind == "field":
            items.append((tree.child(child, 2).value or "", tree.child(child, 3).value or ""))
        elif node.kind == "variant":
            name = tree.child(child, 1).value or ""
            payload = [tree.shape(c) for c in node.children[2:]]
            items.append((name, ",".join(payload)))
    return items


# ── Classification ───────────────────────────────────────────────────────────


def _classify_layout(old: list[tuple[str, str]], new: list[tuple[str, str]]) -> tuple[ChangeKind, list[str]] | None:
    if old == new:
        return None
    old_names = [n for n, _ in old]
    new_names = [n for n, _ in new]

    if sorted(old_names) == sorted(new_names):
        if old_names != new_names:
            return ChangeKind.REORDER, [f"order {old_names} -> {new_names}"]
        changed = [n for (n, a), (_, b) in zip(old, new) if a != b]
        return ChangeKind.REMOVAL, [f"type of '{n}' changed" for n in changed]

    if new[: len(old)] == old:
        added = new_names[len(old):]
        return ChangeKind.SAFE_APPEND, [f"appended '{n}'" for n in added]

    missing = [n for n in old_names if n not in new_names]
    if missing:
        same_types = [t for _, t in old] == [t for _, t in new]
        if len(old) == len(new) and same_types:
            pairs = [f"'{a}' -> '{b}'" for a, b in zip(old_names, new_names) if a != b]
            return ChangeKind.RENAME, [f"renamed {p}" for p in pairs]
        return ChangeKind.REMOVAL, [f"removed '{n}'" for n in missing]

    # Every old field survives but some moved to make room for new ones.
    return ChangeKind.REORDER, [f"order {old_names} -> {new_names}"]


def _is_sensitive_effect(tree: SyntaxTree, index: int) -> bool:
    node = tree.nodes[index]
    if node.kind == "assign":
        target = node.children[0]
        return any(
            tree.nodes[i].kind == "ident" and tree.nodes[i].value == "self"
            for i in tree.subtree(target)
        )
    if node.kind == "method_call":
        method = tree.child(index, 1).value
        return method in _MUTATING_METHODS or method in _TRANSFER_METHODS
    if node.kind == "path":
        names = [tree.nodes[c].value for c in node.children]
        return names[-2:] == ["Promise", "new"]
    return False


def _effective_guards(entity: Entity) -> list[int]:
    """Guard sites in a function that precede a sensitive effect."""
    tree = entity.tree
    function = tree.nodes[entity.index]
    end = entity.index + function.size
    effective: list[int] = []
    for site in entity.guards.sites:
        if not tree.is_ancestor(entity.index, site.node):
            continue
        after = range(site.node + tree.nodes[site.node].size, end)
        if any(_is_sensitive_effect(tree, i) for i in after):
            effective.append(site.node)
    return effective


def _attributes(entity: Entity) -> set[str]:
    attrs = entity.tree.child(entity.index, 0)
    return {entity.tree.nodes[a].value or "" for a in attrs.children}


def _diff_function(v1: Entity, v2: Entity) -> tuple[ChangeKind, Severity, list[str]] | None:
    details: list[str] = []
    access_control = False

    v2_shapes = {
        v2.tree.shape(site.node)
        for site in v2.guards.sites
        if v2.tree.is_ancestor(v2.index, site.node)
    }
    sites = {site.node: site for site in v1.guards.sites}
    for node in _effective_guards(v1):
        if v1.tree.shape(node) in v2_shapes:
            continue
        site = sites[node]
        access_control = access_control or site.access_control
        details.append(f"guard removed: {' '.join(v1.tree.text(node).split())}")

    if "private" in _attributes(v1) and "private" not in _attributes(v2):
        access_control = True
        details.append("#[private] removed")

    if not details:
        return None
    severity = Severity.HIGH if access_control else Severity.MEDIUM
    return ChangeKind.REMOVAL, severity, details


def diff(v1: Entity | None, v2: Entity | None) -> DiffChangeSet | None:
    """Classify the change between two versions of one entity (at most one)."""
    if v1 is None and v2 is None:
        return None
    entity = (v1 or v2).id
    kind = (v1 or v2).kind

    if v1 is None:
        if kind == "fn":
            return None
        return DiffChangeSet(
            entity=entity, kind=ChangeKind.SAFE_APPEND, severity=Severity.INFORMATIONAL,
            after=v2.ref(), details=["new declaration"],
        )
    if v2 is None:
        if kind == "fn":
            return None
        return DiffChangeSet(
            entity=entity, kind=ChangeKind.REMOVAL, severity=Severity.HIGH,
            before=v1.ref(), details=["declaration removed"],
        )

    if kind in _LAYOUT_KINDS:
        result = _classify_layout(_layout(v1.tree, v1.index), _layout(v2.tree, v2.index))
        if result is None:
            return None
        change, details = result
        severity = _CHANGE_SEVERITY[change]
    elif kind == "storage-key":
        if v1.key == v2.key:
            return None
        change, severity = ChangeKind.RENAME, _CHANGE_SEVERITY[ChangeKind.RENAME]
        details = [f"storage key {v1.key!r} -> {v2.key!r}"]
    else:
        result = _diff_function(v1, v2)
        if result is None:
            return None
        change, severity, details = result

    return DiffChangeSet(
        entity=entity, kind=change, severity=severity,
        before=v1.ref(), after=v2.ref(), details=details,
    )


def _collect(corpus: CorpusCache) -> dict[str, Entity]:
    merged: dict[str, Entity] = {}
    for entry in corpus:
        for entity_id, entity in extract_entities(entry.tree, entry.guards).items():
            merged.setdefault(entity_id, entity)
    return merged


def diff_snapshots(corpus_v1: CorpusCache, corpus_v2: CorpusCache) -> list[DiffChangeSet]:
    """All change sets between two frozen snapshots, sorted."""
    if not (corpus_v1.frozen and corpus_v2.frozen):
        raise RuntimeError("diff requires two frozen corpus snapshots")
    before = _collect(corpus_v1)
    after = _collect(corpus_v2)
    changes: list[DiffChangeSet] = []
    for entity_id in sorted(set(before) | set(after)):
        change = diff(before.get(entity_id), after.get(entity_id))
        if change is not None:
            changes.append(change)
    changes.sort(key=lambda c: c.sort_key())
    logger.info("Diff produced %d change set(s) over %d entities", len(changes), len(before) + len(after))
    return changes
