"""Tests for the upgrade-safety diff analyzer."""

from __future__ import annotations

import textwrap

import pytest

from contractlens.core.types import ChangeKind, Severity
from contractlens.diff import diff, diff_snapshots, extract_entities
from contractlens.loader.adapters import parse
from contractlens.variants.corpus import CorpusCache

FIELDS = "    owner: AccountId,\n    balances: LookupMap<AccountId, u128>,\n    total: u128,\n"
GUARD = '        assert_eq!(env::predecessor_account_id(), self.owner, "owner only");\n'


def snapshot(*sources: tuple[str, str]) -> CorpusCache:
    return CorpusCache.from_trees(
        parse(textwrap.dedent(text), "rust", path) for path, text in sources
    )


@pytest.fixture
def v1(vault_v1):
    return snapshot(("src/lib.rs", vault_v1))


def changed(v1, text):
    return diff_snapshots(v1, snapshot(("src/lib.rs", text)))


class TestEntities:
    def test_extracted_entities(self, vault_v1):
        corpus = snapshot(("src/lib.rs", vault_v1))
        entry = corpus.get("src/lib.rs")
        entities = extract_entities(entry.tree, entry.guards)
        assert sorted(entities) == [
            "fn:Vault::new",
            "fn:Vault::on_refund",
            "fn:Vault::withdraw",
            "storage-key:Vault.balances",
            "struct:Vault",
        ]
        assert entities["storage-key:Vault.balances"].key == "b"

    def test_diff_single_entity(self, vault_v1):
        swapped = vault_v1.replace(FIELDS, "    total: u128,\n" + FIELDS.replace("    total: u128,\n", ""))
        before = snapshot(("src/lib.rs", vault_v1)).get("src/lib.rs")
        after = snapshot(("src/lib.rs", swapped)).get("src/lib.rs")
        v1 = extract_entities(before.tree, before.guards)["struct:Vault"]
        v2 = extract_entities(after.tree, after.guards)["struct:Vault"]
        assert diff(v1, v1) is None
        assert diff(v1, v2).kind == ChangeKind.REORDER
        assert diff(None, v2).kind == ChangeKind.SAFE_APPEND
        assert diff(v1, None).kind == ChangeKind.REMOVAL
        assert diff(None, None) is None

    def test_free_functions_and_enums(self):
        corpus = snapshot(("src/lib.rs", "enum Status { Active, Paused }\nfn helper() {}\n"))
        entry = corpus.get("src/lib.rs")
        assert sorted(extract_entities(entry.tree, entry.guards)) == ["enum:Status", "fn:helper"]


class TestLayoutChanges:
    def test_identical_snapshots(self, v1, vault_v1):
        assert changed(v1, vault_v1) == []

    def test_swapped_fields_are_one_reorder(self, v1, vault_v1):
        swapped = "    balances: LookupMap<AccountId, u128>,\n    owner: AccountId,\n    total: u128,\n"
        changes = changed(v1, vault_v1.replace(FIELDS, swapped))
        assert len(changes) == 1
        change = changes[0]
        assert change.entity == "struct:Vault"
        assert change.kind == ChangeKind.REORDER
        assert change.severity == Severity.HIGH
        assert change.before.file == change.after.file == "src/lib.rs"

    def test_appended_field_is_safe(self, v1, vault_v1):
        appended = FIELDS + "    paused: bool,\n"
        changes = changed(v1, vault_v1.replace(FIELDS, appended))
        assert [(c.entity, c.kind, c.severity) for c in changes] == [
            ("struct:Vault", ChangeKind.SAFE_APPEND, Severity.INFORMATIONAL)
        ]
        assert changes[0].details == ["appended 'paused'"]

    def test_inserted_field_is_a_reorder(self, v1, vault_v1):
        inserted = "    paused: bool,\n" + FIELDS
        changes = changed(v1, vault_v1.replace(FIELDS, inserted))
        assert [c.kind for c in changes] == [ChangeKind.REORDER]

    def test_renamed_field(self, v1, vault_v1):
        renamed = FIELDS.replace("total: u128", "supply: u128")
        changes = changed(v1, vault_v1.replace(FIELDS, renamed))
        assert [(c.entity, c.kind) for c in changes] == [("struct:Vault", ChangeKind.RENAME)]
        assert changes[0].details == ["renamed 'total' -> 'supply'"]

    def test_removed_field(self, v1, vault_v1):
        removed = FIELDS.replace("    total: u128,\n", "")
        changes = changed(v1, vault_v1.replace(FIELDS, removed))
        assert [(c.kind, c.details) for c in changes] == [(ChangeKind.REMOVAL, ["removed 'total'"])]

    def test_type_change_is_a_removal(self, v1, vault_v1):
        retyped = FIELDS.replace("total: u128", "total: u64")
        changes = changed(v1, vault_v1.replace(FIELDS, retyped))
        assert [(c.kind, c.severity) for c in changes] == [(ChangeKind.REMOVAL, Severity.HIGH)]

    def test_enum_variant_reorder(self):
        before = snapshot(("src/lib.rs", "enum Status { Active, Paused(u8) }"))
        after = snapshot(("src/lib.rs", "enum Status { Paused(u8), Active }"))
        changes = diff_snapshots(before, after)
        assert [(c.entity, c.kind) for c in changes] == [("enum:Status", ChangeKind.REORDER)]


class TestStorageKeys:
    def test_changed_prefix_is_a_rename(self, v1, vault_v1):
        changes = changed(v1, vault_v1.replace('LookupMap::new(b"b")', 'LookupMap::new(b"x")'))
        assert len(changes) == 1
        change = changes[0]
        assert change.entity == "storage-key:Vault.balances"
        assert change.kind == ChangeKind.RENAME
        assert change.severity == Severity.HIGH
        assert change.details == ["storage key 'b' -> 'x'"]


class TestFunctionChanges:
    def test_removed_owner_check(self, v1, vault_v1):
        changes = changed(v1, vault_v1.replace(GUARD, ""))
        assert len(changes) == 1
        change = changes[0]
        assert change.entity == "fn:Vault::withdraw"
        assert change.kind == ChangeKind.REMOVAL
        assert change.severity == Severity.HIGH
        assert change.details[0].startswith("guard removed: assert_eq!(env::predecessor_account_id()")

    def test_removed_private_attribute(self, v1, vault_v1):
        changes = changed(v1, vault_v1.replace("    #[private]\n", ""))
        assert [(c.entity, c.kind, c.severity, c.details) for c in changes] == [
            ("fn:Vault::on_refund", ChangeKind.REMOVAL, Severity.HIGH, ["#[private] removed"])
        ]

    def test_guard_without_following_effect_is_ignored(self):
        before = snapshot(("src/lib.rs", """
            impl Vault {
                pub fn audit(&self) -> u128 {
                    self.assert_owner();
                    self.total
                }
            }
        """))
        after = snapshot(("src/lib.rs", """
            impl Vault {
                pub fn audit(&self) -> u128 {
                    self.total
                }
            }
        """))
        assert diff_snapshots(before, after) == []

    def test_non_access_guard_removal_is_medium(self):
        before = snapshot(("src/lib.rs", """
            impl Vault {
                pub fn sweep(&mut self) {
                    assert_one_yocto();
                    self.total = 0;
                }
            }
        """))
        after = snapshot(("src/lib.rs", """
            impl Vault {
                pub fn sweep(&mut self) {
                    self.total = 0;
                }
            }
        """))
        changes = diff_snapshots(before, after)
        assert [(c.kind, c.severity) for c in changes] == [(ChangeKind.REMOVAL, Severity.MEDIUM)]

    def test_added_and_removed_functions_are_not_changes(self, v1, vault_v1):
        extra = vault_v1.replace("    #[private]\n", "    pub fn ping(&self) {}\n\n    #[private]\n")
        assert changed(v1, extra) == []


class TestDeclarations:
    def test_new_and_vanished_structs(self):
        before = snapshot(("src/a.rs", "struct Config { fee: u8 }"), ("src/b.rs", "struct Vault { total: u128 }"))
        after = snapshot(("src/b.rs", "struct Vault { total: u128 }"), ("src/c.rs", "struct Ledger { size: u64 }"))
        changes = diff_snapshots(before, after)
        assert [(c.entity, c.kind, c.severity) for c in changes] == [
            ("struct:Config", ChangeKind.REMOVAL, Severity.HIGH),
            ("struct:Ledger", ChangeKind.SAFE_APPEND, Severity.INFORMATIONAL),
        ]
        assert changes[0].after is None and changes[0].before.file == "src/a.rs"
        assert changes[1].before is None and changes[1].after.file == "src/c.rs"

    def test_declarations_pair_across_files(self):
        before = snapshot(("src/a.rs", "struct Vault { total: u128 }"))
        after = snapshot(("src/state.rs", "struct Vault { total: u128 }"))
        assert diff_snapshots(before, after) == []

    def test_diff_requires_frozen_snapshots(self, v1):
        with pytest.raises(RuntimeError):
            diff_snapshots(v1, CorpusCache())

    def test_results_are_sorted_and_deterministic(self, v1, vault_v1):
        text = vault_v1.replace(GUARD, "").replace(FIELDS, FIELDS + "    paused: bool,\n")
        first = changed(v1, text)
        second = changed(v1, text)
        assert [c.model_dump() for c in first] == [c.model_dump() for c in second]
        assert [c.severity for c in first] == [Severity.HIGH, Severity.INFORMATIONAL]
