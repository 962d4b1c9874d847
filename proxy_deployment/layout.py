"""
Storage layout compatibility between two implementations of the same proxy.

Layouts are the ``storageLayout`` output of solc: a list of storage variables
(label, slot, offset, type id) plus a table describing every type id. A new
implementation is compatible when every existing variable keeps its name, slot,
offset and type; new variables may only be appended or placed inside a storage
gap that shrinks accordingly.
"""

import typing
from typing import List, NamedTuple

from proxy_deployment.artifacts import ContractArtifact
from proxy_deployment.constants import STORAGE_GAP_PREFIX
from proxy_deployment.exceptions import IncompatibleStorageLayout

SLOT_SIZE = 32


class StorageItem(NamedTuple):
    label: str
    slot: int
    offset: int
    type_id: str
    contract: str = ""

    @property
    def is_gap(self) -> bool:
        return self.label.startswith(STORAGE_GAP_PREFIX)


class StorageLayout:
    """A solc storage layout with helpers to describe types independently of AST ids."""

    def __init__(self, items: List[StorageItem], types: dict):
        self.items = sorted(items, key=lambda item: (item.slot, item.offset))
        self.types = types or dict()

    @classmethod
    def from_solc(cls, data: dict) -> "StorageLayout":
        items = [
            StorageItem(
                label=entry["label"],
                slot=int(entry["slot"]),
                offset=int(entry.get("offset", 0)),
                type_id=entry["type"],
                contract=entry.get("contract", ""),
            )
            for entry in data.get("storage", [])
        ]
        return cls(items=items, types=data.get("types"))

    def number_of_bytes(self, type_id: str) -> int:
        return int(self.types.get(type_id, {}).get("numberOfBytes", SLOT_SIZE))

    def slots(self, item: StorageItem) -> int:
        """Number of slots occupied by a variable."""
        size = self.number_of_bytes(item.type_id)
        return max(1, -(-(item.offset + size) // SLOT_SIZE))

    def describe(self, type_id: str, _seen: typing.FrozenSet[str] = frozenset()) -> typing.Tuple:
        """A structural description of a type that can be compared across compilations."""
        info = self.types.get(type_id)
        if info is None:
            return ("unknown", type_id)

        label = info.get("label", type_id)
        size = int(info.get("numberOfBytes", SLOT_SIZE))
        encoding = info.get("encoding", "inplace")

        # self-referencing structs (through mappings or dynamic arrays)
        if type_id in _seen:
            return ("recursive", _strip_scope(label))
        seen = _seen | {type_id}

        if label.startswith("contract "):
            # contract references are stored as plain addresses
            return ("inplace", "address", size)
        if encoding == "mapping":
            return ("mapping", self.describe(info["key"], seen), self.describe(info["value"], seen))
        if encoding == "dynamic_array":
            return ("dynamic_array", self.describe(info["base"], seen))
        if "members" in info:
            members = tuple(
                (m["label"], int(m["slot"]), int(m.get("offset", 0)), self.describe(m["type"], seen))
                for m in info["members"]
            )
            return ("struct", _strip_scope(label), size, members)
        if "base" in info:
            return ("array", self.describe(info["base"], seen), size)
        return (encoding, _strip_scope(label), size)


def _strip_scope(label: str) -> str:
    """'struct Marketplace.Bid' -> 'struct Bid' so moving a declaration is not a change."""
    kind, _, name = label.partition(" ")
    if not name:
        return label
    return f"{kind} {name.rsplit('.', 1)[-1]}"


def _layout_of(artifact: ContractArtifact) -> StorageLayout:
    if not artifact.storage_layout:
        raise IncompatibleStorageLayout(
            f"No storage layout available for {artifact.name}; cannot prove the upgrade is safe. "
            "Compile with 'storageLayout' in the solc output selection."
        )
    try:
        return StorageLayout.from_solc(artifact.storage_layout)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise IncompatibleStorageLayout(f"Malformed storage layout for {artifact.name}: {e!r}") from e


def compare_layouts(original: StorageLayout, updated: StorageLayout) -> List[str]:
    """Returns a list of human readable problems; empty when the layouts are compatible."""
    problems = list()
    old_items, new_items = original.items, updated.items
    j = 0
    for old in old_items:
        if old.is_gap:
            gap_end = old.slot + original.slots(old)
            # new variables may be carved out of the gap
            while j < len(new_items) and not new_items[j].is_gap and new_items[j].slot < gap_end:
                new = new_items[j]
                if new.slot + updated.slots(new) > gap_end:
                    problems.append(
                        f"Variable '{new.label}' inserted at slot {new.slot} overflows "
                        f"storage gap '{old.label}'."
                    )
                j += 1
            if j < len(new_items) and new_items[j].is_gap:
                new = new_items[j]
                if new.slot + updated.slots(new) != gap_end:
                    problems.append(
                        f"Storage gap '{old.label}' was resized incorrectly: it ended at slot "
                        f"{gap_end}, now ends at slot {new.slot + updated.slots(new)}."
                    )
                j += 1
            continue

        if j >= len(new_items):
            problems.append(f"Deleted variable '{old.label}' (slot {old.slot}).")
            continue

        new = new_items[j]
        j += 1
        if new.label != old.label:
            problems.append(
                f"Variable '{old.label}' at slot {old.slot} offset {old.offset} "
                f"was replaced by '{new.label}'."
            )
        elif (new.slot, new.offset) != (old.slot, old.offset):
            problems.append(
                f"Variable '{old.label}' moved from slot {old.slot} offset {old.offset} "
                f"to slot {new.slot} offset {new.offset}."
            )
        elif original.describe(old.type_id) != updated.describe(new.type_id):
            old_label = original.types.get(old.type_id, {}).get("label", old.type_id)
            new_label = updated.types.get(new.type_id, {}).get("label", new.type_id)
            problems.append(
                f"Variable '{old.label}' changed type from '{old_label}' to '{new_label}'."
            )

    return problems


def assert_upgrade_safe(current: ContractArtifact, new: ContractArtifact) -> None:
    """Raises IncompatibleStorageLayout unless new can replace current behind a proxy."""
    original, updated = _layout_of(current), _layout_of(new)
    try:
        problems = compare_layouts(original, updated)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise IncompatibleStorageLayout(
            f"Malformed storage layout in {current.name} or {new.name}: {e!r}"
        ) from e
    if problems:
        raise IncompatibleStorageLayout(
            f"New storage layout of {new.name} is incompatible with {current.name}.",
            problems=problems,
        )
