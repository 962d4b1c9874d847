import pytest

from proxy_deployment.artifacts import artifact_from_json
from proxy_deployment.exceptions import IncompatibleStorageLayout
from proxy_deployment.layout import StorageLayout, assert_upgrade_safe, compare_layouts
from tests.conftest import (
    MARKETPLACE,
    MARKETPLACE_BROKEN,
    MARKETPLACE_STORAGE,
    MARKETPLACE_V2,
    artifact_json,
    storage_layout,
)


def _compare(old_variables, new_variables, new_types=None):
    new_layout = storage_layout(new_variables)
    new_layout["types"].update(new_types or {})
    return compare_layouts(
        StorageLayout.from_solc(storage_layout(old_variables)), StorageLayout.from_solc(new_layout)
    )


def test_identical_layout_is_compatible():
    assert _compare(MARKETPLACE_STORAGE, MARKETPLACE_STORAGE) == []


def test_variable_carved_out_of_gap_is_compatible():
    assert_upgrade_safe(artifact_from_json(MARKETPLACE), artifact_from_json(MARKETPLACE_V2))


def test_appended_variable_is_compatible():
    old = MARKETPLACE_STORAGE[:-1]
    new = old + [("fee", 4, 0, "t_uint256")]
    assert _compare(old, new) == []


def test_reordered_variables_are_incompatible():
    with pytest.raises(IncompatibleStorageLayout) as error:
        assert_upgrade_safe(artifact_from_json(MARKETPLACE), artifact_from_json(MARKETPLACE_BROKEN))
    assert error.value.problems
    assert "auctionStep" in str(error.value)


def test_removed_variable_is_incompatible():
    new = [v for v in MARKETPLACE_STORAGE if v[0] != "owners"]
    problems = _compare(MARKETPLACE_STORAGE, new)
    assert any("owners" in p for p in problems)


def test_deleted_trailing_variable_is_incompatible():
    old = MARKETPLACE_STORAGE[:-1]
    problems = _compare(old, old[:-1])
    assert problems == ["Deleted variable 'owners' (slot 3)."]


def test_renamed_variable_is_incompatible():
    new = [("minBidStep", 1, 0, "t_uint256") if v[0] == "auctionStep" else v for v in MARKETPLACE_STORAGE]
    problems = _compare(MARKETPLACE_STORAGE, new)
    assert problems == [
        "Variable 'auctionStep' at slot 1 offset 0 was replaced by 'minBidStep'."
    ]


def test_retyped_variable_is_incompatible():
    new = [("startValue", 2, 0, "t_address") if v[0] == "startValue" else v for v in MARKETPLACE_STORAGE]
    problems = _compare(MARKETPLACE_STORAGE, new)
    assert problems == ["Variable 'startValue' changed type from 'uint256' to 'address'."]


def test_moved_variable_is_incompatible():
    old = MARKETPLACE_STORAGE[:-1]
    new = old[:2] + [("auctionStep", 5, 0, "t_uint256")]
    problems = _compare(old[:3], new)
    assert problems == ["Variable 'auctionStep' moved from slot 1 offset 0 to slot 5 offset 0."]


def test_gap_not_shrunk_is_incompatible():
    # fee added in the gap, but the gap kept its size
    new = MARKETPLACE_STORAGE[:-1] + [
        ("fee", 4, 0, "t_uint256"),
        ("__gap", 5, 0, "t_array(t_uint256)49_storage"),
    ]
    problems = _compare(MARKETPLACE_STORAGE, new)
    assert len(problems) == 1
    assert "resized incorrectly" in problems[0]


def test_contract_reference_equals_address():
    contract_type = {
        "t_contract(IERC20)1234": {"encoding": "inplace", "label": "contract IERC20", "numberOfBytes": "20"}
    }
    old = [("token", 0, 0, "t_address")]
    new = [("token", 0, 0, "t_contract(IERC20)1234")]
    assert _compare(old, new, new_types=contract_type) == []


def test_struct_moved_between_scopes_is_compatible():
    def struct(label):
        return {
            "t_struct(Bid)10_storage": {
                "encoding": "inplace",
                "label": label,
                "numberOfBytes": "64",
                "members": [
                    {"label": "bidder", "offset": 0, "slot": "0", "type": "t_address"},
                    {"label": "amount", "offset": 0, "slot": "1", "type": "t_uint256"},
                ],
            }
        }

    old_layout = storage_layout([("lastBid", 0, 0, "t_struct(Bid)10_storage")])
    old_layout["types"].update(struct("struct Marketplace.Bid"))
    new_layout = storage_layout([("lastBid", 0, 0, "t_struct(Bid)10_storage")])
    new_layout["types"].update(struct("struct Types.Bid"))
    assert compare_layouts(StorageLayout.from_solc(old_layout), StorageLayout.from_solc(new_layout)) == []


def test_missing_layout_is_incompatible():
    unlaid = artifact_json("Legacy", "0x6001", "0x6002", [])
    with pytest.raises(IncompatibleStorageLayout, match="No storage layout"):
        assert_upgrade_safe(artifact_from_json(unlaid), artifact_from_json(MARKETPLACE_V2))
    with pytest.raises(IncompatibleStorageLayout, match="No storage layout"):
        assert_upgrade_safe(artifact_from_json(MARKETPLACE), artifact_from_json(unlaid))


def test_slots_of_packed_and_array_variables():
    layout = StorageLayout.from_solc(storage_layout(MARKETPLACE_STORAGE))
    by_label = {item.label: item for item in layout.items}
    assert layout.slots(by_label["_initializing"]) == 1
    assert layout.slots(by_label["__gap"]) == 49
    assert by_label["__gap"].is_gap


NODE_TYPES = {
    "t_struct(Node)12_storage": {
        "encoding": "inplace",
        "label": "struct Marketplace.Node",
        "numberOfBytes": "64",
        "members": [
            {"astId": 7, "label": "value", "offset": 0, "slot": "0", "type": "t_uint256"},
            {
                "astId": 11,
                "label": "children",
                "offset": 0,
                "slot": "1",
                "type": "t_mapping(t_uint256,t_struct(Node)12_storage)",
            },
        ],
    },
    "t_mapping(t_uint256,t_struct(Node)12_storage)": {
        "encoding": "mapping",
        "key": "t_uint256",
        "value": "t_struct(Node)12_storage",
        "label": "mapping(uint256 => struct Marketplace.Node)",
        "numberOfBytes": "32",
    },
}


def test_self_referencing_struct_is_compared():
    variables = MARKETPLACE_STORAGE[:-1] + [("root", 4, 0, "t_struct(Node)12_storage")]
    layout = storage_layout(variables)
    layout["types"].update(NODE_TYPES)
    assert compare_layouts(StorageLayout.from_solc(layout), StorageLayout.from_solc(layout)) == []

    described = StorageLayout.from_solc(layout).describe("t_struct(Node)12_storage")
    children = described[3][1]
    assert children[0] == "children"
    assert children[3] == ("mapping", ("inplace", "uint256", 32), ("recursive", "struct Node"))


def test_self_referencing_struct_member_change_is_incompatible():
    variables = MARKETPLACE_STORAGE[:-1] + [("root", 4, 0, "t_struct(Node)12_storage")]
    old_layout = storage_layout(variables)
    old_layout["types"].update(NODE_TYPES)
    new_types = {key: dict(value) for key, value in NODE_TYPES.items()}
    new_types["t_struct(Node)12_storage"]["members"] = [
        {"astId": 7, "label": "weight", "offset": 0, "slot": "0", "type": "t_uint256"},
        NODE_TYPES["t_struct(Node)12_storage"]["members"][1],
    ]
    new_layout = storage_layout(variables)
    new_layout["types"].update(new_types)

    with pytest.raises(IncompatibleStorageLayout, match="root"):
        assert_upgrade_safe(
            artifact_from_json(artifact_json("Tree", "0x01", "0x02", [], old_layout)),
            artifact_from_json(artifact_json("TreeV2", "0x03", "0x04", [], new_layout)),
        )


def test_malformed_layout_is_incompatible():
    broken = storage_layout(MARKETPLACE_STORAGE)
    del broken["storage"][2]["label"]
    with pytest.raises(IncompatibleStorageLayout, match="Malformed storage layout"):
        assert_upgrade_safe(
            artifact_from_json(MARKETPLACE),
            artifact_from_json(artifact_json("MarketplaceV2", "0x01", "0x02", [], broken)),
        )
