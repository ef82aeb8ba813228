"""
Unit tests for partition assignment.
Assignments must agree with the target store's own vid -> partition mapping.
"""

import sys

import pyarrow as pa
import pytest

from core.settings import SYSTEM_COL_PARTITION_ID, VID_HASH_SEED
from exchange.domain import VidType
from exchange.errors import InvalidConfigurationError, InvalidIdentifierError
from exchange.partitioning import PartitionAssigner, get_partition_id, hash_vid, murmur_hash64a


@pytest.mark.parametrize("partition_count", [1, 2, 7, 10, 100, 1024])
def test_string_ids_land_in_range_and_are_deterministic(partition_count: int) -> None:
    vids = ["", "a", "player100", "abcdefgh", "éééé", "x" * 200, "team_42"]
    for vid in vids:
        first = get_partition_id(vid, partition_count, VidType.STRING)
        assert 1 <= first <= partition_count
        assert all(get_partition_id(vid, partition_count, VidType.STRING) == first for _ in range(3))


@pytest.mark.parametrize("vid", [0, 1, 15, -1, -(1 << 63), (1 << 63) - 1])
def test_int_ids_land_in_range(vid: int) -> None:
    assert 1 <= get_partition_id(vid, 10, VidType.INT) <= 10


def test_int_id_is_its_own_hash() -> None:
    assert get_partition_id(15, 10, VidType.INT) == 6
    assert get_partition_id("15", 10, VidType.INT) == 6


def test_negative_int_id_is_reinterpreted_as_unsigned() -> None:
    # -1 -> 0xFFFFFFFFFFFFFFFF = 18446744073709551615
    assert hash_vid(-1, VidType.INT) == (1 << 64) - 1
    assert get_partition_id(-1, 10, VidType.INT) == 18446744073709551615 % 10 + 1


def test_eight_byte_string_is_read_as_native_order_integer() -> None:
    expected = int.from_bytes(b"abcdefgh", sys.byteorder) % 10 + 1
    assert get_partition_id("abcdefgh", 10, VidType.STRING) == expected
    assert hash_vid("abcdefgh", VidType.STRING) != murmur_hash64a(b"abcdefgh")


def test_eight_byte_rule_counts_utf8_bytes_not_characters() -> None:
    # four two-byte characters
    raw = "éééé".encode("utf-8")
    assert len(raw) == 8
    assert hash_vid("éééé", VidType.STRING) == int.from_bytes(raw, sys.byteorder)


@pytest.mark.parametrize("vid", ["", "abcdefg", "abcdefghi", "player100"])
def test_other_lengths_are_murmur_hashed(vid: str) -> None:
    assert hash_vid(vid, VidType.STRING) == murmur_hash64a(vid.encode("utf-8"), VID_HASH_SEED)


@pytest.mark.parametrize(
    "data, expected",
    [
        (b"player100", 7289597605171850056),
        (b"abcdefghi", 13036955925923793583),
    ],
)
def test_murmur_hash64a_known_values(data: bytes, expected: int) -> None:
    assert murmur_hash64a(data, seed=0xC70F6907) == expected
    assert murmur_hash64a(data) == expected


def test_murmur_hash64a_properties() -> None:
    assert murmur_hash64a(b"", seed=0) == 0
    assert 0 <= murmur_hash64a(b"player100") < (1 << 64)
    assert murmur_hash64a(b"player100") != murmur_hash64a(b"player101")
    assert murmur_hash64a(b"player100", seed=1) != murmur_hash64a(b"player100", seed=2)


@pytest.mark.parametrize("partition_count", [0, -3])
def test_non_positive_partition_count_is_rejected(partition_count: int) -> None:
    with pytest.raises(InvalidConfigurationError):
        get_partition_id("a", partition_count, VidType.STRING)
    with pytest.raises(ValueError):
        PartitionAssigner(partition_count, VidType.INT)


@pytest.mark.parametrize("vid", ["abc", "1.5", "", 1 << 63, None, True])
def test_invalid_int_ids_are_rejected(vid) -> None:
    with pytest.raises(InvalidIdentifierError):
        hash_vid(vid, VidType.INT)


def test_string_kind_rejects_non_strings() -> None:
    with pytest.raises(InvalidIdentifierError):
        hash_vid(12, VidType.STRING)


def test_assigner_matches_function() -> None:
    assigner = PartitionAssigner(7, "string")
    assert assigner.vid_type == VidType.STRING
    for vid in ["a", "abcdefgh", "player100"]:
        assert assigner.assign(vid) == get_partition_id(vid, 7, VidType.STRING)


def test_annotate_appends_partition_column() -> None:
    batch = pa.RecordBatch.from_pydict(
        {"id": ["1", "2", "3"], "name": ["a", "b", "c"]},
        schema=pa.schema([pa.field("id", pa.string()), pa.field("name", pa.string())]),
    )
    assigner = PartitionAssigner(2, VidType.INT)

    annotated = assigner.annotate(batch, "id")

    assert annotated.schema.names == ["id", "name", SYSTEM_COL_PARTITION_ID]
    assert annotated.schema.field(SYSTEM_COL_PARTITION_ID).type == pa.int32()
    assert annotated.column(SYSTEM_COL_PARTITION_ID).to_pylist() == [2, 1, 2]


def test_annotate_rejects_missing_field_and_null_ids() -> None:
    assigner = PartitionAssigner(2, VidType.STRING)
    batch = pa.RecordBatch.from_pydict({"id": ["a", None]})

    with pytest.raises(InvalidIdentifierError, match="not found"):
        assigner.annotate(batch, "vid")
    with pytest.raises(InvalidIdentifierError):
        assigner.annotate(batch, "id")
