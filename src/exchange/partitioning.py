"""
Partition assignment that mirrors the target store's own vid -> part mapping.

String ids of exactly 8 UTF-8 bytes are read as a 64-bit integer in the host's
native byte order (the store serialises int64 ids that way), every other
string is hashed with MurmurHash2-64A. The 64-bit value is then taken as
unsigned, reduced modulo the partition count and shifted to a 1-based index.

The native-order shortcut only agrees with the store when both run on hosts
of the same endianness. It is kept as-is: changing it would move ids to
different partitions than an existing store expects.
"""
import re
import sys

import pyarrow as pa

from core.settings import SYSTEM_COL_PARTITION_ID, VID_HASH_SEED
from exchange.domain import VidType
from exchange.errors import InvalidConfigurationError, InvalidIdentifierError

_MASK_64 = 0xFFFF_FFFF_FFFF_FFFF
_MURMUR_M = 0xC6A4A7935BD1E995
_MURMUR_R = 47

_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_INTEGER_VID_PATTERN = re.compile(r"^-?\d+$")


def murmur_hash64a(data: bytes, seed: int = VID_HASH_SEED) -> int:
    """MurmurHash2, 64-bit variant A. Returns the hash as an unsigned 64-bit int."""
    length = len(data)
    h = (seed & 0xFFFF_FFFF) ^ ((length * _MURMUR_M) & _MASK_64)

    block_count = length // 8
    for i in range(block_count):
        k = int.from_bytes(data[i * 8:i * 8 + 8], "little")
        k = (k * _MURMUR_M) & _MASK_64
        k ^= k >> _MURMUR_R
        k = (k * _MURMUR_M) & _MASK_64

        h ^= k
        h = (h * _MURMUR_M) & _MASK_64

    tail = data[block_count * 8:]
    if tail:
        h ^= int.from_bytes(tail, "little")
        h = (h * _MURMUR_M) & _MASK_64

    h ^= h >> _MURMUR_R
    h = (h * _MURMUR_M) & _MASK_64
    h ^= h >> _MURMUR_R
    return h


def hash_vid(vid: str | int, vid_type: VidType) -> int:
    """Unsigned 64-bit value the store derives from a vertex id."""
    if vid is None or isinstance(vid, bool):
        raise InvalidIdentifierError(f"Unsupported vertex id: {vid!r}")

    if vid_type == VidType.INT:
        return _to_int64(vid) & _MASK_64

    if not isinstance(vid, str):
        raise InvalidIdentifierError(f"Expected a string vertex id, got {type(vid).__name__}: {vid!r}")

    raw = vid.encode("utf-8")
    if len(raw) == 8:
        return int.from_bytes(raw, sys.byteorder)
    return murmur_hash64a(raw)


def get_partition_id(vid: str | int, partition_count: int, vid_type: VidType) -> int:
    """Map a vertex id to its 1-based partition index in [1, partition_count]."""
    if partition_count <= 0:
        raise InvalidConfigurationError(f"partition_count must be positive, got {partition_count}")
    return hash_vid(vid, vid_type) % partition_count + 1


def _to_int64(vid: str | int) -> int:
    if isinstance(vid, int):
        value = vid
    elif isinstance(vid, str) and _INTEGER_VID_PATTERN.match(vid):
        value = int(vid)
    else:
        raise InvalidIdentifierError(f"Vertex id {vid!r} is not an integer")

    if not _INT64_MIN <= value <= _INT64_MAX:
        raise InvalidIdentifierError(f"Vertex id {vid!r} does not fit in a signed 64-bit integer")
    return value


class PartitionAssigner:
    """Binds a partition count and vid type for one job."""

    def __init__(self, partition_count: int, vid_type: VidType):
        if partition_count <= 0:
            raise InvalidConfigurationError(f"partition_count must be positive, got {partition_count}")
        self.partition_count = partition_count
        self.vid_type = VidType(vid_type)

    def assign(self, vid: str | int) -> int:
        return hash_vid(vid, self.vid_type) % self.partition_count + 1

    def annotate(self, batch: pa.RecordBatch, vid_field: str) -> pa.RecordBatch:
        """Append the partition index of every row as a non-null int32 column."""
        field_index = batch.schema.get_field_index(vid_field)
        if field_index == -1:
            raise InvalidIdentifierError(
                f"Vertex id field '{vid_field}' not found in batch columns {batch.schema.names}"
            )

        partition_ids = [self.assign(vid) for vid in batch.column(field_index).to_pylist()]

        partition_field = pa.field(SYSTEM_COL_PARTITION_ID, pa.int32(), nullable=False)
        return pa.RecordBatch.from_arrays(
            batch.columns + [pa.array(partition_ids, type=pa.int32())],
            schema=batch.schema.append(partition_field),
        )
