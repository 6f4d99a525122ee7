"""Logical-to-physical block table.

The blocktable is a flat array of 4-byte records, one per logical block:

    0: physical block (u16)
    2: confidence (i16), negative when the block has no known location
"""
import os
import struct
from dataclasses import dataclass
from typing import List

from .constants import FORWARD_MAP_RECORD, LOGICAL_BLOCK_BYTES
from .errors import SetupError

RECORD_SIZE = struct.calcsize(FORWARD_MAP_RECORD)


def log(msg):
    print(f"[ForwardMap] {msg}", flush=True)


@dataclass(frozen=True)
class ForwardMapEntry:
    physical_block: int
    confidence: int

    @property
    def mapped(self) -> bool:
        return self.confidence >= 0


class ForwardMap:
    """Read-only view of the loaded blocktable, indexed by logical block."""

    def __init__(self, entries: List[ForwardMapEntry]):
        self._entries = tuple(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, block: int) -> ForwardMapEntry:
        return self._entries[block]

    def __iter__(self):
        return iter(self._entries)

    def mapped_count(self) -> int:
        return sum(1 for e in self._entries if e.mapped)

    def total_size(self) -> int:
        """Size in bytes of the virtual file this table describes."""
        return len(self._entries) * LOGICAL_BLOCK_BYTES

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ForwardMap':
        usable = len(data) - len(data) % RECORD_SIZE
        if usable != len(data):
            log(f"WARNING: ignoring {len(data) - usable} trailing bytes "
                f"(not a whole {RECORD_SIZE}-byte record)")
        entries = [ForwardMapEntry(phys, conf)
                   for phys, conf in struct.iter_unpack(FORWARD_MAP_RECORD, data[:usable])]
        return cls(entries)


def load_forward_map(path: str) -> ForwardMap:
    """Load the whole blocktable into memory.

    Raises:
        SetupError: the file cannot be opened or read
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise SetupError(f"cannot read blocktable {path}: {e.strerror}", path) from e

    fwd = ForwardMap.from_bytes(data)
    log(f"Loaded {os.path.basename(path)}: {len(fwd)} blocks, "
        f"{fwd.mapped_count()} mapped, virtual size {fwd.total_size()} bytes")
    return fwd
