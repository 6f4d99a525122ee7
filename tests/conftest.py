"""Fixtures building small on-disk dumps for the tests."""
import os
import struct
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flash_lofile.constants import PATCH_BATCH_RECORDS
from flash_lofile.store import FlashStore


def write_at(path, offset: int, data: bytes):
    """Write data at offset, creating a sparse file if needed."""
    mode = 'r+b' if os.path.exists(path) else 'w+b'
    with open(path, mode) as f:
        f.seek(offset)
        f.write(data)


def write_blocktable(path, entries):
    with open(path, 'wb') as f:
        for phys, confidence in entries:
            f.write(struct.pack('<Hh', phys, confidence))


def write_patch_list(path, records, count: int = PATCH_BATCH_RECORDS):
    """records: (sector, page, confidence) tuples, zero-padded to count."""
    with open(path, 'wb') as f:
        for i in range(count):
            sector, page, confidence = records[i] if i < len(records) else (0, 0, 0)
            f.write(struct.pack('<iiii', sector, page, confidence, 0))


class DumpBuilder:
    """Lays out blocktable, channel and patch files under one directory."""

    def __init__(self, root):
        self.root = root
        self.blocktable = os.path.join(root, 'blocktable.bin')
        self.cs0 = os.path.join(root, 'cs0.bin')
        self.cs1 = os.path.join(root, 'cs1.bin')
        self.batches = []
        self.stores = []
        for path in (self.cs0, self.cs1):
            open(path, 'wb').close()

    def forward_map(self, entries):
        write_blocktable(self.blocktable, entries)

    def channel(self, index: int) -> str:
        return self.cs1 if index else self.cs0

    def add_batch(self, name: str, records, source_data=None):
        source = os.path.join(self.root, f'{name}.src')
        listing = os.path.join(self.root, f'{name}.lst')
        with open(source, 'wb') as f:
            f.write(source_data or b'')
        write_patch_list(listing, records)
        self.batches.append((source, listing))
        return source, listing

    def open(self) -> FlashStore:
        store = FlashStore.open(self.blocktable, self.cs0, self.cs1, self.batches)
        self.stores.append(store)
        return store

    def close(self):
        for store in self.stores:
            store.close()


@pytest.fixture
def dump(tmp_path):
    builder = DumpBuilder(str(tmp_path))
    yield builder
    builder.close()
