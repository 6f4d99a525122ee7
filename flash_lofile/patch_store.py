"""Sector-range overrides loaded from alternate recovery dumps.

A patch batch is a pair of files: a raw recovery dump (the patch source) and a
patch list naming which sectors of the virtual file should be served from it.
All batches share one table of PATCH_TABLE_SLOTS slots. When two batches patch
the same sector, the one with the higher confidence wins.
"""
import os
import struct
from dataclasses import dataclass
from typing import BinaryIO, List, Optional

from .constants import (
    PATCH_LIST_RECORD, PATCH_BATCH_RECORDS, PATCH_TABLE_SLOTS,
    PATCH_GROUP_SECTORS, PATCH_GROUP_BYTES,
)
from .errors import SetupError

RECORD_SIZE = struct.calcsize(PATCH_LIST_RECORD)
PATCH_LIST_SIZE = RECORD_SIZE * PATCH_BATCH_RECORDS


def log(msg):
    print(f"[Patches] {msg}", flush=True)


def _trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero, as the patch lists were built with."""
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b >= 0) else -q


@dataclass
class PatchEntry:
    """One slot of the patch table. sector == 0 marks a free slot."""
    sector: int = 0
    page: int = 0
    confidence: int = 0
    source: Optional[BinaryIO] = None

    @property
    def in_use(self) -> bool:
        return self.sector != 0

    def group(self) -> int:
        return _trunc_div(self.sector, PATCH_GROUP_SECTORS)


def parse_patch_list(data: bytes) -> List[tuple]:
    """Decode a patch list into its in-use (sector, page, confidence) prefix.

    Records after the first one with sector 0 are ignored.
    """
    records = []
    for sector, page, confidence, _reserved in struct.iter_unpack(PATCH_LIST_RECORD, data):
        if sector == 0:
            break
        records.append((sector, page, confidence))
    return records


class PatchStore:
    """Fixed-size patch table plus the pool of patch source handles it references.

    Source handles stay open until close() so every installed patch can be
    served; the owner closes the store once at shutdown.
    """

    def __init__(self, slots: int = PATCH_TABLE_SLOTS):
        self.slots: List[PatchEntry] = [PatchEntry() for _ in range(slots)]
        self.sources: List[BinaryIO] = []
        self.batches = 0

    def load_batch(self, source_path: str, list_path: str) -> int:
        """Open a patch source and merge its patch list into the table.

        Returns:
            Number of slots installed or replaced by this batch.

        Raises:
            SetupError: either file cannot be opened, or the patch list is
                not exactly PATCH_BATCH_RECORDS records long
        """
        try:
            source = open(source_path, 'rb')
        except OSError as e:
            raise SetupError(f"cannot open patch source {source_path}: {e.strerror}",
                             source_path) from e
        self.sources.append(source)

        try:
            with open(list_path, 'rb') as f:
                data = f.read(PATCH_LIST_SIZE)
                trailing = len(f.read())
        except OSError as e:
            raise SetupError(f"cannot read patch list {list_path}: {e.strerror}",
                             list_path) from e
        if len(data) != PATCH_LIST_SIZE:
            raise SetupError(f"patch list {list_path} is truncated: "
                             f"{len(data)} of {PATCH_LIST_SIZE} bytes", list_path)
        if trailing:
            log(f"WARNING: ignoring {trailing} bytes past the "
                f"{PATCH_BATCH_RECORDS} records of {os.path.basename(list_path)}")

        self.batches += 1
        installed = self.merge(parse_patch_list(data), source)
        log(f"Batch {self.batches}: {os.path.basename(source_path)} via "
            f"{os.path.basename(list_path)}, {installed} patches installed")
        return installed

    def merge(self, records, source: BinaryIO) -> int:
        """Install records with confidence arbitration against existing slots."""
        installed = 0
        for sector, page, confidence in records:
            slot = self._find_slot(sector)
            if slot is None:
                log("*** patch table full!")
                break
            # A free slot competes with confidence 0
            if confidence > slot.confidence:
                log(f"installing patch: sector {sector:x} -> "
                    f"{os.path.basename(source.name)}, pg {page:x}")
                slot.sector = sector
                slot.page = page
                slot.confidence = confidence
                slot.source = source
                installed += 1
        return installed

    def _find_slot(self, sector: int) -> Optional[PatchEntry]:
        for slot in self.slots:
            if not slot.in_use or slot.sector == sector:
                return slot
        return None

    def lookup(self, offset: int) -> Optional[PatchEntry]:
        """Return the first patch covering the given virtual byte offset."""
        group = offset // PATCH_GROUP_BYTES
        for slot in self.slots:
            if slot.in_use and slot.group() == group:
                return slot
        return None

    def in_use(self) -> int:
        return sum(1 for s in self.slots if s.in_use)

    def close(self):
        """Close every pooled patch source."""
        for source in self.sources:
            source.close()
        self.sources = []
