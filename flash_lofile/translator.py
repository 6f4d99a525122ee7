"""Logical byte offset -> physical extent.

A logical block of the virtual file is 512 pages of 8 x 1024-byte sectors.
On the chip its pages are split across two planes, each dumped to its own
channel file, and every physical sector carries 70 spare bytes that are
skipped here:

    split      = (page >> 1) + ((page & 1) << 8)
    channel    = split & 1
    final_page = split >> 1
    offset     = (phys * 256 + final_page) * 8832 + sector * 1094 + sector_offset

A patch covering the offset replaces the channel read with a read of the
patch's source page. Every extent stops at the next 1024-byte boundary.
"""
from dataclasses import dataclass
from typing import BinaryIO, Optional, TYPE_CHECKING

from .constants import (
    BLOCK_SECTOR_BYTES, PAGE_BYTES, PAGE_GROUP_BYTES, LOGICAL_BLOCK_BYTES,
    PHYSICAL_SECTOR_STRIDE, PAGES_PER_PLANE_BLOCK,
)

if TYPE_CHECKING:
    from .store import FlashStore

_trace_enabled = False


def set_trace(enabled: bool):
    """Enable per-request tracing of the translation path."""
    global _trace_enabled
    _trace_enabled = enabled


def trace(msg):
    if _trace_enabled:
        print(f"[Translate] {msg}", flush=True)


@dataclass(frozen=True)
class Extent:
    """A single contiguous piece of a read.

    source is None for zero-fill. channel is 0 or 1 when the bytes come from
    a plane dump and None for zero-fill or patch reads.
    """
    source: Optional[BinaryIO]
    offset: int
    length: int
    channel: Optional[int] = None

    @property
    def zero_fill(self) -> bool:
        return self.source is None

    @property
    def empty(self) -> bool:
        return self.length == 0


END_OF_DATA = Extent(None, 0, 0)


def deinterleave(page: int):
    """Map a logical page (0..511) to (channel, page within plane block)."""
    split = (page >> 1) + ((page & 1) << 8)
    return split & 1, split >> 1


def translate(store: 'FlashStore', offset: int, length: int) -> Extent:
    """Describe where the bytes at a virtual offset live.

    The returned extent never crosses a BLOCK_SECTOR_BYTES boundary and is
    empty only when offset is past the end of the virtual file.
    """
    if offset >= store.total_size:
        return END_OF_DATA

    sector_offset = offset % BLOCK_SECTOR_BYTES
    length = min(length, BLOCK_SECTOR_BYTES - sector_offset)

    block = offset // LOGICAL_BLOCK_BYTES
    entry = store.forward_map[block]
    if entry.confidence < 0:
        trace(f"*** no mapping for block {block:04x}")
        return Extent(None, 0, length)
    trace(f"  rq for block {block:04x}, phys {entry.physical_block:04x}, "
          f"confidence {entry.confidence}")

    sector = offset % PAGE_GROUP_BYTES // BLOCK_SECTOR_BYTES
    within_sector = sector * PHYSICAL_SECTOR_STRIDE + sector_offset

    patch = store.patches.lookup(offset)
    if patch is not None:
        trace(f"  applying patch pg {patch.page:x} for sector {patch.sector:x}")
        return Extent(patch.source, patch.page * PAGE_BYTES + within_sector, length)

    page = offset % LOGICAL_BLOCK_BYTES // PAGE_GROUP_BYTES
    channel, final_page = deinterleave(page)
    trace(f"    offset {offset:08x} -> virtblock {block:04x}, cs {channel}, "
          f"pg {final_page:02x}, sec {sector}, secofs {sector_offset:02x}")

    physical = ((entry.physical_block * PAGES_PER_PLANE_BLOCK + final_page) * PAGE_BYTES
                + within_sector)
    return Extent(store.channels[channel], physical, length, channel)
