"""Address translation against the flash geometry."""
import pytest

from flash_lofile.constants import LOGICAL_BLOCK_BYTES, PAGE_BYTES, PAGE_GROUP_BYTES
from flash_lofile.translator import deinterleave, translate


def test_worked_example(dump):
    dump.forward_map([(2, 5)])
    store = dump.open()

    extent = translate(store, 0, 1024)
    assert extent.channel == 0
    assert extent.source is store.channels[0]
    assert extent.offset == 2 * 256 * PAGE_BYTES == 4521984
    assert extent.length == 1024


def test_length_is_clipped_to_sector_boundary(dump):
    dump.forward_map([(2, 5)])
    store = dump.open()

    extent = translate(store, 1000, 4096)
    assert extent.length == 24
    assert extent.offset == 2 * 256 * PAGE_BYTES + 1000


def test_sector_stride_skips_spare_bytes(dump):
    dump.forward_map([(2, 5)])
    store = dump.open()

    extent = translate(store, 3 * 1024 + 5, 10)
    assert extent.offset == 2 * 256 * PAGE_BYTES + 3 * (1024 + 70) + 5
    assert extent.length == 10


@pytest.mark.parametrize('page, channel, final_page', [
    (0, 0, 0),
    (1, 0, 128),
    (2, 1, 0),
    (3, 1, 128),
    (4, 0, 1),
    (511, 1, 255),
])
def test_deinterleave(page, channel, final_page):
    assert deinterleave(page) == (channel, final_page)


def test_odd_page_reads_second_half_of_plane_block(dump):
    dump.forward_map([(0, 1), (1, 1)])
    store = dump.open()

    # Block 1, page 3 -> channel 1, page 128 of physical block 1
    offset = LOGICAL_BLOCK_BYTES + 3 * PAGE_GROUP_BYTES
    extent = translate(store, offset, 1024)
    assert extent.channel == 1
    assert extent.source is store.channels[1]
    assert extent.offset == (1 * 256 + 128) * PAGE_BYTES


def test_unmapped_block_is_zero_fill(dump):
    dump.forward_map([(2, 5), (9, -1)])
    store = dump.open()

    extent = translate(store, LOGICAL_BLOCK_BYTES + 100, 4096)
    assert extent.zero_fill
    assert extent.length == 924


def test_end_of_data(dump):
    dump.forward_map([(2, 5)])
    store = dump.open()

    assert translate(store, LOGICAL_BLOCK_BYTES, 1024).empty
    assert translate(store, LOGICAL_BLOCK_BYTES + 1, 1024).empty


def test_patch_redirects_to_source_page(dump):
    dump.forward_map([(2, 5)])
    dump.add_batch('recovered', [(0x10, 5, 3)])
    store = dump.open()

    offset = PAGE_GROUP_BYTES + 2 * 1024 + 7
    extent = translate(store, offset, 100)
    assert extent.channel is None
    assert extent.source is store.patches.slots[0].source
    assert extent.offset == 5 * PAGE_BYTES + 2 * (1024 + 70) + 7
    assert extent.length == 100

    # The neighbouring page group is untouched
    assert translate(store, 0, 100).channel == 0


def test_patch_does_not_apply_to_unmapped_block(dump):
    dump.forward_map([(2, -1)])
    dump.add_batch('recovered', [(0x1, 5, 3)])
    store = dump.open()

    assert translate(store, 0, 1024).zero_fill


def test_translation_is_repeatable(dump):
    dump.forward_map([(2, 5), (3, 1)])
    dump.add_batch('recovered', [(0x20, 1, 3)])
    store = dump.open()

    for offset in (0, 777, 2 * PAGE_GROUP_BYTES + 12, LOGICAL_BLOCK_BYTES + 5000):
        assert translate(store, offset, 600) == translate(store, offset, 600)
