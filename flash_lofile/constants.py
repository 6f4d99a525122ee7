"""Flash geometry shared by the translator and the loaders."""

# Physical page as dumped, data plus spare area for all 8 sectors
PAGE_BYTES = 8832

# Logical sector size used by the forward-map path
BLOCK_SECTOR_BYTES = 1024
SECTORS_PER_GROUP = 8
PAGES_PER_BLOCK = 512

# ECC/spare bytes trailing every physical sector (skipped, never exposed)
SPARE_BYTES_PER_SECTOR = 70

PAGE_GROUP_BYTES = BLOCK_SECTOR_BYTES * SECTORS_PER_GROUP          # 8192
LOGICAL_BLOCK_BYTES = PAGE_GROUP_BYTES * PAGES_PER_BLOCK           # 4 MiB
PHYSICAL_SECTOR_STRIDE = BLOCK_SECTOR_BYTES + SPARE_BYTES_PER_SECTOR

# Each plane holds half of a logical block's pages
PAGES_PER_PLANE_BLOCK = PAGES_PER_BLOCK // 2

# Patch lists address 512-byte sectors, grouped 16 at a time. This is
# deliberately not BLOCK_SECTOR_BYTES.
PATCH_SECTOR_BYTES = 512
PATCH_GROUP_SECTORS = 0x10
PATCH_GROUP_BYTES = PATCH_SECTOR_BYTES * PATCH_GROUP_SECTORS

PATCH_BATCH_RECORDS = 256
PATCH_TABLE_SLOTS = PATCH_BATCH_RECORDS * 2

# On-disk record layouts (little-endian)
FORWARD_MAP_RECORD = '<Hh'      # physical block, confidence
PATCH_LIST_RECORD = '<iiii'     # sector, page, confidence, reserved

DEFAULT_FILE_NAME = 'lofile'
