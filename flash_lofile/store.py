"""Everything a read needs, loaded once at startup.

FlashStore owns the forward map, the patch table and the two channel dumps.
Nothing in it changes after open() returns, so readers on any thread can
share one instance without locking.
"""
import os
from typing import BinaryIO, Iterable, Optional, Tuple

from .errors import SetupError
from .forward_map import ForwardMap, load_forward_map
from .patch_store import PatchStore


def log(msg):
    print(f"[Store] {msg}", flush=True)


def _open_channel(path: str, index: int) -> BinaryIO:
    try:
        return open(path, 'rb')
    except OSError as e:
        raise SetupError(f"cannot open channel {index} dump {path}: {e.strerror}", path) from e


class FlashStore:
    """Forward map, patch table and channel handles for one dump."""

    def __init__(self, forward_map: ForwardMap, channels: Tuple[BinaryIO, BinaryIO],
                 patches: Optional[PatchStore] = None):
        self.forward_map = forward_map
        self.channels = tuple(channels)
        self.patches = patches if patches is not None else PatchStore()
        self.total_size = forward_map.total_size()

    @classmethod
    def open(cls, blocktable: str, channel0: str, channel1: str,
             patch_batches: Iterable[Tuple[str, str]] = ()) -> 'FlashStore':
        """Load the blocktable, open both channels, then merge patch batches in order.

        Raises:
            SetupError: any input is missing or malformed
        """
        forward_map = load_forward_map(blocktable)
        channels = []
        patches = PatchStore()
        try:
            for index, path in enumerate((channel0, channel1)):
                channels.append(_open_channel(path, index))
            for source_path, list_path in patch_batches:
                patches.load_batch(source_path, list_path)
        except SetupError:
            for f in channels:
                f.close()
            patches.close()
            raise

        log(f"Channels: {os.path.basename(channel0)}, {os.path.basename(channel1)}")
        log(f"Patch table: {patches.in_use()} entries from {patches.batches} batches")
        return cls(forward_map, (channels[0], channels[1]), patches)

    def close(self):
        """Release channel and patch source handles at shutdown."""
        for f in self.channels:
            f.close()
        self.patches.close()
