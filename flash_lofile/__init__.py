# flash_lofile
# Presents a dual-plane flash dump as a single read-only file via FUSE or NBD

from .errors import SetupError
from .forward_map import ForwardMap, ForwardMapEntry, load_forward_map
from .patch_store import PatchEntry, PatchStore
from .store import FlashStore
from .translator import Extent, translate
from .vfs import VirtualFileServer

__all__ = ['SetupError', 'ForwardMap', 'ForwardMapEntry', 'load_forward_map',
           'PatchEntry', 'PatchStore', 'FlashStore', 'Extent', 'translate',
           'VirtualFileServer']
