"""Single-file read-only filesystem over a FlashStore.

The four callbacks (getattr, readdir, open, read) follow the conventions of
userspace filesystem frameworks: paths are absolute, errors are OSError with
an errno, and reads may come back short at end of data.
"""
import errno
import os
import stat
import time

from .constants import DEFAULT_FILE_NAME
from .store import FlashStore
from .translator import translate, trace


def log(msg):
    print(f"[VFS] {msg}", flush=True)


def _error(code: int, path: str) -> OSError:
    return OSError(code, os.strerror(code), path)


class VirtualFileServer:
    """Exposes the reconstructed dump as /<name> in an otherwise empty root."""

    def __init__(self, store: FlashStore, name: str = DEFAULT_FILE_NAME):
        self.store = store
        self.name = name
        self.path = '/' + name
        self.size = store.total_size
        self.mount_time = time.time()

    def getattr(self, path: str) -> dict:
        if path == '/':
            mode, nlink, size = stat.S_IFDIR | 0o555, 2, 0
        elif path == self.path:
            mode, nlink, size = stat.S_IFREG | 0o444, 1, self.size
        else:
            raise _error(errno.ENOENT, path)
        return {
            'st_mode': mode,
            'st_nlink': nlink,
            'st_size': size,
            'st_uid': os.getuid(),
            'st_gid': os.getgid(),
            'st_atime': self.mount_time,
            'st_mtime': self.mount_time,
            'st_ctime': self.mount_time,
        }

    def readdir(self, path: str) -> list:
        if path != '/':
            raise _error(errno.ENOENT, path)
        return ['.', '..', self.name]

    def open(self, path: str, flags: int) -> int:
        if path != self.path:
            raise _error(errno.ENOENT, path)
        if flags & os.O_ACCMODE != os.O_RDONLY:
            raise _error(errno.EACCES, path)
        return 0

    def read(self, path: str, size: int, offset: int) -> bytes:
        if path != self.path:
            raise _error(errno.ENOENT, path)
        return self.read_at(offset, size)

    def read_at(self, offset: int, size: int) -> bytes:
        """Read up to size bytes at offset; short only at end of data."""
        trace(f"read request: offset {offset:08x}, size {size:08x}")
        result = bytearray()
        while size > 0:
            chunk = self._read_extent(offset, size)
            if not chunk:
                break
            result += chunk
            size -= len(chunk)
            offset += len(chunk)
        return bytes(result)

    def _read_extent(self, offset: int, size: int) -> bytes:
        extent = translate(self.store, offset, size)
        if extent.empty:
            return b''
        if extent.zero_fill:
            return bytes(extent.length)
        try:
            return os.pread(extent.source.fileno(), extent.length, extent.offset)
        except OSError as e:
            log(f"read of {extent.length} bytes at {extent.offset:#x} from "
                f"{extent.source.name} failed: {e}")
            return b''
