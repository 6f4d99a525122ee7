"""FUSE frontend: mounts the virtual file with fusepy."""
from fuse import FUSE, FuseOSError, Operations

from .vfs import VirtualFileServer


def log(msg):
    print(f"[FUSE] {msg}", flush=True)


class LofileOperations(Operations):
    """fusepy callbacks delegating to a VirtualFileServer."""

    def __init__(self, server: VirtualFileServer):
        self.server = server

    def getattr(self, path, fh=None):
        try:
            return self.server.getattr(path)
        except OSError as e:
            raise FuseOSError(e.errno)

    def readdir(self, path, fh):
        try:
            return self.server.readdir(path)
        except OSError as e:
            raise FuseOSError(e.errno)

    def open(self, path, flags):
        try:
            return self.server.open(path, flags)
        except OSError as e:
            raise FuseOSError(e.errno)

    def read(self, path, size, offset, fh):
        try:
            return self.server.read(path, size, offset)
        except OSError as e:
            raise FuseOSError(e.errno)


def parse_mount_options(options) -> dict:
    """Turn ['ro,allow_other', 'fsname=x'] into fusepy keyword arguments."""
    kwargs = {}
    for group in options or ():
        for opt in group.split(','):
            if not opt:
                continue
            key, sep, value = opt.partition('=')
            kwargs[key] = value if sep else True
    return kwargs


def mount(server: VirtualFileServer, mountpoint: str, foreground: bool = True,
          debug: bool = False, options=None):
    """Mount and block until the filesystem is unmounted."""
    kwargs = parse_mount_options(options)
    kwargs.setdefault('fsname', 'flash_lofile')
    # Command-line flags win over the same names given with -o; always read-only
    kwargs.update(ro=True, foreground=foreground, debug=debug)
    log(f"Mounting {server.path} ({server.size} bytes) on {mountpoint}")
    FUSE(LofileOperations(server), mountpoint, **kwargs)
    log("Unmounted")
