"""Command-line entry point.

Usage:
    flash-lofile blocktable cs0.bin cs1.bin \
        [+ patchsource.bin patchlist.bin]... \
        /mnt/lofile [-f] [-o allow_other]

    flash-lofile blocktable cs0.bin cs1.bin --nbd --port 10809

Patch batches are merged in the order given; later batches only replace
earlier patches for the same sector when their confidence is higher.
"""
import argparse
import signal
import sys
from typing import List, Tuple

from .constants import DEFAULT_FILE_NAME
from .errors import SetupError
from .store import FlashStore
from .translator import set_trace
from .vfs import VirtualFileServer


def log(msg):
    print(f"[Lofile] {msg}", flush=True)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='flash-lofile',
        usage='%(prog)s blocktable cs0 cs1 [+ patchfile patchlist]* '
              '[mountpoint] [options]',
        description='Expose a dual-plane flash dump as one read-only file',
    )
    parser.add_argument('mountpoint', nargs='?',
                        help='Where to mount the FUSE filesystem')
    parser.add_argument('-f', '--foreground', action='store_true',
                        help='Stay in the foreground')
    parser.add_argument('-d', '--debug', action='store_true',
                        help='Enable FUSE debug output (implies -f)')
    parser.add_argument('-o', dest='options', action='append', default=[],
                        help='FUSE mount options, comma separated')
    parser.add_argument('--name', default=DEFAULT_FILE_NAME,
                        help=f'Name of the exposed file (default: {DEFAULT_FILE_NAME})')
    parser.add_argument('--nbd', action='store_true',
                        help='Serve over NBD instead of mounting with FUSE')
    parser.add_argument('--host', default='127.0.0.1',
                        help='NBD listen address (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=10809,
                        help='NBD port (default: 10809)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Trace every read through the translator')
    return parser


def split_invocation(argv: List[str]) -> Tuple[Tuple[str, str, str], List[Tuple[str, str]], List[str]]:
    """Split argv into (core files, patch batches, frontend arguments).

    Raises:
        ValueError: fewer than three core files, or a '+' without two paths
    """
    if len(argv) < 3:
        raise ValueError('blocktable, cs0 and cs1 are required')
    core = (argv[0], argv[1], argv[2])
    rest = argv[3:]
    batches = []
    while rest and rest[0] == '+':
        if len(rest) < 3:
            raise ValueError("'+' must be followed by a patch file and a patch list")
        batches.append((rest[1], rest[2]))
        rest = rest[3:]
    return core, batches, rest


def main(argv=None):
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else argv
    try:
        (blocktable, cs0, cs1), batches, rest = split_invocation(argv)
    except ValueError as e:
        parser.error(str(e))
    args = parser.parse_args(rest)
    if not args.nbd and not args.mountpoint:
        parser.error('a mountpoint is required unless --nbd is given')

    set_trace(args.verbose)

    try:
        store = FlashStore.open(blocktable, cs0, cs1, batches)
    except SetupError as e:
        log(f"ERROR: {e}")
        sys.exit(1)

    server = VirtualFileServer(store, name=args.name)
    try:
        if args.nbd:
            _serve_nbd(server, args.host, args.port)
        else:
            from .fuse_mount import mount
            mount(server, args.mountpoint,
                  foreground=args.foreground or args.debug,
                  debug=args.debug, options=args.options)
    finally:
        store.close()


def _serve_nbd(server: VirtualFileServer, host: str, port: int):
    from .nbd_server import NBDServer

    nbd = NBDServer(server, host=host, port=port)

    def signal_handler(sig, frame):
        log("Signal received, stopping...")
        nbd.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    nbd.start()


if __name__ == '__main__':
    main()
