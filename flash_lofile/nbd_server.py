"""Read-only NBD export of the reconstructed dump.

Serves the same bytes as the FUSE mount, for hosts where a block device is
more convenient (e.g. attaching the image with nbd-client and running
filesystem tools on /dev/nbdX).
"""
import socket
import struct
import threading
import traceback
from typing import Optional

from .vfs import VirtualFileServer

# NBD protocol constants
NBD_REQUEST_MAGIC = 0x25609513
NBD_REPLY_MAGIC = 0x67446698
NBD_REP_MAGIC = 0x3e889045565a9
NBD_INIT_MAGIC = b'NBDMAGIC'
NBD_OPTS_MAGIC = 0x49484156454F5054  # IHAVEOPT
NBD_OPT_EXPORT_NAME = 1
NBD_OPT_ABORT = 2
NBD_OPT_LIST = 3
NBD_OPT_INFO = 6
NBD_OPT_GO = 7

NBD_INFO_EXPORT = 0
NBD_INFO_NAME = 1
NBD_INFO_BLOCK_SIZE = 3

NBD_FLAG_HAS_FLAGS = (1 << 0)
NBD_FLAG_READ_ONLY = (1 << 1)
NBD_FLAG_SEND_FLUSH = (1 << 2)
NBD_FLAG_SEND_TRIM = (1 << 5)

NBD_CMD_READ = 0
NBD_CMD_WRITE = 1
NBD_CMD_DISC = 2
NBD_CMD_FLUSH = 3
NBD_CMD_TRIM = 4

NBD_REP_ACK = 1
NBD_REP_SERVER = 2
NBD_REP_INFO = 3
NBD_REP_ERR_UNSUP = (1 << 31) + 1

EPERM = 1
EIO = 5
EINVAL = 22

EXPORT_FLAGS = NBD_FLAG_HAS_FLAGS | NBD_FLAG_READ_ONLY | NBD_FLAG_SEND_FLUSH

REQUEST_HEADER = '>IHHQQI'
REQUEST_HEADER_SIZE = struct.calcsize(REQUEST_HEADER)

# Largest read a client may ask for in one request
MAX_PAYLOAD = 32 * 1024 * 1024


def log(msg):
    thread_id = threading.current_thread().name
    print(f"[NBD {thread_id}] {msg}", flush=True)


class NBDServer:
    """Serves a VirtualFileServer's file as a read-only NBD export."""

    def __init__(self, server: VirtualFileServer,
                 host: str = '127.0.0.1', port: int = 10809):
        self.vfs = server
        self.host = host
        self.port = port
        self.size = server.size
        self.running = False
        self.server_socket: Optional[socket.socket] = None

        log(f"Export {server.name}: {self.size} bytes ({self.size / 1024 / 1024:.1f} MB), read-only")

    def start(self):
        """Accept clients until stop() is called, one thread per client."""
        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((self.host, self.port))
        self.server_socket.listen(5)
        self.running = True

        log(f"Listening on {self.host}:{self.port}")

        while self.running:
            try:
                client_socket, addr = self.server_socket.accept()
            except OSError as e:
                if self.running:
                    log(f"Socket error in accept: {e}")
                    raise
                break
            log(f"Connection from {addr}")
            thread = threading.Thread(
                target=self._handle_client,
                args=(client_socket, addr),
                name=f"Client-{addr[1]}",
                daemon=True,
            )
            thread.start()

    def stop(self):
        self.running = False
        if self.server_socket:
            self.server_socket.close()

    def _handle_client(self, sock: socket.socket, addr):
        try:
            if self._do_handshake(sock):
                while self._handle_request(sock):
                    pass
        except (ConnectionError, ValueError) as e:
            log(f"Client error: {type(e).__name__}: {e}")
        except Exception as e:
            log(f"Unhandled exception in client handler: {type(e).__name__}: {e}")
            traceback.print_exc()
        finally:
            sock.close()
            log(f"Client {addr} disconnected")

    def _do_handshake(self, sock: socket.socket) -> bool:
        """Newstyle handshake. Returns True once the client enters transmission."""
        sock.sendall(NBD_INIT_MAGIC)
        sock.sendall(struct.pack('>Q', NBD_OPTS_MAGIC))
        sock.sendall(struct.pack('>H', NBD_FLAG_HAS_FLAGS))

        client_flags = struct.unpack('>I', self._recv_exact(sock, 4))[0]
        log(f"Client flags: {client_flags}")

        while True:
            opt_magic, opt_type, opt_len = struct.unpack('>QII', self._recv_exact(sock, 16))
            if opt_magic != NBD_OPTS_MAGIC:
                raise ValueError(f"Bad option magic: {opt_magic:x}")
            opt_data = self._recv_exact(sock, opt_len) if opt_len else b''

            if opt_type == NBD_OPT_EXPORT_NAME:
                sock.sendall(struct.pack('>QH', self.size, EXPORT_FLAGS) + b'\x00' * 124)
                return True

            elif opt_type in (NBD_OPT_GO, NBD_OPT_INFO):
                export_name, requested_info = self._parse_info_request(opt_data)
                log(f"{'GO' if opt_type == NBD_OPT_GO else 'INFO'}: "
                    f"export='{export_name}', info={requested_info}")

                info = struct.pack('>HQH', NBD_INFO_EXPORT, self.size, EXPORT_FLAGS)
                self._send_option_reply(sock, opt_type, NBD_REP_INFO, info)
                block_info = struct.pack('>HIII', NBD_INFO_BLOCK_SIZE, 1, 1024, MAX_PAYLOAD)
                self._send_option_reply(sock, opt_type, NBD_REP_INFO, block_info)
                if NBD_INFO_NAME in requested_info:
                    name_info = struct.pack('>H', NBD_INFO_NAME) + self.vfs.name.encode('utf-8')
                    self._send_option_reply(sock, opt_type, NBD_REP_INFO, name_info)
                self._send_option_reply(sock, opt_type, NBD_REP_ACK, b'')
                if opt_type == NBD_OPT_GO:
                    return True

            elif opt_type == NBD_OPT_ABORT:
                self._send_option_reply(sock, opt_type, NBD_REP_ACK, b'')
                return False

            elif opt_type == NBD_OPT_LIST:
                name = self.vfs.name.encode('utf-8')
                self._send_option_reply(sock, opt_type, NBD_REP_SERVER,
                                        struct.pack('>I', len(name)) + name)
                self._send_option_reply(sock, opt_type, NBD_REP_ACK, b'')

            else:
                log(f"Unknown option {opt_type}, sending ERR_UNSUP")
                self._send_option_reply(sock, opt_type, NBD_REP_ERR_UNSUP, b'')

    @staticmethod
    def _parse_info_request(opt_data: bytes):
        """Split OPT_GO/OPT_INFO payload into (export name, info types)."""
        if len(opt_data) < 4:
            return '', []
        name_len = struct.unpack('>I', opt_data[:4])[0]
        export_name = opt_data[4:4 + name_len].decode('utf-8', errors='replace')
        rest = opt_data[4 + name_len:]
        if len(rest) < 2:
            return export_name, []
        count = struct.unpack('>H', rest[:2])[0]
        types = [struct.unpack('>H', rest[2 + i * 2:4 + i * 2])[0]
                 for i in range(count) if len(rest) >= 4 + i * 2]
        return export_name, types

    @staticmethod
    def _recv_exact(sock: socket.socket, length: int) -> bytes:
        data = b''
        while len(data) < length:
            chunk = sock.recv(length - len(data))
            if not chunk:
                raise ConnectionError(f"Socket closed, got {len(data)}/{length} bytes")
            data += chunk
        return data

    @staticmethod
    def _send_option_reply(sock: socket.socket, opt_type: int, reply_type: int, data: bytes):
        sock.sendall(struct.pack('>QIII', NBD_REP_MAGIC, opt_type, reply_type, len(data)) + data)

    def _handle_request(self, sock: socket.socket) -> bool:
        """Serve one request. Returns False when the connection should close."""
        header = self._recv_exact(sock, REQUEST_HEADER_SIZE)
        magic, flags, cmd, handle, offset, length = struct.unpack(REQUEST_HEADER, header)
        if magic != NBD_REQUEST_MAGIC:
            log(f"Bad request magic {magic:x}")
            return False

        error = 0
        data = b''

        if cmd == NBD_CMD_READ:
            if length > MAX_PAYLOAD:
                error = EINVAL
            else:
                try:
                    data = self._do_read(offset, length)
                except Exception as e:
                    log(f"READ offset={offset} len={length} failed: {type(e).__name__}: {e}")
                    traceback.print_exc()
                    error = EIO
        elif cmd == NBD_CMD_WRITE:
            # Payload must still be drained to keep the stream in sync
            self._recv_exact(sock, length)
            error = EPERM
        elif cmd == NBD_CMD_DISC:
            return False
        elif cmd in (NBD_CMD_FLUSH, NBD_CMD_TRIM):
            pass
        else:
            log(f"Unknown command {cmd}, returning EINVAL")
            error = EINVAL

        sock.sendall(struct.pack('>IIQ', NBD_REPLY_MAGIC, error, handle) + data)
        return True

    def _do_read(self, offset: int, length: int) -> bytes:
        """NBD replies carry exactly length bytes, so pad past end of data."""
        data = self.vfs.read_at(offset, length)
        if len(data) < length:
            data += bytes(length - len(data))
        return data
