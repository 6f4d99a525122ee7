"""NBD export driven over a socketpair."""
import socket
import struct

import pytest

from flash_lofile.constants import LOGICAL_BLOCK_BYTES, PAGE_BYTES
from flash_lofile.nbd_server import (
    NBDServer, NBD_CMD_DISC, NBD_CMD_READ, NBD_CMD_WRITE, NBD_FLAG_READ_ONLY,
    NBD_OPT_EXPORT_NAME, NBD_OPTS_MAGIC, NBD_REPLY_MAGIC, NBD_REQUEST_MAGIC, EPERM,
)
from flash_lofile.vfs import VirtualFileServer

from conftest import write_at


@pytest.fixture
def nbd(dump):
    dump.forward_map([(2, 5), (3, -1)])
    write_at(dump.cs0, 2 * 256 * PAGE_BYTES, b'hello')
    server = NBDServer(VirtualFileServer(dump.open()))
    ours, theirs = socket.socketpair()
    yield server, ours, theirs
    ours.close()
    theirs.close()


def _request(sock, cmd, offset, length, handle=7, payload=b''):
    sock.sendall(struct.pack('>IHHQQI', NBD_REQUEST_MAGIC, 0, cmd, handle, offset, length) + payload)


def _reply(sock, length=0):
    data = NBDServer._recv_exact(sock, 16 + length)
    magic, error, handle = struct.unpack('>IIQ', data[:16])
    assert magic == NBD_REPLY_MAGIC
    return error, handle, data[16:]


def test_export_name_handshake(nbd):
    server, ours, theirs = nbd
    theirs.sendall(struct.pack('>I', 1))
    theirs.sendall(struct.pack('>QII', NBD_OPTS_MAGIC, NBD_OPT_EXPORT_NAME, 0))

    assert server._do_handshake(ours)

    greeting = NBDServer._recv_exact(theirs, 18)
    assert greeting[:8] == b'NBDMAGIC'
    size, flags = struct.unpack('>QH', NBDServer._recv_exact(theirs, 10))
    assert size == 2 * LOGICAL_BLOCK_BYTES
    assert flags & NBD_FLAG_READ_ONLY
    assert NBDServer._recv_exact(theirs, 124) == bytes(124)


def test_read_request(nbd):
    server, ours, theirs = nbd
    _request(theirs, NBD_CMD_READ, 0, 8)

    assert server._handle_request(ours)
    error, handle, data = _reply(theirs, 8)
    assert error == 0
    assert handle == 7
    assert data == b'hello\x00\x00\x00'


def test_read_past_end_is_padded(nbd):
    server, ours, theirs = nbd
    _request(theirs, NBD_CMD_READ, 2 * LOGICAL_BLOCK_BYTES - 4, 16)

    assert server._handle_request(ours)
    error, _, data = _reply(theirs, 16)
    assert error == 0
    assert data == bytes(16)


def test_write_is_refused(nbd):
    server, ours, theirs = nbd
    _request(theirs, NBD_CMD_WRITE, 0, 4, payload=b'evil')

    assert server._handle_request(ours)
    error, _, data = _reply(theirs)
    assert error == EPERM
    assert data == b''


def test_disconnect(nbd):
    server, ours, theirs = nbd
    _request(theirs, NBD_CMD_DISC, 0, 0)
    assert not server._handle_request(ours)
