"""Shared fixtures: a one-shot TCP server running in a thread."""

import contextlib
import socket
import struct
import threading
import time

import pytest


class ScriptedServer:
    """
    Accepts one connection, records the request line and runs a handler.

    Bytes the client sent after the request line, as collected by the
    handler, are kept in ``trailing``.
    """

    def __init__(self, handler):
        self.handler = handler
        self.request = None
        self.trailing = None
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(("127.0.0.1", 0))
        self.sock.listen(1)
        self.port = self.sock.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)
        self.thread.start()

    def _serve(self):
        conn, _ = self.sock.accept()
        data = b""
        while b"\n" not in data:
            chunk = conn.recv(4096)
            if not chunk:
                break
            data += chunk
        end = data.find(b"\n") + 1 or len(data)
        self.request, extra = data[:end], data[end:]
        rest = self.handler(conn)
        if rest is not None:
            self.trailing = extra + rest

    def close(self):
        self.thread.join(timeout=5)
        self.sock.close()


def send_chunks(*chunks, delay=0.05):
    """
    Handler that writes each chunk separately and half-closes.

    Returns the bytes the client sent after its first line.
    """
    def handler(conn):
        rest = b""
        # the client hangs up as soon as it sees a terminal message
        with conn, contextlib.suppress(OSError):
            for chunk in chunks:
                conn.sendall(chunk)
                time.sleep(delay)
            conn.shutdown(socket.SHUT_WR)
            conn.settimeout(5)
            while True:
                data = conn.recv(4096)
                if not data:
                    break
                rest += data
        return rest
    return handler


def reset(conn):
    """Handler that aborts the connection with a TCP RST."""
    conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    conn.close()


@pytest.fixture
def serve():
    servers = []

    def start(handler):
        server = ScriptedServer(handler)
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.close()
