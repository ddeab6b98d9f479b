#!/usr/bin/env python3
"""
nbctl Client
Drives a notebook server over its local socket interface.

Responsibilities:
- Build and (optionally) sign one command
- Send it over a single TCP connection
- Skip progress updates until a terminal response arrives
- Print the terminal response and exit
"""

import argparse
import asyncio
import contextlib
import sys
from typing import Callable, Optional

from . import protocol
from .protocol import Command, ProtocolError, Response, ResponseBuffer, UsageError


DEFAULT_HOST = "127.0.0.1"
CHUNK_SIZE = 4096


class NotebookClient:
    def __init__(self, port: int, host: str = DEFAULT_HOST, key: Optional[str] = None,
                 timeout: Optional[float] = None,
                 on_progress: Optional[Callable[[Response], None]] = None,
                 debug: bool = False,
                 max_line_size: int = protocol.MAX_LINE_SIZE):
        self.host = host
        self.port = port
        self.key = key
        self.timeout = timeout
        self.on_progress = on_progress
        self.debug = debug
        self.max_line_size = max_line_size
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None

    @property
    def signed(self) -> bool:
        return self.key is not None

    def _log(self, msg: str):
        if self.debug:
            print(msg, file=sys.stderr)

    async def connect(self) -> None:
        """Open the connection to the server."""
        self.reader, self.writer = await asyncio.open_connection(self.host, self.port)
        self._log(f"[+] Connected to {self.host}:{self.port}")

    async def send_message(self, message: bytes) -> None:
        self.writer.write(message)
        await self.writer.drain()

    async def receive(self) -> Optional[Response]:
        """
        Read until a terminal response arrives.

        Returns None if the server closes the connection first.
        """
        buffer = ResponseBuffer(self.max_line_size)

        while True:
            chunk = await self.reader.read(CHUNK_SIZE)
            if not chunk:
                self._log("[i] Connection closed by server")
                return None

            buffer.feed(chunk)
            for response in buffer:
                if response.is_progress:
                    if self.on_progress is not None:
                        self.on_progress(response)
                    continue
                self._log(f"[i] Response: {response.data!r}")
                return response

    async def close(self) -> None:
        if self.writer is None:
            return
        self.writer.close()
        # the peer may already have reset the connection
        with contextlib.suppress(ConnectionError):
            await self.writer.wait_closed()
        self.writer = None
        self.reader = None
        self._log("[i] Connection closed")

    async def _exchange(self, command: Command) -> Optional[Response]:
        message = protocol.build_message(command, self.key)

        await self.connect()
        try:
            await self.send_message(message)
            return await self.receive()
        except ConnectionResetError:
            # the server may drop the socket before acknowledging a stop
            if command.type != "stop":
                raise
            self._log("[i] Connection reset after stop")
            return None
        finally:
            await self.close()

    async def request(self, command: Command) -> Optional[Response]:
        """Send one command and return the server's terminal response."""
        if self.timeout is None:
            return await self._exchange(command)
        return await asyncio.wait_for(self._exchange(command), self.timeout)


def print_progress(response: Response):
    print(f"[i] {response.raw}", file=sys.stderr)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(prog="nbctl",
                                     description="Send one command to a notebook server")
    parser.add_argument("port", type=int,
                        help="Server port")
    parser.add_argument("command",
                        help="One of: " + ", ".join(protocol.COMMANDS))
    parser.add_argument("notebook", nargs="?",
                        help="Notebook path (run, close, isopen)")
    parser.add_argument("--key", "-k",
                        help="Shared key; signs the message with HMAC-SHA256")
    parser.add_argument("--host", "-H", default=DEFAULT_HOST,
                        help=f"Server address (default: {DEFAULT_HOST})")
    parser.add_argument("--path-policy", choices=protocol.PATH_POLICIES,
                        help="How to treat relative notebook paths "
                             "(default: absolute when signing, resolve otherwise)")
    parser.add_argument("--timeout", "-t", type=float,
                        help="Give up after this many seconds (default: wait forever)")
    parser.add_argument("--progress", action="store_true",
                        help="Echo progress updates to stderr")
    parser.add_argument("--debug", "-d", action="store_true",
                        help="Print connection events and parsed responses to stderr")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    signed = args.key is not None

    try:
        command = protocol.build_command(args.command, args.notebook,
                                         args.path_policy, signed)
    except UsageError as e:
        print(f"[!] {e}", file=sys.stderr)
        sys.exit(1)

    client = NotebookClient(args.port, host=args.host, key=args.key,
                            timeout=args.timeout,
                            on_progress=print_progress if args.progress else None,
                            debug=args.debug)

    try:
        response = asyncio.run(client.request(command))
    except asyncio.TimeoutError:
        print(f"[!] No response within {args.timeout}s", file=sys.stderr)
        sys.exit(1)
    except ProtocolError as e:
        print(f"[!] Protocol error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"[!] Connection failed: {e}", file=sys.stderr)
        sys.exit(1)

    if response is None:
        if command.type == "stop":
            return
        print("[!] Server closed the connection without responding", file=sys.stderr)
        sys.exit(1)

    print(response.raw)


if __name__ == "__main__":
    main()
