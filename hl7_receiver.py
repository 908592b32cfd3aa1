#!/usr/bin/env python3
"""HL7 MLLP/TCP listener. One thread per connection, each with its own buffer."""

from __future__ import annotations

import argparse
import logging
import queue
import socket
import struct
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Set, Tuple

from mllp import DEFAULT_MAX_PENDING_BYTES, BufferOverflowError, MLLPDecoder, build_ack, encode
from preferences import load_preferences

logger = logging.getLogger(__name__)

Peer = Tuple[str, int]


@dataclass
class ReceivedMessage:
    text: str
    peer: Peer
    received_at: datetime = field(default_factory=datetime.now)


class MLLPListener:
    """Threaded MLLP server. Messages go to ``callback`` when one is given, otherwise onto ``message_queue``."""

    def __init__(
        self,
        port: int,
        host: str = "0.0.0.0",
        callback: Optional[Callable[[ReceivedMessage], None]] = None,
        on_error: Optional[Callable[[Peer, Exception], None]] = None,
        encoding: str = "utf-8",
        max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES,
        poll_interval: float = 0.5,
    ):
        self.host = host
        self.port = port
        self.callback = callback
        self.on_error = on_error
        self.encoding = encoding
        self.max_pending_bytes = max_pending_bytes
        self.poll_interval = poll_interval
        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.message_queue: "queue.Queue[ReceivedMessage]" = queue.Queue()
        self._lock = threading.Lock()
        self._connections: Set[socket.socket] = set()
        self._workers: Set[threading.Thread] = set()

    @property
    def address(self) -> Peer:
        return self.host, self.port

    def start(self) -> None:
        """Bind and start accepting. Bind errors propagate to the caller."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(8)
            sock.settimeout(self.poll_interval)
        except OSError:
            sock.close()
            raise
        self.port = sock.getsockname()[1]
        with self._lock:
            self.server_socket = sock
            self.running = True
        self.thread = threading.Thread(target=self._run_server, name=f"mllp-listener-{self.port}", daemon=True)
        self.thread.start()
        logger.info("listener started on %s:%s", self.host, self.port)

    def stop(self) -> None:
        """Close the listening socket and every open connection. Safe to call twice."""
        with self._lock:
            was_running = self.running
            self.running = False
            server_socket, self.server_socket = self.server_socket, None
            connections = list(self._connections)
            self._connections.clear()
            workers = list(self._workers)

        if server_socket is not None:
            _close(server_socket)
        for conn in connections:
            _close(conn)

        current = threading.current_thread()
        if self.thread is not None and self.thread is not current:
            self.thread.join(timeout=3)
        for worker in workers:
            if worker is not current:
                worker.join(timeout=3)
        if was_running:
            logger.info("listener on port %s stopped", self.port)

    def __enter__(self) -> "MLLPListener":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()

    def _run_server(self) -> None:
        while self.running:
            server_socket = self.server_socket
            if server_socket is None:
                break
            try:
                client_socket, peer = server_socket.accept()
            except socket.timeout:
                continue
            except OSError:
                break

            with self._lock:
                if not self.running:
                    _close(client_socket)
                    break
                client_socket.settimeout(self.poll_interval)
                self._connections.add(client_socket)
                worker = threading.Thread(
                    target=self._handle_client, args=(client_socket, peer), name=f"mllp-conn-{peer[1]}", daemon=True
                )
                self._workers.add(worker)
            logger.info("connection from %s:%s", peer[0], peer[1])
            worker.start()

    def _handle_client(self, client_socket: socket.socket, peer: Peer) -> None:
        decoder = MLLPDecoder(self.max_pending_bytes)
        try:
            while self.running:
                try:
                    data = client_socket.recv(4096)
                except socket.timeout:
                    continue
                if not data:
                    break
                for payload in decoder.feed(data):
                    self._dispatch(client_socket, payload, peer)
        except BufferOverflowError as exc:
            logger.error("protocol error from %s:%s: %s", peer[0], peer[1], exc)
            self._flush(client_socket, exc.messages, peer)
            self._report(peer, exc)
            _reset(client_socket)
        except OSError as exc:
            if self.running:
                logger.error("connection error from %s:%s: %s", peer[0], peer[1], exc)
                self._report(peer, exc)
        finally:
            with self._lock:
                self._connections.discard(client_socket)
                self._workers.discard(threading.current_thread())
            _close(client_socket)
            logger.info("connection from %s:%s closed", peer[0], peer[1])

    def _dispatch(self, client_socket: socket.socket, payload: bytes, peer: Peer) -> None:
        text = payload.decode(self.encoding, errors="replace")
        received = ReceivedMessage(text=text, peer=peer)
        code = "AA"
        if self.callback:
            try:
                self.callback(received)
            except Exception:
                logger.exception("message handler failed for message from %s:%s", peer[0], peer[1])
                code = "AE"
        else:
            self.message_queue.put(received)
        logger.debug("received %d bytes from %s:%s", len(payload), peer[0], peer[1])
        client_socket.sendall(encode(build_ack(text, code).encode(self.encoding)))

    def _flush(self, client_socket: socket.socket, payloads: List[bytes], peer: Peer) -> None:
        """Dispatch frames that completed before an overflow, ahead of the reset."""
        try:
            for payload in payloads:
                self._dispatch(client_socket, payload, peer)
        except OSError as exc:
            logger.error("could not acknowledge %s:%s before reset: %s", peer[0], peer[1], exc)

    def _report(self, peer: Peer, exc: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(peer, exc)
        except Exception:
            logger.exception("error handler failed")


def _close(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def _reset(sock: socket.socket) -> None:
    """Abort the connection with RST instead of an orderly close."""
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    except OSError:
        pass
    sock.close()


def run_listener(
    host: str,
    port: int,
    output_dir: Optional[str],
    encoding: str,
    max_pending_bytes: int = DEFAULT_MAX_PENDING_BYTES,
) -> None:
    out = Path(output_dir) if output_dir else None
    if out:
        out.mkdir(parents=True, exist_ok=True)

    def on_message(msg: ReceivedMessage) -> None:
        logger.info("message from %s:%s (%d chars)", msg.peer[0], msg.peer[1], len(msg.text))
        if out:
            name = msg.received_at.strftime("%Y%m%d%H%M%S%f") + ".hl7"
            (out / name).write_text(msg.text.replace("\r", "\n"), encoding=encoding)
        else:
            print(msg.text.replace("\r", "\n"))

    listener = MLLPListener(
        port=port, host=host, callback=on_message, encoding=encoding, max_pending_bytes=max_pending_bytes
    )
    listener.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping listener...")
        listener.stop()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="HL7 MLLP listener")
    parser.add_argument("--preferences", default=None, help="JSON preferences file")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=None, help="default: default_listener_port preference")
    parser.add_argument("--output-dir", default=None, help="write each message to a file here")
    parser.add_argument("--encoding", default=None, help="default: socket_encoding preference")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    prefs = load_preferences(args.preferences)
    run_listener(
        args.host,
        args.port if args.port is not None else prefs.default_listener_port,
        args.output_dir,
        args.encoding or prefs.socket_encoding,
        prefs.max_pending_bytes,
    )


if __name__ == "__main__":
    main()
