#!/usr/bin/env python3
"""Send one HL7 message to a remote host over MLLP/TCP, optionally over TLS."""

from __future__ import annotations

import argparse
import logging
import socket
import ssl
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

from mllp import BufferOverflowError, MLLPDecoder, encode, to_segment_terminators
from preferences import Preferences, load_preferences

logger = logging.getLogger(__name__)

DEFAULT_PORT = 2575


class SendError(Exception):
    def __init__(self, host: str, port: int, reason: str):
        super().__init__(f"{host}:{port}: {reason}")
        self.host = host
        self.port = port
        self.reason = reason


class ConnectTimeoutError(SendError):
    """Could not connect within the timeout (refused, unreachable or timed out)."""


class TLSHandshakeError(SendError):
    """The TLS handshake failed, including certificate validation."""


class WriteError(SendError):
    """The connection was open but the frame could not be written."""


@dataclass
class SenderConfig:
    host: str
    port: int
    timeout_ms: int = 5000
    use_tls: bool = False
    ignore_cert_error: bool = False
    encoding: str = "utf-8"

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0


def _tls_context(ignore_cert_error: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if ignore_cert_error:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _connect(config: SenderConfig) -> socket.socket:
    try:
        sock = socket.create_connection((config.host, config.port), timeout=config.timeout)
    except OSError as exc:
        raise ConnectTimeoutError(config.host, config.port, str(exc) or type(exc).__name__) from exc

    if not config.use_tls:
        return sock
    try:
        return _tls_context(config.ignore_cert_error).wrap_socket(sock, server_hostname=config.host)
    except (ssl.SSLError, ssl.CertificateError, OSError) as exc:
        sock.close()
        raise TLSHandshakeError(config.host, config.port, str(exc) or type(exc).__name__) from exc


def _read_ack(sock: socket.socket, encoding: str, timeout: float) -> Optional[str]:
    """Wait for one acknowledgement frame. ``timeout`` bounds the whole wait, not each read."""
    decoder = MLLPDecoder()
    deadline = time.monotonic() + timeout
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("no acknowledgement received before timeout")
                return None
            sock.settimeout(remaining)
            data = sock.recv(4096)
            if not data:
                return None
            frames = decoder.feed(data)
            if frames:
                return frames[0].decode(encoding, errors="replace")
    except socket.timeout:
        logger.warning("no acknowledgement received before timeout")
    except (OSError, BufferOverflowError) as exc:
        logger.warning("failed to read acknowledgement: %s", exc)
    return None


def send_message(
    message: str,
    config: SenderConfig,
    eol: Optional[str] = None,
    wait_for_ack: bool = True,
) -> Optional[str]:
    """Frame and send ``message`` once. No retry.

    ``config.timeout`` bounds connecting, and separately the write plus the
    wait for an acknowledgement.

    Returns the decoded acknowledgement, or ``None`` when none arrived.
    Raises ConnectTimeoutError, TLSHandshakeError or WriteError.
    """
    payload = to_segment_terminators(message, eol).encode(config.encoding)
    frame = encode(payload)
    logger.info("sending %d bytes to %s:%s (tls=%s)", len(frame), config.host, config.port, config.use_tls)

    with _connect(config) as sock:
        deadline = time.monotonic() + config.timeout
        try:
            sock.sendall(frame)
        except OSError as exc:
            raise WriteError(config.host, config.port, str(exc) or type(exc).__name__) from exc
        if not wait_for_ack:
            return None
        return _read_ack(sock, config.encoding, deadline - time.monotonic())


def build_config(args: argparse.Namespace, prefs: Preferences) -> SenderConfig:
    """Command line flags win over a favourite host entry, which wins over preferences."""
    favourite = prefs.favourite(args.host) or {}

    def pick(flag, key, default):
        if flag is not None:
            return flag
        return favourite.get(key, default)

    return SenderConfig(
        host=favourite.get("host", args.host),
        port=pick(args.port, "port", DEFAULT_PORT),
        timeout_ms=pick(args.timeout_ms, "timeout_ms", prefs.connection_timeout_ms),
        use_tls=args.tls or bool(favourite.get("use_tls", False)),
        ignore_cert_error=args.ignore_cert_error or bool(favourite.get("ignore_cert_error", False)),
        encoding=args.encoding or prefs.socket_encoding,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Send an HL7 message over MLLP")
    parser.add_argument("file", help="HL7 message file ('-' for stdin)")
    parser.add_argument("--preferences", default=None, help="JSON preferences file")
    parser.add_argument("--host", default="127.0.0.1", help="host name, address or favourite host name")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--timeout-ms", type=int, default=None, help="default: connection_timeout preference")
    parser.add_argument("--tls", action="store_true")
    parser.add_argument("--ignore-cert-error", action="store_true")
    parser.add_argument("--encoding", default=None, help="default: socket_encoding preference")
    parser.add_argument("--no-ack", action="store_true", help="do not wait for an acknowledgement")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    config = build_config(args, load_preferences(args.preferences))

    if args.file == "-":
        message = sys.stdin.read()
    else:
        with open(args.file, "r", encoding=config.encoding, newline="") as fh:
            message = fh.read()

    try:
        ack = send_message(message, config, wait_for_ack=not args.no_ack)
    except SendError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    if ack:
        print(ack.replace("\r", "\n"))
    return 0


if __name__ == "__main__":
    sys.exit(main())
