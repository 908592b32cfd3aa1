"""Tests for the MLLP listener, using real loopback sockets."""

import json
import socket
import threading
import time

import pytest

import hl7_receiver
from hl7_receiver import MLLPListener, main, run_listener
from hl7_sender import SenderConfig, send_message
from mllp import START_BLOCK, BufferOverflowError, MLLPDecoder, encode


def _config(listener, **kwargs):
    return SenderConfig(host="127.0.0.1", port=listener.port, timeout_ms=3000, **kwargs)


def _read_frames(sock, count=1, timeout=3.0):
    sock.settimeout(timeout)
    decoder = MLLPDecoder()
    frames = []
    while len(frames) < count:
        data = sock.recv(4096)
        if not data:
            break
        frames.extend(decoder.feed(data))
    return frames


def _read_frame(sock):
    frames = _read_frames(sock)
    return frames[0] if frames else None


@pytest.fixture
def listener():
    received = []
    errors = []
    instance = MLLPListener(
        port=0,
        host="127.0.0.1",
        callback=received.append,
        on_error=lambda peer, exc: errors.append(exc),
        max_pending_bytes=256,
        poll_interval=0.1,
    )
    instance.received = received
    instance.errors = errors
    instance.start()
    yield instance
    instance.stop()


def test_receives_message_and_acknowledges(listener, adt_a01):
    ack = send_message(adt_a01, _config(listener))

    assert ack is not None
    assert "MSA|AA|1" in ack
    received = listener.received[0]
    assert received.text == adt_a01
    assert received.peer[0] == "127.0.0.1"


def test_line_endings_are_converted_before_sending(listener):
    send_message("MSH|^~\\&|A|B|C|D|x||ADT^A01|7|P|2.3\nPID|1\n", _config(listener))
    received = listener.received[0]

    assert received.text == "MSH|^~\\&|A|B|C|D|x||ADT^A01|7|P|2.3\rPID|1\r"


def test_several_messages_on_one_connection(listener):
    with socket.create_connection(("127.0.0.1", listener.port), timeout=3) as sock:
        sock.sendall(encode(b"MSH|^~\\&|A|B|C|D|x||ADT^A01|1|P|2.3\r") + encode(b"MSH|^~\\&|A|B|C|D|x||ADT^A01|2|P|2.3\r"))
        first, second = _read_frames(sock, count=2)

    assert b"MSA|AA|1" in first
    assert b"MSA|AA|2" in second
    texts = [m.text for m in listener.received]
    assert [t.split("|")[9] for t in texts] == ["1", "2"]


def test_slow_peer_does_not_block_others(listener, adt_a01):
    with socket.create_connection(("127.0.0.1", listener.port), timeout=3) as slow:
        slow.sendall(START_BLOCK + b"MSH|^~\\&|partial")
        ack = send_message(adt_a01, _config(listener))
        assert "MSA|AA" in ack

        slow.sendall(b"\x1c\x0d")
        assert b"MSA|AA" in _read_frame(slow)


def test_overflow_resets_only_that_connection(listener, adt_a01):
    with socket.create_connection(("127.0.0.1", listener.port), timeout=3) as bad:
        bad.sendall(START_BLOCK + b"x" * 1000)
        bad.settimeout(3)
        try:
            data = bad.recv(4096)
        except ConnectionResetError:
            data = b""
        assert data == b""

    deadline = time.monotonic() + 3
    while not listener.errors and time.monotonic() < deadline:
        time.sleep(0.05)
    assert isinstance(listener.errors[0], BufferOverflowError)

    assert "MSA|AA" in send_message(adt_a01, _config(listener))


def test_callback_failure_is_answered_with_error_ack(adt_a01):
    def explode(message):
        raise RuntimeError("boom")

    with MLLPListener(port=0, host="127.0.0.1", callback=explode, poll_interval=0.1) as listener:
        ack = send_message(adt_a01, _config(listener))

    assert "MSA|AE|1" in ack


def test_stop_closes_open_connections(adt_a01):
    listener = MLLPListener(port=0, host="127.0.0.1", poll_interval=0.1)
    listener.start()
    client = socket.create_connection(("127.0.0.1", listener.port), timeout=3)
    try:
        client.sendall(encode(adt_a01.encode()))
        assert _read_frame(client) is not None

        listener.stop()

        client.settimeout(3)
        try:
            data = client.recv(4096)
        except ConnectionResetError:
            data = b""
        assert data == b""
    finally:
        client.close()


def test_port_is_reusable_after_stop():
    first = MLLPListener(port=0, host="127.0.0.1", poll_interval=0.1)
    first.start()
    port = first.port
    with socket.create_connection(("127.0.0.1", port), timeout=3):
        pass
    first.stop()

    second = MLLPListener(port=port, host="127.0.0.1", poll_interval=0.1)
    second.start()
    try:
        assert second.port == port
    finally:
        second.stop()


def test_stop_is_idempotent():
    listener = MLLPListener(port=0, host="127.0.0.1", poll_interval=0.1)
    listener.start()
    listener.stop()
    listener.stop()

    assert not listener.running
    assert listener.server_socket is None


def test_stop_before_start():
    MLLPListener(port=0).stop()


def test_no_connection_serviced_after_stop():
    listener = MLLPListener(port=0, host="127.0.0.1", poll_interval=0.1)
    listener.start()
    port = listener.port
    listener.stop()

    with pytest.raises(OSError):
        socket.create_connection(("127.0.0.1", port), timeout=1)
    assert not any(t.name == f"mllp-listener-{port}" and t.is_alive() for t in threading.enumerate())


def test_bind_failure_propagates():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)
    try:
        with pytest.raises(OSError):
            MLLPListener(port=blocker.getsockname()[1], host="127.0.0.1").start()
    finally:
        blocker.close()


def _wait_for(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while not condition() and time.monotonic() < deadline:
        time.sleep(0.05)
    return condition()


def test_frames_before_an_overflow_are_still_delivered(listener, adt_a01):
    with socket.create_connection(("127.0.0.1", listener.port), timeout=3) as bad:
        bad.sendall(encode(adt_a01.encode()) + START_BLOCK + b"x" * 1000)
        assert _wait_for(lambda: listener.errors)

    assert isinstance(listener.errors[0], BufferOverflowError)
    assert [m.text for m in listener.received] == [adt_a01]


def test_callback_consumes_messages_without_queueing(listener, adt_a01):
    for _ in range(5):
        send_message(adt_a01, _config(listener))

    assert len(listener.received) == 5
    assert listener.message_queue.empty()


def test_queue_holds_messages_without_callback(adt_a01):
    with MLLPListener(port=0, host="127.0.0.1", poll_interval=0.1) as listener:
        send_message(adt_a01, _config(listener))
        received = listener.message_queue.get(timeout=3)

    assert received.text == adt_a01


def test_main_takes_defaults_from_preferences(tmp_path, monkeypatch):
    prefs = tmp_path / "prefs.json"
    prefs.write_text(json.dumps({"default_listener_port": 6001, "socket_encoding": "latin-1", "max_pending_bytes": 2048}))
    calls = []
    monkeypatch.setattr(hl7_receiver, "run_listener", lambda *args: calls.append(args))

    main(["--preferences", str(prefs)])
    main(["--preferences", str(prefs), "--port", "7000", "--encoding", "utf-8"])

    assert calls == [
        ("0.0.0.0", 6001, None, "latin-1", 2048),
        ("0.0.0.0", 7000, None, "utf-8", 2048),
    ]


def test_run_listener_passes_the_pending_byte_cap(monkeypatch):
    created = []

    class FakeListener:
        def __init__(self, **kwargs):
            self.kwargs = kwargs
            self.stopped = False
            created.append(self)

        def start(self):
            pass

        def stop(self):
            self.stopped = True

    def interrupt(seconds):
        raise KeyboardInterrupt

    monkeypatch.setattr(hl7_receiver, "MLLPListener", FakeListener)
    monkeypatch.setattr(hl7_receiver.time, "sleep", interrupt)

    run_listener("127.0.0.1", 6001, None, "utf-8", max_pending_bytes=4096)

    assert created[0].kwargs["max_pending_bytes"] == 4096
    assert created[0].kwargs["port"] == 6001
    assert created[0].stopped
