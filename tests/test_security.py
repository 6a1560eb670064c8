import time

import pytest

from confidential.errors import Cancelled
from confidential.security.buffers import SecretBuffer
from confidential.security.cancellation import CancellationToken, check


def test_secret_buffer_wipes_on_exit():
    raw = bytearray(b"session key material")
    with SecretBuffer.adopt(raw) as buf:
        assert buf.to_bytes() == b"session key material"
    assert raw == bytearray(len(raw))
    assert buf.wiped
    with pytest.raises(ValueError):
        buf.buffer


def test_secret_buffer_copies_input():
    data = b"abc"
    buf = SecretBuffer(data)
    buf.wipe()
    assert data == b"abc"
    assert len(buf) == 3
    assert "abc" not in repr(buf)


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    assert token.remaining() is None
    check(token)
    check(None)

    token.cancel("stop")
    assert token.cancelled
    with pytest.raises(Cancelled, match="stop"):
        check(token)


def test_cancellation_deadline():
    token = CancellationToken.with_timeout(0.01)
    time.sleep(0.02)
    assert token.remaining() == 0.0
    with pytest.raises(Cancelled, match="deadline"):
        token.raise_if_cancelled()
