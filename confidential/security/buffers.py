from typing import Optional


class SecretBuffer:
    """
    Owns a mutable copy of sensitive bytes (session keys, plaintext records)
    and zeroes it when released.

    CPython may still hold transient immutable copies made by libraries;
    wiping the buffer we own is the best that can be done in-process.
    """

    def __init__(self, data: Optional[bytes] = None, size: int = 0):
        if data is not None:
            self._buf = bytearray(data)
        else:
            self._buf = bytearray(size)
        self._wiped = False

    @classmethod
    def adopt(cls, data: bytearray) -> "SecretBuffer":
        """Take ownership of an existing bytearray without copying it."""
        rv = cls()
        rv._buf = data
        return rv

    @property
    def buffer(self) -> bytearray:
        if self._wiped:
            raise ValueError("Secret buffer has been wiped")
        return self._buf

    def __len__(self) -> int:
        return len(self._buf)

    def to_bytes(self) -> bytes:
        return bytes(self.buffer)

    def wipe(self):
        for i in range(len(self._buf)):
            self._buf[i] = 0
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.wipe()
        return False

    def __repr__(self) -> str:
        # Never print the content
        return f"SecretBuffer(len={len(self._buf)}, wiped={self._wiped})"
