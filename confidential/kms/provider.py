from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from confidential.errors import Cancelled
from confidential.security.cancellation import CancellationToken


class WrappedKeyRejected(Exception):
    """The key service refused the wrapped key as invalid ciphertext."""


class DecrypterUnavailable(Exception):
    """The key service could not be reached or refused to serve the request."""


class RSADecrypter(ABC):
    """Abstract wrapping-key service: wrapped session key in, session key out."""

    @abstractmethod
    def decrypt(self, ciphertext: bytes, cancellation: Optional[CancellationToken] = None) -> bytes:
        """Return the unwrapped (RSA-OAEP-SHA-256) session key.

        Raise WrappedKeyRejected when the ciphertext does not decrypt under
        the key, DecrypterUnavailable for any service-side failure.
        """

    def __call__(self, ciphertext: bytes, cancellation: Optional[CancellationToken] = None) -> bytes:
        return self.decrypt(ciphertext, cancellation)


class CallableDecrypter(RSADecrypter):
    """Adapts a plain `bytes -> bytes` function.

    A ValueError from the function (what `cryptography` raises on a failed
    OAEP check) counts as a rejected key; anything else as an unavailable
    service.
    """

    def __init__(self, fn: Callable[[bytes], bytes]):
        self.fn = fn

    def decrypt(self, ciphertext: bytes, cancellation: Optional[CancellationToken] = None) -> bytes:
        try:
            return self.fn(ciphertext)
        except (WrappedKeyRejected, DecrypterUnavailable, Cancelled):
            raise
        except ValueError:
            raise WrappedKeyRejected("wrapped key does not decrypt under this key")
        except Exception as e:
            raise DecrypterUnavailable(f"decrypter failed: {type(e).__name__}")


DecrypterLike = Union[RSADecrypter, Callable[[bytes], bytes]]


def as_decrypter(value: DecrypterLike) -> RSADecrypter:
    if isinstance(value, RSADecrypter):
        return value
    if callable(value):
        return CallableDecrypter(value)
    raise TypeError(f"Not a decrypter: {type(value).__name__}")
