import threading
from typing import Callable, Dict

from confidential.kms.coordinates import WrappingKeyCoordinate
from confidential.kms.provider import DecrypterLike, RSADecrypter, as_decrypter

DecrypterFactory = Callable[[WrappingKeyCoordinate], DecrypterLike]


class WrappingKeyClientCache:
    """
    Decrypters keyed by `vault/key/version`, owned by one consumer instance.

    Entries are populated on first use under a lock and never replaced or
    evicted, so lookups after the first populate read the dict without locking.
    """

    def __init__(self, factory: DecrypterFactory):
        self._factory = factory
        self._clients: Dict[str, RSADecrypter] = {}
        self._lock = threading.Lock()

    def get(self, coordinate: WrappingKeyCoordinate) -> RSADecrypter:
        key = coordinate.cache_key()
        client = self._clients.get(key)
        if client is not None:
            return client

        with self._lock:
            client = self._clients.get(key)
            if client is None:
                client = as_decrypter(self._factory(coordinate))
                self._clients[key] = client
        return client

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, coordinate: WrappingKeyCoordinate) -> bool:
        return coordinate.cache_key() in self._clients
