import pytest

from confidential.kms.local_rsa import LocalRSADecrypter

HINT = "wrapping-vault/envelope-wrapping-key/0123456789abcdef/RSA-OAEP-256"
NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(scope="session")
def wrapping_key():
    return LocalRSADecrypter.generate()


@pytest.fixture(scope="session")
def other_wrapping_key():
    return LocalRSADecrypter.generate()


@pytest.fixture
def clock():
    return FakeClock()
