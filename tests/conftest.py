from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


class DummyLogger:
    def __init__(self) -> None:
        self.info_calls: list[tuple[tuple, dict]] = []
        self.warning_calls: list[tuple[tuple, dict]] = []
        self.error_calls: list[tuple[tuple, dict]] = []

    def info(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.info_calls.append((args, kwargs))

    def warning(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.warning_calls.append((args, kwargs))

    def error(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.error_calls.append((args, kwargs))

    def exception(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.error_calls.append((args, kwargs))

    def debug(self, *args, **kwargs) -> None:  # noqa: ANN001
        return None


@pytest.fixture
def dummy_logger() -> DummyLogger:
    return DummyLogger()


@pytest.fixture(scope="session")
def rsa_key_pair() -> tuple[str, str]:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def anyio_backend():
    return "asyncio"
