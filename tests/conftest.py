import pytest

from support import FakeIdentityProvider, MemoryStorageClient, make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def memory_storage(settings):
    return MemoryStorageClient(settings)


@pytest.fixture
def identity():
    return FakeIdentityProvider()
