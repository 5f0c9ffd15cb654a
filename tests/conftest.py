"""
Pytest configuration and fixtures for Dropshare tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import pytest

from dropshare import crypto
from dropshare.registry import PeerRegistry


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="dropshare_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def make_file(temp_dir: Path) -> Callable[[str, bytes], Path]:
    """
    Factory writing a file with the given contents into the temp directory.

    Returns:
        Callable taking (name, data) and returning the file path
    """

    def _make(name: str, data: bytes) -> Path:
        path = temp_dir / name
        path.write_bytes(data)
        return path

    return _make


@pytest.fixture
def pattern_data() -> Callable[[int], bytes]:
    """Deterministic non-repeating-per-chunk test payload of a given size."""

    def _data(size: int) -> bytes:
        return bytes((i * 7 + i // 251) % 256 for i in range(size))

    return _data


@pytest.fixture
def keyed_registry() -> PeerRegistry:
    """
    Registry holding one verified peer ("peer-a") with a real shared key.

    Returns:
        PeerRegistry: Registry with session key material in place
    """
    local = crypto.generate_key_agreement_pair()
    remote = crypto.generate_key_agreement_pair()
    signing = crypto.generate_signing_pair()

    registry = PeerRegistry()
    registry.register("peer-a", name="Alice")
    registry.record_peer_public_keys("peer-a", remote.public_key, signing.public_key)
    registry.derive_and_store_shared_key("peer-a", local.private_key)
    registry.mark_verified("peer-a")
    return registry


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.path):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to the end-to-end session tests
        if "integration" in str(item.path):
            item.add_marker(pytest.mark.integration)
