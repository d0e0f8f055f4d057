"""Pytest configuration for gcp_installer tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports, and the project root for tests.* stubs
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
for _path in (_SRC, _PROJECT_ROOT):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from datetime import UTC, datetime

import pytest

from gcp_installer.credentials import BearerCredential


@pytest.fixture
def credential():
    return BearerCredential('ya29.test-token')


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)
