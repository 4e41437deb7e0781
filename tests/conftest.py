"""Shared pytest fixtures for ming-mong tests."""

import shutil
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

# Environment variables read by config.load_config
CONFIG_ENV_VARS = (
    'PORT', 'BIND', 'ENABLE_TLS', 'TLS_CERT_FILE', 'TLS_KEY_FILE',
    'TLS_MODE', 'TLS_DOMAIN', 'ACME_EMAIL', 'ACME_TIMEOUT', 'ACME_STAGING',
)


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_openssl when openssl is not installed."""
    if shutil.which('openssl'):
        return
    skip_marker = pytest.mark.skip(reason="requires the openssl CLI")
    for item in items:
        if "requires_openssl" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def fixed_now():
    """A fixed UTC instant: 2024-01-15 10:30:45."""
    return datetime(2024, 1, 15, 10, 30, 45, tzinfo=timezone.utc)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear config environment variables and run from an empty directory."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def self_signed_bundle(tmp_path):
    """Generate a real self-signed certificate (needs openssl)."""
    from provision.tls import generate_self_signed_cert
    return generate_self_signed_cert(
        cert_dir=tmp_path / "certs", hostname="localhost", key_size=2048
    )
