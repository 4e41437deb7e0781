"""Tests for provision/tls.py - certificate material."""

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from provision.tls import (
    DEFAULT_CERT_DAYS,
    DEFAULT_KEY_SIZE,
    CertificateBundle,
    CertificateSource,
    build_san_entries,
    generate_self_signed_cert,
    get_cert_fingerprint,
    get_hostname,
    get_primary_ip,
)


def _make_cert(tmp_path, name="test"):
    """Create a throwaway certificate and key with openssl."""
    cert_path = tmp_path / f"{name}.crt"
    key_path = tmp_path / f"{name}.key"
    subprocess.run(
        [
            "openssl", "req",
            "-x509", "-nodes",
            "-newkey", "rsa:2048",
            "-keyout", str(key_path),
            "-out", str(cert_path),
            "-days", "1",
            "-subj", "/CN=test",
        ],
        check=True,
        capture_output=True,
    )
    return cert_path, key_path


def _cert_text(cert_path):
    result = subprocess.run(
        ["openssl", "x509", "-in", str(cert_path), "-noout", "-text"],
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout


class TestCertificateBundle:
    """Tests for CertificateBundle dataclass."""

    @pytest.mark.requires_openssl
    def test_from_paths_success(self, tmp_path):
        """from_paths creates a bundle from existing files."""
        cert_path, key_path = _make_cert(tmp_path)

        bundle = CertificateBundle.from_paths(cert_path, key_path)

        assert bundle.cert_path == cert_path
        assert bundle.key_path == key_path
        assert bundle.source is CertificateSource.PROVIDED
        assert ":" in bundle.fingerprint

    @pytest.mark.requires_openssl
    def test_from_paths_source(self, tmp_path):
        cert_path, key_path = _make_cert(tmp_path)
        bundle = CertificateBundle.from_paths(cert_path, key_path, CertificateSource.PUBLIC_AUTO)
        assert bundle.source is CertificateSource.PUBLIC_AUTO

    def test_from_paths_cert_not_found(self, tmp_path):
        """from_paths raises FileNotFoundError for missing cert."""
        key_path = tmp_path / "test.key"
        key_path.touch()

        with pytest.raises(FileNotFoundError) as exc_info:
            CertificateBundle.from_paths(tmp_path / "nonexistent.crt", key_path)
        assert "Certificate not found" in str(exc_info.value)

    def test_from_paths_key_not_found(self, tmp_path):
        """from_paths raises FileNotFoundError for missing key."""
        cert_path = tmp_path / "test.crt"
        cert_path.touch()

        with pytest.raises(FileNotFoundError) as exc_info:
            CertificateBundle.from_paths(cert_path, tmp_path / "nonexistent.key")
        assert "Key not found" in str(exc_info.value)


@pytest.mark.requires_openssl
class TestGetCertFingerprint:
    """Tests for get_cert_fingerprint function."""

    def test_fingerprint_format(self, tmp_path):
        """Fingerprint has correct format (hex with colons)."""
        cert_path, _ = _make_cert(tmp_path)

        fingerprint = get_cert_fingerprint(cert_path)

        # SHA256 fingerprint should have 64 hex chars + 31 colons
        assert len(fingerprint) == 95
        assert fingerprint.count(":") == 31
        for part in fingerprint.split(":"):
            int(part, 16)

    def test_fingerprint_invalid_cert(self, tmp_path):
        """get_cert_fingerprint raises on invalid certificate."""
        cert_path = tmp_path / "invalid.crt"
        cert_path.write_text("not a certificate")

        with pytest.raises(subprocess.CalledProcessError):
            get_cert_fingerprint(cert_path)


class TestHelperFunctions:
    """Tests for helper functions."""

    def test_get_hostname(self):
        hostname = get_hostname()
        assert isinstance(hostname, str)
        assert len(hostname) > 0

    def test_get_primary_ip_returns_ip_or_none(self):
        ip = get_primary_ip()
        if ip is not None:
            parts = ip.split(".")
            assert len(parts) == 4
            for part in parts:
                assert 0 <= int(part) <= 255

    def test_get_primary_ip_handles_socket_error(self):
        """get_primary_ip returns None on socket error."""
        with patch("socket.socket") as mock_socket:
            mock_socket.return_value.connect.side_effect = OSError("Network error")
            assert get_primary_ip() is None

    def test_san_entries_always_cover_loopback(self):
        assert build_san_entries("localhost") == ["DNS:localhost", "IP:127.0.0.1", "IP:::1"]

    def test_san_entries_with_hostname_and_ip(self):
        entries = build_san_entries("pinger", "10.0.12.100")
        assert entries[:3] == ["DNS:localhost", "IP:127.0.0.1", "IP:::1"]
        assert "DNS:pinger" in entries
        assert "IP:10.0.12.100" in entries

    def test_san_entries_skip_duplicate_loopback(self):
        entries = build_san_entries("localhost", "127.0.0.1")
        assert entries.count("IP:127.0.0.1") == 1
        assert entries.count("DNS:localhost") == 1

    def test_defaults(self):
        assert DEFAULT_CERT_DAYS == 365
        assert DEFAULT_KEY_SIZE == 2048


@pytest.mark.requires_openssl
class TestGenerateSelfSignedCert:
    """Tests for generate_self_signed_cert function."""

    def test_generates_new_cert(self, tmp_path):
        """Creates cert and key files with restrictive key permissions."""
        bundle = generate_self_signed_cert(cert_dir=tmp_path, hostname="test-host", days=1)

        assert bundle.cert_path.exists()
        assert bundle.key_path.exists()
        assert bundle.source is CertificateSource.SELF_SIGNED
        assert len(bundle.fingerprint) == 95

        assert bundle.key_path.stat().st_mode & 0o777 == 0o600
        assert bundle.cert_path.stat().st_mode & 0o777 == 0o644

    def test_fresh_each_start(self, tmp_path):
        """Every call generates a new key pair."""
        first = generate_self_signed_cert(cert_dir=tmp_path / "a", hostname="test")
        second = generate_self_signed_cert(cert_dir=tmp_path / "b", hostname="test")
        assert first.fingerprint != second.fingerprint

    def test_temporary_directory_by_default(self):
        bundle = generate_self_signed_cert(hostname="test")
        try:
            assert bundle.cert_path.parent.name.startswith("ming-mong-tls-")
            assert bundle.cert_path.exists()
        finally:
            bundle.cert_path.unlink()
            bundle.key_path.unlink()
            bundle.cert_path.parent.rmdir()

    def test_creates_directory(self, tmp_path):
        nested_dir = tmp_path / "nested" / "cert" / "dir"

        bundle = generate_self_signed_cert(cert_dir=nested_dir, hostname="test")

        assert nested_dir.exists()
        assert bundle.cert_path.exists()

    def test_san_covers_loopback_and_hostname(self, tmp_path):
        bundle = generate_self_signed_cert(cert_dir=tmp_path, hostname="my-pinger")
        text = _cert_text(bundle.cert_path)

        assert "DNS:localhost" in text
        assert "IP Address:127.0.0.1" in text
        assert "DNS:my-pinger" in text

    def test_includes_san_with_ip(self, tmp_path):
        with patch("provision.tls.get_primary_ip", return_value="10.0.12.100"):
            bundle = generate_self_signed_cert(cert_dir=tmp_path, hostname="my-pinger")

        assert "IP Address:10.0.12.100" in _cert_text(bundle.cert_path)

    def test_openssl_failure(self, tmp_path):
        """An openssl error propagates to the caller."""
        with pytest.raises(subprocess.CalledProcessError):
            generate_self_signed_cert(cert_dir=tmp_path, hostname="test", key_size=1)
