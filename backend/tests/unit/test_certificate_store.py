"""
Unit tests for the certificate bundle store.

Tests: write (atomic swap, replacement, pruning, legacy migration),
       validate_pair, certificate info and expiry checks.
"""
import os
from unittest.mock import patch

import pytest

from ssltunnel.errors import PersistenceError
from ssltunnel.storage import (
    CERTIFICATE_FILE,
    CHAIN_FILE,
    PRIVATE_KEY_FILE,
    CertificateBundle,
    CertificateStore,
)
from tests.fakes import make_bundle


@pytest.fixture
def store(tmp_path):
    return CertificateStore(tmp_path / "ssl")


def _read(store):
    return (
        store.cert_path.read_text(),
        store.key_path.read_text(),
        store.chain_path.read_text(),
    )


class TestWrite:
    """Tests for CertificateStore.write()."""

    def test_writes_three_artifacts(self, store):
        """All three fixed paths resolve to the bundle contents."""
        bundle = make_bundle()
        store.write(bundle)

        assert _read(store) == (bundle.cert_pem, bundle.key_pem, bundle.chain_pem)
        assert store.has_certificate()

    def test_fixed_paths_point_into_live(self, store):
        """The fixed paths are symlinks into live/, which points at an archived bundle."""
        store.write(make_bundle())

        for name in (CERTIFICATE_FILE, PRIVATE_KEY_FILE, CHAIN_FILE):
            assert os.readlink(store.ssl_dir / name) == os.path.join("live", name)
        assert os.readlink(store.live_path) == os.path.join("archive", "bundle-0001")

    def test_file_permissions(self, store):
        """Private key is owner-only; the directory is not world readable."""
        store.write(make_bundle())

        assert os.stat(store.key_path).st_mode & 0o777 == 0o600
        assert os.stat(store.cert_path).st_mode & 0o777 == 0o640
        assert os.stat(store.ssl_dir).st_mode & 0o777 == 0o700

    def test_replaces_previous_bundle(self, store):
        """A second write fully replaces the first."""
        first = make_bundle()
        second = make_bundle()
        store.write(first)
        store.write(second)

        assert _read(store) == (second.cert_pem, second.key_pem, second.chain_pem)
        assert os.readlink(store.live_path) == os.path.join("archive", "bundle-0002")

    def test_link_failure_after_swap_is_not_fatal(self, store):
        """Once live/ points at the new bundle, later link errors are only logged."""
        first = make_bundle()
        second = make_bundle()
        store.write(first)

        with patch.object(store, "_ensure_links", side_effect=OSError("boom")):
            store.write(second)

        assert os.readlink(store.live_path) == os.path.join("archive", "bundle-0002")
        assert _read(store) == (second.cert_pem, second.key_pem, second.chain_pem)
        assert store.archive_dir.joinpath("bundle-0002").is_dir()

    def test_mismatched_key_leaves_previous_bundle(self, store):
        """A bundle whose key does not match its certificate is rejected untouched."""
        good = make_bundle()
        store.write(good)
        other = make_bundle()
        broken = CertificateBundle(
            cert_pem=other.cert_pem,
            key_pem=good.key_pem,
            chain_pem=other.chain_pem,
        )

        with pytest.raises(PersistenceError, match="does not match"):
            store.write(broken)

        assert _read(store) == (good.cert_pem, good.key_pem, good.chain_pem)
        assert sorted(p.name for p in store.archive_dir.iterdir()) == ["bundle-0001"]

    def test_garbage_certificate_rejected(self, store):
        """Unparseable PEM never reaches the disk."""
        bundle = make_bundle()
        broken = CertificateBundle(cert_pem="not a cert", key_pem=bundle.key_pem, chain_pem="")

        with pytest.raises(PersistenceError):
            store.write(broken)

        assert not store.has_certificate()

    def test_swap_failure_keeps_previous_bundle(self, store):
        """If the live swap fails, readers still see the old bundle and the new one is discarded."""
        good = make_bundle()
        store.write(good)

        with patch("ssltunnel.storage.os.replace", side_effect=OSError("read-only filesystem")):
            with pytest.raises(PersistenceError, match="read-only filesystem"):
                store.write(make_bundle())

        assert _read(store) == (good.cert_pem, good.key_pem, good.chain_pem)
        assert sorted(p.name for p in store.archive_dir.iterdir()) == ["bundle-0001"]

    def test_prunes_old_versions(self, store):
        """Only keep_versions archived bundles remain, including the live one."""
        for _ in range(4):
            store.write(make_bundle())

        assert sorted(p.name for p in store.archive_dir.iterdir()) == [
            "bundle-0003",
            "bundle-0004",
        ]
        assert os.readlink(store.live_path) == os.path.join("archive", "bundle-0004")

    def test_migrates_plain_files(self, store):
        """Plain artifact files from an older layout are replaced by links."""
        store.ssl_dir.mkdir(parents=True)
        for name in (CERTIFICATE_FILE, PRIVATE_KEY_FILE, CHAIN_FILE):
            (store.ssl_dir / name).write_text("old")

        bundle = make_bundle()
        store.write(bundle)

        assert os.path.islink(store.cert_path)
        assert _read(store) == (bundle.cert_pem, bundle.key_pem, bundle.chain_pem)

    def test_load_bundle(self, store):
        """load_bundle returns the stored bundle with its expiry."""
        bundle = make_bundle()
        store.write(bundle)

        loaded = store.load_bundle()
        assert loaded.cert_pem == bundle.cert_pem
        assert loaded.key_pem == bundle.key_pem
        assert loaded.expires_at == bundle.expires_at

    def test_load_bundle_without_certificate(self, store):
        assert store.load_bundle() is None


class TestCertificateInfo:
    """Tests for certificate parsing and expiry checks."""

    def test_info_for_stored_certificate(self, store):
        """Subject, issuer and domains are extracted."""
        store.write(make_bundle("mygateway.example.com"))

        info = store.get_certificate_info()
        assert info.is_valid
        assert info.subject == "mygateway.example.com"
        assert info.issuer == "Fake Test CA"
        assert info.domains == ["mygateway.example.com"]
        assert not info.is_expired()

    def test_no_certificate(self, store):
        assert store.get_certificate_info() is None
        assert store.is_expiring_soon() is False

    def test_not_expiring_soon(self, store):
        store.write(make_bundle(days=90))

        assert 88 <= store.get_certificate_info().days_until_expiry() <= 90
        assert store.is_expiring_soon(days=14) is False

    def test_expiring_soon(self, store):
        store.write(make_bundle(days=10))

        assert store.is_expiring_soon(days=14) is True

    def test_parse_invalid_certificate(self, store):
        info = store.parse_certificate(b"garbage")

        assert info.is_valid is False
        assert info.validation_error

    def test_validate_pair_matching(self, store):
        bundle = make_bundle()

        info = store.validate_pair(bundle.cert_pem.encode(), bundle.key_pem.encode())
        assert info.is_valid

    def test_validate_pair_bad_key(self, store):
        bundle = make_bundle()

        info = store.validate_pair(bundle.cert_pem.encode(), b"not a key")
        assert info.is_valid is False
        assert "Cannot load private key" in info.validation_error
