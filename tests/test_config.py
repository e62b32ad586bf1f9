"""
Tests for config.py — CA presets, comma-separated lists and validators.
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from config import CA_PRESETS, Settings


def _settings(**overrides) -> Settings:
    """Settings from explicit values only (no .env file)."""
    return Settings(_env_file=None, **overrides)


class TestDirectoryResolution:
    """CA_PROVIDER → ACME_DIRECTORY_URL."""

    def test_preset_wins_over_directory_url(self):
        s = _settings(CA_PROVIDER="letsencrypt", ACME_DIRECTORY_URL="https://ignored.test/dir")
        assert s.ACME_DIRECTORY_URL == CA_PRESETS["letsencrypt"]

    def test_custom_uses_directory_url(self):
        s = _settings(CA_PROVIDER="custom", ACME_DIRECTORY_URL="https://localhost:14000/dir")
        assert s.ACME_DIRECTORY_URL == "https://localhost:14000/dir"

    def test_custom_without_url_rejected(self):
        with pytest.raises(ValidationError, match="ACME_DIRECTORY_URL"):
            _settings(CA_PROVIDER="custom", ACME_DIRECTORY_URL="")

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            _settings(CA_PROVIDER="acme-r-us")


class TestLists:
    """Comma-separated values from init kwargs and the environment."""

    def test_csv_string(self):
        s = _settings(CA_PROVIDER="letsencrypt", MANAGED_DOMAINS="a.example, b.example,,")
        assert s.MANAGED_DOMAINS == ["a.example", "b.example"]

    def test_csv_from_environment(self, monkeypatch):
        monkeypatch.setenv("MANAGED_DOMAINS", "a.example,b.example")
        monkeypatch.setenv("DNS_RESOLVERS", "1.1.1.1,8.8.8.8:53")
        s = _settings(CA_PROVIDER="letsencrypt")
        assert s.MANAGED_DOMAINS == ["a.example", "b.example"]
        assert s.DNS_RESOLVERS == ["1.1.1.1", "8.8.8.8:53"]

    def test_json_list_from_environment(self, monkeypatch):
        monkeypatch.setenv("EXCLUDED_CHALLENGES", '["dns-01", "tls-alpn-01"]')
        s = _settings(CA_PROVIDER="letsencrypt")
        assert s.EXCLUDED_CHALLENGES == ["dns-01", "tls-alpn-01"]

    def test_unknown_challenge_type_rejected(self):
        with pytest.raises(ValidationError, match="unknown challenge types"):
            _settings(CA_PROVIDER="letsencrypt", EXCLUDED_CHALLENGES="http-01,smtp-01")


class TestValidators:
    """Field and model validators."""

    def test_key_type_is_normalised(self):
        s = _settings(CA_PROVIDER="letsencrypt", KEY_TYPE="EC384", ACCOUNT_KEY_TYPE="RSA4096")
        assert s.KEY_TYPE == "ec384"
        assert s.ACCOUNT_KEY_TYPE == "rsa4096"

    def test_unknown_key_type_rejected(self):
        with pytest.raises(ValidationError, match="key type"):
            _settings(CA_PROVIDER="letsencrypt", KEY_TYPE="dsa1024")

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValidationError):
            _settings(CA_PROVIDER="letsencrypt", HTTP_CHALLENGE_MODE="ftp")

    def test_webroot_requires_path(self):
        with pytest.raises(ValidationError, match="WEBROOT_PATH"):
            _settings(CA_PROVIDER="letsencrypt", HTTP_CHALLENGE_MODE="webroot", WEBROOT_PATH="")

    def test_webroot_with_path(self, tmp_path):
        s = _settings(CA_PROVIDER="letsencrypt", HTTP_CHALLENGE_MODE="webroot", WEBROOT_PATH=str(tmp_path))
        assert s.WEBROOT_PATH == str(tmp_path)

    @pytest.mark.parametrize("retries", [-1, 6])
    def test_nonce_retries_bounds(self, retries):
        with pytest.raises(ValidationError, match="NONCE_RETRIES"):
            _settings(CA_PROVIDER="letsencrypt", NONCE_RETRIES=retries)

    def test_defaults(self):
        s = _settings(CA_PROVIDER="letsencrypt")
        assert s.NONCE_RETRIES == 1
        assert s.CERT_TIMEOUT == 30.0
        assert s.VALIDATION_TIMEOUT == 300.0
        assert s.DNS_PROPAGATION_TIMEOUT == 60.0
        assert s.DNS_POLLING_INTERVAL == 2.0
        assert s.DNS_SEQUENTIAL_INTERVAL is None
