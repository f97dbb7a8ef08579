"""
Unit tests for authentication module
Tests API key generation, tenant lookup, URL binding and expiration
"""
from datetime import timedelta
from unittest.mock import patch

import pytest

from perf_hub_server.auth import (
    FEATURE_AI, FEATURE_PERFORMANCE, KEY_PREFIX, TenantKeyManager, check_feature_access,
    deactivate_tenant, normalize_site_url, url_matches_site,
)
from perf_hub_server.errors import AuthenticationError, AuthorizationError
from perf_hub_server.logging_config import mask_api_key


class TestKeyGeneration:
    """Test suite for TenantKeyManager key material"""

    def test_generate_api_key_format(self, key_manager):
        """Test that generated API keys have correct format"""
        raw_key, prefix, key_hash = key_manager.generate_api_key()

        assert raw_key.startswith(KEY_PREFIX)
        assert len(raw_key) == len(KEY_PREFIX) + 48
        assert prefix == raw_key[:12]
        assert raw_key not in key_hash

    def test_keys_are_unique(self, key_manager):
        assert key_manager.generate_api_key()[0] != key_manager.generate_api_key()[0]

    def test_hash_is_salted(self, key_manager):
        raw_key, _, first = key_manager.generate_api_key()
        _, _, second = TenantKeyManager().generate_api_key()
        assert first != second
        assert TenantKeyManager.verify_api_key(raw_key, first)

    def test_verify_rejects_wrong_key(self, key_manager):
        raw_key, _, key_hash = key_manager.generate_api_key()
        assert not TenantKeyManager.verify_api_key(raw_key + "x", key_hash)

    def test_verify_tolerates_malformed_hash(self):
        assert TenantKeyManager.verify_api_key("hub_abc", "not-a-hash") is False


class TestSiteUrls:
    """Test URL normalization and the sub-path rule"""

    @pytest.mark.parametrize("raw, expected", [
        ("https://Example.com/", "https://example.com"),
        ("HTTPS://EXAMPLE.COM", "https://example.com"),
        ("https://example.com/shop/", "https://example.com/shop"),
        ("http://example.com:8080/", "http://example.com:8080"),
    ])
    def test_normalize_site_url(self, raw, expected):
        assert normalize_site_url(raw) == expected

    def test_normalize_without_host_is_unchanged(self):
        assert normalize_site_url("not a url") == "not a url"

    @pytest.mark.parametrize("url", [
        "https://example.com",
        "https://example.com/",
        "https://example.com/shop",
        "https://EXAMPLE.com/shop/item?id=3",
    ])
    def test_sub_paths_accepted(self, url):
        assert url_matches_site(url, "https://example.com")

    @pytest.mark.parametrize("url", [
        "https://example.com.evil.test",
        "https://example.com.evil.test/shop",
        "https://evil.test/https://example.com",
        "https://notexample.com",
        "http://example.com",
    ])
    def test_lookalikes_rejected(self, url):
        """Prefix matching must stop at a path boundary"""
        assert not url_matches_site(url, "https://example.com")

    def test_site_with_path(self):
        assert url_matches_site("https://example.com/blog/post", "https://example.com/blog")
        assert not url_matches_site("https://example.com/blogger", "https://example.com/blog")


class TestAuthenticate:
    """Test resolving headers to a tenant"""

    def test_valid_credentials(self, db, key_manager, tenant_with_key, clock):
        tenant, raw_key = tenant_with_key

        resolved = key_manager.authenticate(db, raw_key, "https://example.com/")

        assert resolved.id == tenant.id
        assert resolved.last_seen_at == clock.now

    def test_missing_key(self, db, key_manager):
        with pytest.raises(AuthenticationError) as exc_info:
            key_manager.authenticate(db, None, "https://example.com")
        assert exc_info.value.status_code == 401

    def test_missing_site_url(self, db, key_manager, tenant_with_key):
        _, raw_key = tenant_with_key
        with pytest.raises(AuthenticationError):
            key_manager.authenticate(db, raw_key, "")

    def test_unknown_key(self, db, key_manager, tenant_with_key):
        with pytest.raises(AuthenticationError) as exc_info:
            key_manager.authenticate(db, "hub_" + "0" * 48, "https://example.com")
        assert exc_info.value.message == "Invalid API key"

    def test_same_prefix_different_key(self, db, key_manager, tenant_with_key):
        """Prefix narrows candidates, hash verification decides"""
        _, raw_key = tenant_with_key
        forged = raw_key[:12] + "f" * (len(raw_key) - 12)
        with pytest.raises(AuthenticationError):
            key_manager.authenticate(db, forged, "https://example.com")

    def test_failed_lookup_logs_masked_prefix(self, db, key_manager, tenant_with_key):
        _, raw_key = tenant_with_key
        forged = raw_key[:12] + "f" * (len(raw_key) - 12)

        with patch("perf_hub_server.logging_config.get_logger") as get_logger:
            with pytest.raises(AuthenticationError):
                key_manager.authenticate(db, forged, "https://example.com", client_ip="203.0.113.9")

        get_logger.return_value.warning.assert_called_once_with(
            "auth_failed",
            reason="invalid_key",
            key_prefix=raw_key[:12] + "...",
            client_ip="203.0.113.9",
        )

    def test_site_url_mismatch(self, db, key_manager, tenant_with_key):
        _, raw_key = tenant_with_key
        with pytest.raises(AuthorizationError) as exc_info:
            key_manager.authenticate(db, raw_key, "https://other.test")
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Site URL mismatch"

    def test_deactivated_tenant(self, db, key_manager, tenant_with_key):
        tenant, raw_key = tenant_with_key
        deactivate_tenant(db, tenant)
        with pytest.raises(AuthenticationError):
            key_manager.authenticate(db, raw_key, "https://example.com")

    def test_expired_license(self, db, key_manager, tenant_factory, clock):
        tenant, raw_key = tenant_factory("https://expired.test", expires_at=clock.now - timedelta(days=1))
        with pytest.raises(AuthorizationError) as exc_info:
            key_manager.authenticate(db, raw_key, "https://expired.test")
        assert exc_info.value.message == "License expired"

    def test_license_not_yet_expired(self, db, key_manager, tenant_factory, clock):
        tenant, raw_key = tenant_factory("https://valid.test", expires_at=clock.now + timedelta(days=1))
        assert key_manager.authenticate(db, raw_key, "https://valid.test").id == tenant.id


class TestFeatureAccess:
    """Test per-tenant feature switches"""

    def test_enabled_features_pass(self, tenant):
        check_feature_access(tenant, FEATURE_AI)
        check_feature_access(tenant, FEATURE_PERFORMANCE)

    def test_ai_disabled(self, tenant_factory):
        tenant, _ = tenant_factory("https://noai.test", ai_enabled=False)
        with pytest.raises(AuthorizationError):
            check_feature_access(tenant, FEATURE_AI)
        check_feature_access(tenant, FEATURE_PERFORMANCE)

    def test_performance_disabled(self, tenant_factory):
        tenant, _ = tenant_factory("https://noperf.test", performance_enabled=False)
        with pytest.raises(AuthorizationError):
            check_feature_access(tenant, FEATURE_PERFORMANCE)


class TestMaskApiKey:
    def test_keeps_lookup_prefix_only(self):
        assert mask_api_key("hub_0123456789abcdef", 12) == "hub_01234567..."

    @pytest.mark.parametrize("raw", ["", "hub_short", "hub_01234567"])
    def test_short_keys_fully_masked(self, raw):
        assert mask_api_key(raw, 12) == "***"
