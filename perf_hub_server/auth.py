"""
Tenant authentication with prefix-sharded API key lookup.

Keys look like ``hub_<48 hex chars>``. Only a salted hash and the first
``prefix_length`` characters are stored; the prefix narrows the candidate
set before the (slow, constant-time) hash verification.
"""
import secrets
from datetime import datetime
from typing import Callable, Optional, Tuple
from urllib.parse import urlsplit

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from perf_hub_server.db_models import Tenant, utcnow
from perf_hub_server.errors import AuthenticationError, AuthorizationError
from perf_hub_server.logging_config import get_logger, log_auth_failure

logger = get_logger(__name__)

# Key hashing context
key_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

KEY_PREFIX = "hub_"

FEATURE_AI = "ai"
FEATURE_PERFORMANCE = "performance"


def normalize_site_url(url: str) -> str:
    """
    Lowercase scheme and host and strip trailing slashes from the path.

    Values without a host are returned unchanged.
    """
    parts = urlsplit(url.strip())
    if not parts.hostname:
        return url
    scheme = (parts.scheme or "https").lower()
    host = parts.hostname.lower()
    if parts.port:
        host = f"{host}:{parts.port}"
    path = parts.path.rstrip("/")
    return f"{scheme}://{host}{path}"


def url_matches_site(request_url: str, site_url: str) -> bool:
    """A URL belongs to a site if it equals the site URL or is a sub-path of it."""
    request_url = normalize_site_url(request_url)
    site_url = normalize_site_url(site_url)
    return request_url == site_url or request_url.startswith(site_url + "/")


class TenantKeyManager:
    """Generate, hash and verify tenant API keys and resolve them to tenants."""

    def __init__(
        self,
        prefix_length: int = 12,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize key manager

        Args:
            prefix_length: Number of leading key characters stored for lookup
            clock: Source of naive-UTC "now" (injectable for tests)
        """
        self.prefix_length = prefix_length
        self._clock = clock

    def generate_api_key(self) -> Tuple[str, str, str]:
        """
        Generate a new API key

        Returns:
            Tuple of (raw_key, key_prefix, key_hash). The raw key is shown
            once and never stored.
        """
        raw_key = f"{KEY_PREFIX}{secrets.token_hex(24)}"
        return raw_key, self.key_prefix(raw_key), key_context.hash(raw_key)

    def key_prefix(self, raw_key: str) -> str:
        return raw_key[:self.prefix_length]

    @staticmethod
    def verify_api_key(raw_key: str, key_hash: str) -> bool:
        try:
            return key_context.verify(raw_key, key_hash)
        except (ValueError, TypeError):
            return False

    def authenticate(
        self,
        db: Session,
        api_key: Optional[str],
        site_url: Optional[str],
        client_ip: Optional[str] = None,
    ) -> Tenant:
        """
        Resolve an API key and claimed site URL to an active tenant.

        Raises:
            AuthenticationError: Key or URL missing, or no tenant verifies
            AuthorizationError: URL mismatch or expired license
        """
        if not api_key:
            raise AuthenticationError("Missing API key")
        if not site_url:
            raise AuthenticationError("Missing site URL")

        prefix = self.key_prefix(api_key)
        candidates = (
            db.query(Tenant)
            .filter(Tenant.api_key_prefix == prefix, Tenant.is_active.is_(True))
            .all()
        )
        tenant = next(
            (c for c in candidates if self.verify_api_key(api_key, c.api_key_hash)),
            None,
        )
        if tenant is None:
            log_auth_failure("invalid_key", api_key, client_ip, visible=self.prefix_length)
            raise AuthenticationError("Invalid API key")

        claimed = normalize_site_url(site_url)
        registered = normalize_site_url(tenant.site_url)
        if claimed != registered:
            log_auth_failure(
                "site_url_mismatch",
                api_key,
                client_ip,
                visible=self.prefix_length,
                expected=registered,
                received=claimed,
            )
            raise AuthorizationError("Site URL mismatch")

        now = self._clock()
        if tenant.expires_at is not None and tenant.expires_at < now:
            log_auth_failure("license_expired", api_key, client_ip, visible=self.prefix_length)
            raise AuthorizationError("License expired")

        tenant.last_seen_at = now
        db.commit()
        return tenant


def check_feature_access(tenant: Tenant, feature: str) -> None:
    """Raise AuthorizationError if the tenant has the feature switched off."""
    if feature == FEATURE_AI and not tenant.ai_enabled:
        raise AuthorizationError("AI features not enabled for this site")
    if feature == FEATURE_PERFORMANCE and not tenant.performance_enabled:
        raise AuthorizationError("Performance testing not enabled for this site")


def create_tenant(
    db: Session,
    manager: TenantKeyManager,
    site_url: str,
    site_name: str = "",
    ai_monthly_limit: int = 1000,
    test_daily_limit: int = 100,
    expires_at: Optional[datetime] = None,
    ai_enabled: bool = True,
    performance_enabled: bool = True,
) -> Tuple[Tenant, str]:
    """
    Register a site and return it with its raw API key.

    The raw key is not recoverable afterwards.
    """
    raw_key, prefix, key_hash = manager.generate_api_key()
    tenant = Tenant(
        site_url=normalize_site_url(site_url),
        site_name=site_name,
        api_key_hash=key_hash,
        api_key_prefix=prefix,
        ai_monthly_limit=ai_monthly_limit,
        test_daily_limit=test_daily_limit,
        expires_at=expires_at,
        ai_enabled=ai_enabled,
        performance_enabled=performance_enabled,
    )
    db.add(tenant)
    db.commit()
    db.refresh(tenant)
    logger.info("tenant_created", tenant_id=tenant.id, site_url=tenant.site_url, key_prefix=prefix)
    return tenant, raw_key


def deactivate_tenant(db: Session, tenant: Tenant) -> None:
    tenant.is_active = False
    db.commit()
