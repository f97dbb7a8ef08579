"""
Runtime settings backed by the app_settings table.

All rows are loaded once into memory at startup and reads are served from
that cache. Encrypted values stay encrypted in the cache and are decrypted
on every read. Writes go to the database first and replace the cached entry
only after the transaction commits.
"""
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session, sessionmaker

from perf_hub_server.db_models import AppSetting
from perf_hub_server.logging_config import get_logger
from perf_hub_server.vault import CredentialVault

logger = get_logger(__name__)

MASK = "••••••••"
TRUTHY = {"true", "1", "yes", "on"}

DEFAULT_SETTINGS: List[Dict[str, Any]] = [
    {"key": "maintenance_mode", "value": "0", "category": "general"},
    {"key": "claude_api_key", "value": "", "encrypt": True, "category": "ai"},
    {"key": "claude_model", "value": "claude-sonnet-4-20250514", "category": "ai"},
    {"key": "claude_max_tokens", "value": "4096", "category": "ai"},
    {"key": "max_optimization_iterations", "value": "5", "category": "ai"},
    {"key": "pagespeed_api_key", "value": "", "encrypt": True, "category": "pagespeed"},
    {"key": "pagespeed_cache_hours", "value": "24", "category": "pagespeed"},
    {"key": "rate_limit_per_minute", "value": "30", "category": "limits"},
    {"key": "rate_limit_ai_per_hour", "value": "50", "category": "limits"},
    {"key": "rate_limit_optimize_per_hour", "value": "10", "category": "limits"},
    {"key": "default_ai_monthly_limit", "value": "1000", "category": "limits"},
    {"key": "default_test_daily_limit", "value": "100", "category": "limits"},
]


@dataclass(frozen=True)
class SettingEntry:
    value: Optional[str]
    encrypted: bool
    category: str


class SettingsStore:
    """Process-wide settings cache with a single write path."""

    def __init__(self, session_factory: sessionmaker, vault: CredentialVault):
        self._session_factory = session_factory
        self._vault = vault
        self._cache: Dict[str, SettingEntry] = {}
        self._loaded = False
        self._write_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        """Populate the cache from the database (no-op once loaded)."""
        if self._loaded:
            return
        self.reload()

    def reload(self) -> None:
        with self._session_factory() as db:
            rows = db.query(AppSetting).all()
            fresh = {
                row.setting_key: SettingEntry(row.setting_value, bool(row.is_encrypted), row.category)
                for row in rows
            }
        with self._write_lock:
            self._cache = fresh
            self._loaded = True
        logger.info("settings_loaded", count=len(fresh))

    # Reads

    def get(self, key: str, default: str = "") -> str:
        entry = self._cache.get(key)
        if entry is None:
            return default
        if entry.encrypted and entry.value:
            decrypted = self._vault.decrypt(entry.value)
            if decrypted is None:
                logger.warning("setting_decrypt_failed", key=key)
                return default
            return decrypted
        return entry.value if entry.value is not None else default

    def get_int(self, key: str, default: int = 0) -> int:
        try:
            return int(self.get(key, str(default)))
        except ValueError:
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        return self.get(key, "1" if default else "0").strip().lower() in TRUTHY

    def has(self, key: str) -> bool:
        entry = self._cache.get(key)
        return entry is not None and bool(entry.value)

    def by_category(self, category: str) -> Dict[str, Dict[str, Any]]:
        """Settings in one category for display; encrypted values are masked."""
        return {
            key: {
                "value": MASK if entry.encrypted else (entry.value or ""),
                "encrypted": entry.encrypted,
                "category": entry.category,
            }
            for key, entry in self._cache.items()
            if entry.category == category
        }

    def categories(self) -> List[str]:
        return sorted({entry.category for entry in self._cache.values()})

    def dump(self) -> Dict[str, Dict[str, Any]]:
        return {
            key: {
                "value": "[encrypted]" if entry.encrypted else entry.value,
                "encrypted": entry.encrypted,
                "category": entry.category,
            }
            for key, entry in self._cache.items()
        }

    # Writes

    def save(self, key: str, value: str, encrypt: bool = False, category: str = "general") -> None:
        self.save_many([{"key": key, "value": value, "encrypt": encrypt, "category": category}])

    def save_many(self, items: Iterable[Mapping[str, Any]]) -> None:
        """
        Persist a batch of settings in one transaction.

        Either every item is written and cached, or the transaction is rolled
        back, the cache is left untouched and the error propagates.
        """
        with self._write_lock:
            staged: Dict[str, SettingEntry] = {}
            with self._session_factory() as db:
                try:
                    for item in items:
                        key = item["key"]
                        entry = self._encode(
                            str(item["value"]),
                            bool(item.get("encrypt", False)),
                            item.get("category", "general"),
                        )
                        self._upsert(db, key, entry)
                        staged[key] = entry
                    db.commit()
                except Exception:
                    db.rollback()
                    logger.error("settings_save_failed", keys=list(staged))
                    raise
            self._cache = {**self._cache, **staged}
        logger.info("settings_saved", keys=sorted(staged))

    def delete(self, key: str) -> None:
        with self._write_lock:
            with self._session_factory() as db:
                db.query(AppSetting).filter(AppSetting.setting_key == key).delete()
                db.commit()
            self._cache = {k: v for k, v in self._cache.items() if k != key}

    def seed_defaults(self) -> None:
        """Insert default rows that do not exist yet; existing values win."""
        missing = [item for item in DEFAULT_SETTINGS if item["key"] not in self._cache]
        if missing:
            self.save_many(missing)

    def _encode(self, value: str, encrypt: bool, category: str) -> SettingEntry:
        stored = self._vault.encrypt(value) if encrypt and value else value
        return SettingEntry(stored, encrypt, category)

    @staticmethod
    def _upsert(db: Session, key: str, entry: SettingEntry) -> None:
        row = db.query(AppSetting).filter(AppSetting.setting_key == key).one_or_none()
        if row is None:
            row = AppSetting(setting_key=key)
            db.add(row)
        row.setting_value = entry.value
        row.is_encrypted = entry.encrypted
        row.category = entry.category
        db.flush()
