"""
Configuration management for the Kestrel cache engine.
"""

import os
import toml
from pathlib import Path
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

MIN_CACHE_SIZE_MB = 50
MAX_CACHE_SIZE_MB = 10000
MIN_SYNC_INTERVAL_MINUTES = 1


class CacheConfig(BaseModel):
    """Local cache settings."""
    
    enabled: bool = Field(default=True, description="Keep a local cache of account data")
    max_size_mb: int = Field(default=500, description="Advisory cache size limit per account in MB")
    ttl_days: int = Field(default=30, description="Days before cached entities are considered expired")
    offline_queue_enabled: bool = Field(default=True, description="Queue writes while offline")
    max_action_attempts: int = Field(default=0, description="Drop a queued action after this many failed replays (0 = never)")
    stale_action_days: int = Field(default=0, description="Discard queued actions older than this many days (0 = never)")
    photo_ttl_days: int = Field(default=30, description="Days to keep cached contact photos")
    attachment_max_size_mb: int = Field(default=100, description="Size limit of the attachment cache per account in MB")
    
    @field_validator("max_size_mb")
    @classmethod
    def _clamp_size(cls, value: int) -> int:
        return min(max(value, MIN_CACHE_SIZE_MB), MAX_CACHE_SIZE_MB)
    
    @field_validator("ttl_days", "photo_ttl_days")
    @classmethod
    def _at_least_one_day(cls, value: int) -> int:
        return max(value, 1)
    
    @field_validator("attachment_max_size_mb")
    @classmethod
    def _at_least_one_mb(cls, value: int) -> int:
        return max(value, 1)
    
    @field_validator("max_action_attempts", "stale_action_days")
    @classmethod
    def _not_negative(cls, value: int) -> int:
        return max(value, 0)


class SyncConfig(BaseModel):
    """Background synchronization settings."""
    
    interval_minutes: int = Field(default=5, description="Minutes between background sync cycles")
    cycle_timeout_seconds: int = Field(default=120, description="Upper bound for one account sync cycle")
    background_enabled: bool = Field(default=True, description="Run the background sync loops")
    email_page_size: int = Field(default=100, description="Messages fetched per sync cycle")
    initial_sync_days: int = Field(default=30, description="Days of history fetched on first sync")
    
    @field_validator("interval_minutes")
    @classmethod
    def _floor_interval(cls, value: int) -> int:
        return max(value, MIN_SYNC_INTERVAL_MINUTES)
    
    @field_validator("cycle_timeout_seconds", "email_page_size", "initial_sync_days")
    @classmethod
    def _positive(cls, value: int) -> int:
        return max(value, 1)


class SecurityConfig(BaseModel):
    """Encryption-at-rest settings."""
    
    encryption_enabled: bool = Field(default=False, description="Encrypt sensitive cached fields")
    keyring_service: str = Field(default="kestrel-cache", description="Keyring service holding cache keys")


class AppConfig:
    """
    Main engine configuration class.
    
    Manages loading, saving, and accessing configuration settings from TOML files.
    """
    
    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize engine configuration.
        
        Args:
            config_dir: Custom configuration directory. If None, uses default.
        """
        self.config_dir = config_dir or self._get_default_config_dir()
        self.config_file = self.config_dir / "kestrel.toml"
        
        # Configuration sections
        self.cache = CacheConfig()
        self.sync = SyncConfig()
        self.security = SecurityConfig()
        
        # Ensure config directory exists
        self.config_dir.mkdir(parents=True, exist_ok=True)
        
        self.load()
    
    def _get_default_config_dir(self) -> Path:
        """
        Get the default configuration directory based on the operating system.
        
        Returns:
            Path: Default configuration directory.
        """
        if os.name == "posix":
            xdg_config = os.environ.get("XDG_CONFIG_HOME")
            if xdg_config:
                return Path(xdg_config) / "kestrel"
            else:
                return Path.home() / ".config" / "kestrel"
        else:
            return Path.home() / ".kestrel"
    
    def load(self) -> None:
        """
        Load configuration from TOML file.
        
        Creates default configuration if file doesn't exist.
        """
        if not self.config_file.exists():
            self.save()
            return
        
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                config_data = toml.load(f)
            
            # Update configuration sections
            if "cache" in config_data:
                self.cache = CacheConfig(**config_data["cache"])
            if "sync" in config_data:
                self.sync = SyncConfig(**config_data["sync"])
            if "security" in config_data:
                self.security = SecurityConfig(**config_data["security"])
                
        except Exception as e:
            logger.warning(f"Failed to load configuration from {self.config_file}: {e}")
            # Keep default configuration
    
    def save(self) -> None:
        """
        Save current configuration to TOML file.
        """
        config_data = {
            "cache": self.cache.model_dump(),
            "sync": self.sync.model_dump(),
            "security": self.security.model_dump(),
        }
        
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                toml.dump(config_data, f)
        except OSError as e:
            logger.warning(f"Failed to save configuration to {self.config_file}: {e}")
    
    def get_data_dir(self) -> Path:
        """
        Get the data directory for persistent engine files.
        
        Returns:
            Path: Data directory path.
        """
        if os.name == "posix":
            xdg_data = os.environ.get("XDG_DATA_HOME")
            if xdg_data:
                data_dir = Path(xdg_data) / "kestrel"
            else:
                data_dir = Path.home() / ".local" / "share" / "kestrel"
        else:
            data_dir = Path.home() / ".kestrel" / "data"
        
        data_dir.mkdir(parents=True, exist_ok=True)
        return data_dir
    
    def get_cache_dir(self) -> Path:
        """
        Get the cache directory holding the per-account databases.
        
        Returns:
            Path: Cache directory path.
        """
        if os.name == "posix":
            xdg_cache = os.environ.get("XDG_CACHE_HOME")
            if xdg_cache:
                cache_dir = Path(xdg_cache) / "kestrel"
            else:
                cache_dir = Path.home() / ".cache" / "kestrel"
        else:
            cache_dir = Path.home() / ".kestrel" / "cache"
        
        cache_dir.mkdir(parents=True, exist_ok=True)
        return cache_dir
