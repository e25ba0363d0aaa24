"""
Unit tests for cache encryption at rest.

The system keyring is replaced by an in-memory dictionary.
"""

import sqlite3
import tempfile
import pytest
from contextlib import closing
from pathlib import Path
from unittest.mock import patch

import keyring.errors
from cryptography.fernet import Fernet

from kestrel.config.app_config import AppConfig
from kestrel.core.cache_database import CacheDatabase, CacheLockedError
from kestrel.core.cache_manager import CacheManager
from kestrel.core.encryption import CacheKeyStore, FieldCipher, derive_key
from kestrel.data.models.cache import CachedEmail, CachedContact

SECRET = "00" * 32


class FakeKeyring:
    """Dictionary standing in for the system keyring."""

    def __init__(self):
        self.passwords = {}

    def get_password(self, service, username):
        return self.passwords.get((service, username))

    def set_password(self, service, username, password):
        self.passwords[(service, username)] = password

    def delete_password(self, service, username):
        if (service, username) not in self.passwords:
            raise keyring.errors.PasswordDeleteError("not found")
        del self.passwords[(service, username)]

    def patches(self):
        return (
            patch('keyring.get_password', side_effect=self.get_password),
            patch('keyring.set_password', side_effect=self.set_password),
            patch('keyring.delete_password', side_effect=self.delete_password),
        )


class TestKeyDerivation:
    """Test key derivation and the field cipher."""

    def test_derive_key_is_stable_per_account(self):
        assert derive_key(SECRET, "a@example.com") == derive_key(SECRET, "a@example.com")
        assert derive_key(SECRET, "a@example.com") != derive_key(SECRET, "b@example.com")

    def test_cipher_round_trip(self):
        cipher = FieldCipher(derive_key(SECRET, "a@example.com"))

        token = cipher.encrypt("meet me at noon")

        assert token != "meet me at noon"
        assert cipher.decrypt(token) == "meet me at noon"

    def test_wrong_key_is_locked(self):
        token = FieldCipher(derive_key(SECRET, "a@example.com")).encrypt("hello")

        with pytest.raises(CacheLockedError):
            FieldCipher(Fernet.generate_key()).decrypt(token)


class TestCacheKeyStore:
    """Test cases for CacheKeyStore."""

    def setup_method(self):
        self.keyring = FakeKeyring()
        self.patchers = self.keyring.patches()
        for patcher in self.patchers:
            patcher.start()
        self.key_store = CacheKeyStore("kestrel-test")

    def teardown_method(self):
        for patcher in self.patchers:
            patcher.stop()

    def test_get_key_without_secret(self):
        assert self.key_store.get_key("a@example.com") is None

    def test_get_or_create_key(self):
        """Test that a secret is created once and reused."""
        first = self.key_store.get_or_create_key("a@example.com")
        second = self.key_store.get_or_create_key("a@example.com")

        assert first == second
        assert ("kestrel-test", "a@example.com") in self.keyring.passwords

    def test_delete_key(self):
        self.key_store.get_or_create_key("a@example.com")

        assert self.key_store.delete_key("a@example.com") is True
        assert self.key_store.delete_key("a@example.com") is False
        assert self.key_store.get_key("a@example.com") is None

    def test_malformed_secret(self):
        self.keyring.passwords[("kestrel-test", "a@example.com")] = "not hex"

        with pytest.raises(CacheLockedError):
            self.key_store.get_key("a@example.com")


class TestKeyringFailures:
    """Test behaviour when the keyring itself fails."""

    @patch('keyring.get_password')
    def test_read_failure_is_locked(self, mock_get):
        mock_get.side_effect = keyring.errors.KeyringError("locked")

        with pytest.raises(CacheLockedError):
            CacheKeyStore("kestrel-test").get_or_create_key("a@example.com")

    @patch('keyring.set_password')
    @patch('keyring.get_password')
    def test_write_failure_is_locked(self, mock_get, mock_set):
        mock_get.return_value = None
        mock_set.side_effect = keyring.errors.PasswordSetError("read only")

        with pytest.raises(CacheLockedError):
            CacheKeyStore("kestrel-test").get_or_create_key("a@example.com")


class TestEncryptedCache:
    """Test an encrypted account cache end to end."""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)

        self.keyring = FakeKeyring()
        self.patchers = self.keyring.patches()
        for patcher in self.patchers:
            patcher.start()

        self.config = AppConfig(config_dir=root / "config")
        self.config.security.encryption_enabled = True
        self.manager = CacheManager(self.config, base_path=root / "accounts",
                                    key_store=CacheKeyStore("kestrel-test"))
        self.email = "user@example.com"

    def teardown_method(self):
        self.manager.close()
        for patcher in self.patchers:
            patcher.stop()
        self.temp_dir.cleanup()

    def _raw_row(self, sql):
        with closing(sqlite3.connect(str(self.manager.db_path(self.email)))) as conn:
            return conn.execute(sql).fetchone()

    def test_sensitive_fields_are_sealed_on_disk(self):
        """Test that bodies are encrypted on disk and readable through the store."""
        self.manager.emails(self.email).put(CachedEmail(
            id="e1", subject="Lunch", body_text="the secret recipe", body_html="<p>the secret recipe</p>"
        ))

        subject, body_text, body_html = self._raw_row("SELECT subject, body_text, body_html FROM emails")
        assert subject == "Lunch"
        assert "secret" not in body_text
        assert "secret" not in body_html

        email = self.manager.emails(self.email).get("e1")
        assert email.body_text == "the secret recipe"
        assert email.body_html == "<p>the secret recipe</p>"

    def test_sealed_fields_are_not_searchable(self):
        store = self.manager.emails(self.email)
        store.put(CachedEmail(id="e1", subject="Lunch", body_text="the secret recipe"))

        assert store.search("secret") == []
        assert [e.id for e in store.search("lunch")] == ["e1"]

    def test_contact_notes_are_sealed(self):
        self.manager.contacts(self.email).put(CachedContact(id="c1", display_name="Ann", notes="allergic to nuts"))

        (notes,) = self._raw_row("SELECT notes FROM contacts")
        assert "nuts" not in notes
        assert self.manager.contacts(self.email).get("c1").notes == "allergic to nuts"

    def test_reopen_with_same_key(self):
        self.manager.emails(self.email).put(CachedEmail(id="e1", body_text="kept"))
        self.manager.close_db(self.email)

        assert self.manager.emails(self.email).get("e1").body_text == "kept"

    def test_open_without_key_is_locked(self):
        """Test that an encrypted file cannot be opened without its key."""
        self.manager.emails(self.email).put(CachedEmail(id="e1", body_text="kept"))
        self.manager.close_db(self.email)

        with pytest.raises(CacheLockedError):
            CacheDatabase(self.manager.db_path(self.email), label=self.email)

        wrong = FieldCipher(Fernet.generate_key())
        with pytest.raises(CacheLockedError):
            CacheDatabase(self.manager.db_path(self.email), cipher=wrong, label=self.email)

    def test_clear_cache_deletes_key(self):
        self.manager.emails(self.email).put(CachedEmail(id="e1", body_text="kept"))
        assert ("kestrel-test", self.email) in self.keyring.passwords

        self.manager.clear_cache(self.email)

        assert ("kestrel-test", self.email) not in self.keyring.passwords
        assert not self.manager.db_path(self.email).exists()
