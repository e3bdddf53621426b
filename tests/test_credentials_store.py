"""Unit tests for credential persistence."""

import json
import os

import pytest

from roomsync.credentials import CREDENTIALS_KEY, CredentialStore, redact_token
from roomsync.models import Credentials


@pytest.fixture
def credentials_file(tmp_path):
    return tmp_path / "data" / "credentials.json"


@pytest.fixture
def store(credentials_file):
    """Create CredentialStore writing below a not yet existing directory."""
    return CredentialStore(str(credentials_file))


@pytest.fixture
def credentials():
    return Credentials(
        home_server="https://example.org",
        user_id="@me:example.org",
        access_token="syt_test_token_123456789",
    )


class TestSave:
    """Test writing credentials."""

    def test_save_writes_fixed_key(self, store, credentials, credentials_file):
        """Credentials live under a single fixed key."""
        # Execute
        store.save(credentials)

        # Verify
        with open(credentials_file, "r") as f:
            document = json.load(f)
        assert document == {
            CREDENTIALS_KEY: {
                "homeServer": "https://example.org",
                "userId": "@me:example.org",
                "token": "syt_test_token_123456789",
            }
        }

    def test_save_restricts_permissions(self, store, credentials, credentials_file):
        store.save(credentials)

        # Verify file permissions (Unix only)
        if os.name != "nt":
            stat_info = os.stat(credentials_file)
            assert stat_info.st_mode & 0o777 == 0o600

    def test_save_leaves_no_temp_file(self, store, credentials, credentials_file):
        store.save(credentials)

        assert not credentials_file.with_suffix(".tmp").exists()

    def test_save_overwrites(self, store, credentials):
        store.save(credentials)
        replacement = credentials.model_copy(update={"access_token": "syt_other_token"})

        store.save(replacement)

        assert store.load().access_token == "syt_other_token"


class TestLoad:
    """Test reading credentials."""

    def test_load_roundtrip(self, store, credentials):
        store.save(credentials)

        assert store.load() == credentials

    def test_load_missing_file(self, store):
        assert store.load() is None

    def test_load_incomplete_entry(self, store, credentials_file):
        """A stored triple with a missing key counts as no credentials."""
        credentials_file.parent.mkdir(parents=True)
        credentials_file.write_text(
            json.dumps({CREDENTIALS_KEY: {"homeServer": "https://example.org", "userId": "@me:example.org"}})
        )

        assert store.load() is None

    def test_load_other_key(self, store, credentials_file):
        credentials_file.parent.mkdir(parents=True)
        credentials_file.write_text(json.dumps({"Other": {"token": "x"}}))

        assert store.load() is None

    def test_load_corrupted_file(self, store, credentials_file):
        credentials_file.parent.mkdir(parents=True)
        credentials_file.write_text("{not json")

        assert store.load() is None


class TestClear:
    def test_clear_removes_file(self, store, credentials, credentials_file):
        store.save(credentials)

        store.clear()

        assert not credentials_file.exists()
        assert store.load() is None

    def test_clear_without_file(self, store):
        store.clear()

        assert store.load() is None


class TestRedactToken:
    def test_long_token_shows_prefix(self):
        assert redact_token("syt_abcdefghijklmnop") == "syt_abcdef..."

    def test_short_token_fully_hidden(self):
        assert redact_token("short") == "***"
