"""
keyexchange - Key manager tests.

Tests local key files, permissions, archiving and downloaded contact keys.
"""

import json
import stat
import sys

import pytest

from keyexchange import crypto
from keyexchange.errors import (
    InvalidPassphraseError,
    KeyFileNotFoundError,
    KeyMaterialError,
    ValidationError,
)
from keyexchange.keys import KeyManager


def test_generate_writes_key_pair(key_manager):
    """Test generation writes both files and they belong together."""
    public_pem = key_manager.generate_key_pair("alice", "s3cret", 2048)

    assert key_manager.has_key_pair("alice")
    assert key_manager.read_public_key("alice") == public_pem
    assert key_manager.private_key_path("alice").parent == key_manager.keys_dir / "identities" / "alice"

    sealed = key_manager.read_sealed_private_key("alice")
    assert "ciphertext" in json.loads(sealed)

    loaded_pem, private_key = key_manager.load_key_pair("alice", "s3cret")
    assert loaded_pem == public_pem
    assert crypto.public_key_to_pem(private_key.public_key()) == public_pem


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_key_file_permissions(key_manager):
    """Test the private key and its directory are private to the owner."""
    key_manager.generate_key_pair("alice", "s3cret", 2048)

    private_path = key_manager.private_key_path("alice")
    assert stat.S_IMODE(private_path.stat().st_mode) == 0o600
    assert stat.S_IMODE(private_path.parent.stat().st_mode) == 0o700
    assert not list(private_path.parent.glob("*.tmp"))


def test_missing_key_files(key_manager):
    """Test missing files raise KeyFileNotFoundError, not a passphrase error."""
    assert not key_manager.has_key_pair("nobody")

    with pytest.raises(KeyFileNotFoundError) as exc_info:
        key_manager.load_private_key("nobody", "s3cret")
    assert not isinstance(exc_info.value, InvalidPassphraseError)

    with pytest.raises(KeyFileNotFoundError):
        key_manager.read_public_key("nobody")


def test_wrong_passphrase(key_manager):
    """Test a wrong passphrase raises InvalidPassphraseError."""
    key_manager.generate_key_pair("alice", "s3cret", 2048)
    with pytest.raises(InvalidPassphraseError):
        key_manager.load_private_key("alice", "wrong")


@pytest.mark.parametrize("username", ["", "../escape", "a/b", "a\\b", "..", "with space"])
def test_invalid_usernames(key_manager, username):
    """Test usernames that are unsafe as directory names are refused."""
    with pytest.raises(ValidationError):
        key_manager.private_key_path(username)
    with pytest.raises(ValidationError):
        key_manager.contact_key_path(username)


def test_archive_key_pair(key_manager):
    """Test archiving moves the current pair aside."""
    assert key_manager.archive_key_pair("alice") is None

    public_pem = key_manager.generate_key_pair("alice", "s3cret", 2048)
    archive_dir = key_manager.archive_key_pair("alice")

    assert archive_dir is not None
    assert archive_dir.parent.name == "archive"
    assert not key_manager.has_key_pair("alice")
    assert (archive_dir / "public_key.pem").read_text() == public_pem
    assert (archive_dir / "private_key.json").exists()


def test_contact_keys(key_manager, key_material):
    """Test downloaded keys are saved and read back."""
    path = key_manager.save_contact_key("bob", key_material["public_pem"])

    assert path == key_manager.keys_dir / "contacts" / "bob.pem"
    assert key_manager.read_contact_key("bob") == key_material["public_pem"]


def test_contact_named_like_identity_files(key_manager, key_material):
    """Test a contact key never lands in a local identity directory."""
    key_manager.generate_key_pair("contacts", "s3cret", 2048)
    key_manager.save_contact_key("public_key", key_material["public_pem"])

    assert key_manager.read_contact_key("public_key") == key_material["public_pem"]
    assert key_manager.read_public_key("contacts") != key_material["public_pem"]


def test_contact_key_validation(key_manager):
    """Test malformed contact keys are not written."""
    with pytest.raises(ValidationError):
        key_manager.save_contact_key("bob", "not a key")
    with pytest.raises(KeyFileNotFoundError):
        key_manager.read_contact_key("bob")


def test_keys_dir_expands_user(monkeypatch, temp_dir):
    """Test a keys directory with ~ is expanded."""
    monkeypatch.setenv("HOME", str(temp_dir))
    assert KeyManager("~/keys").keys_dir == temp_dir / "keys"


def test_unreadable_key_files(key_manager):
    """Test read failures other than a missing file raise KeyMaterialError."""
    key_manager.generate_key_pair("alice", "s3cret", 2048)
    private_path = key_manager.private_key_path("alice")
    private_path.unlink()
    private_path.mkdir()

    with pytest.raises(KeyMaterialError) as exc_info:
        key_manager.load_private_key("alice", "s3cret")
    assert not isinstance(exc_info.value, KeyFileNotFoundError)
    assert exc_info.value.details == {"path": str(private_path)}


def test_non_ascii_key_file(key_manager, key_material):
    """Test a key file holding non-ASCII bytes raises KeyMaterialError."""
    key_manager.save_contact_key("bob", key_material["public_pem"])
    key_manager.contact_key_path("bob").write_bytes("clé".encode("utf-8"))

    with pytest.raises(KeyMaterialError):
        key_manager.read_contact_key("bob")
