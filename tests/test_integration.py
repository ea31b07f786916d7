"""
keyexchange - Integration tests.

Tests the complete flows (register, send, list, read) through the Messenger
on both store backends.
"""

import pytest

from keyexchange.directory import DirectoryService
from keyexchange.errors import (
    AuthenticationError,
    DecryptionError,
    EncryptionError,
    InvalidPassphraseError,
    KeyFileNotFoundError,
    NotFoundError,
    ValidationError,
)
from keyexchange.keys import KeyManager
from keyexchange.messenger import Messenger


@pytest.fixture
def alice_and_bob(messenger):
    """Register alice and bob, each with passphrase s3cret."""
    messenger.generate_keys("alice", "s3cret")
    messenger.generate_keys("bob", "s3cret")
    return messenger


def test_end_to_end_scenario(alice_and_bob):
    """Test bob sends alice a message and she reads it back."""
    messenger = alice_and_bob

    sent = messenger.send_message("bob", "s3cret", "alice", "hello alice")
    assert sent.recipient_id == "alice"
    assert sent.sender_id == "bob"
    assert "hello alice" not in sent.ciphertext

    inbox = messenger.list_messages("alice", "s3cret")
    assert [e.message_id for e in inbox] == [sent.message_id]

    result = messenger.read_message("alice", "s3cret", "s3cret", 1)
    assert result.plaintext == "hello alice"
    assert result.envelope.message_id == sent.message_id
    assert result.index == 1


def test_generate_keys_new_user(messenger):
    """Test a new user gets a fresh pair and a directory record."""
    result = messenger.generate_keys("alice", "s3cret")

    assert result.generated
    assert result.created
    assert result.archive_dir is None
    assert len(result.fingerprint) == 64
    assert messenger.key_manager.has_key_pair("alice")
    assert messenger.directory.lookup_public_key("alice") == messenger.key_manager.read_public_key("alice")


def test_registration_is_idempotent(messenger, store):
    """Test registering twice reuses the key and keeps one record."""
    first = messenger.generate_keys("alice", "s3cret")
    second = messenger.generate_keys("alice", "s3cret")

    assert not second.generated
    assert not second.created
    assert second.public_key_pem == first.public_key_pem
    assert second.record.created_at == first.record.created_at
    assert store.users.find_one({"public_key_pem": first.public_key_pem}).username == "alice"


def test_reregistration_with_wrong_password(messenger):
    """Test a wrong password changes nothing."""
    first = messenger.generate_keys("alice", "s3cret")

    with pytest.raises(AuthenticationError):
        messenger.generate_keys("alice", "wrong")
    with pytest.raises(AuthenticationError):
        messenger.generate_keys("alice", "wrong", rotate=True)

    assert messenger.directory.get_user("alice").public_key_pem == first.public_key_pem
    assert messenger.key_manager.read_public_key("alice") == first.public_key_pem


def test_reuse_with_wrong_passphrase(messenger):
    """Test local keys are only reused with their passphrase."""
    messenger.generate_keys("alice", "s3cret", password="pw")

    with pytest.raises(InvalidPassphraseError):
        messenger.generate_keys("alice", "wrong", password="pw")


def test_registered_without_local_keys(messenger, store, directory, temp_dir):
    """Test another machine cannot silently replace a registered key."""
    messenger.generate_keys("alice", "s3cret")
    elsewhere = Messenger(store, KeyManager(temp_dir / "elsewhere"), directory, key_size=2048)

    with pytest.raises(KeyFileNotFoundError):
        elsewhere.generate_keys("alice", "s3cret")

    result = elsewhere.generate_keys("alice", "s3cret", rotate=True)
    assert result.generated
    assert directory.lookup_public_key("alice") == elsewhere.key_manager.read_public_key("alice")


def test_rotation(alice_and_bob):
    """Test rotation archives the old pair and publishes a new one."""
    messenger = alice_and_bob
    old_pem = messenger.directory.lookup_public_key("alice")
    messenger.send_message("bob", "s3cret", "alice", "before rotation")

    result = messenger.generate_keys("alice", "s3cret", rotate=True)

    assert result.generated
    assert result.archive_dir is not None
    assert (result.archive_dir / "public_key.pem").read_text() == old_pem
    assert result.public_key_pem != old_pem
    assert messenger.directory.lookup_public_key("alice") == result.public_key_pem

    # Messages sent before rotation need the archived key
    with pytest.raises(DecryptionError):
        messenger.read_message("alice", "s3cret", "s3cret", 1)

    messenger.send_message("bob", "s3cret", "alice", "after rotation")
    assert messenger.read_message("alice", "s3cret", "s3cret", 2).plaintext == "after rotation"


def test_separate_password_and_passphrase(messenger):
    """Test the directory password can differ from the key passphrase."""
    messenger.generate_keys("alice", "passphrase", password="password")
    messenger.generate_keys("bob", "s3cret")
    messenger.send_message("bob", "s3cret", "alice", "hi")

    with pytest.raises(AuthenticationError):
        messenger.list_messages("alice", "passphrase")
    with pytest.raises(InvalidPassphraseError):
        messenger.read_message("alice", "password", "password", 1)

    assert messenger.read_message("alice", "password", "passphrase", 1).plaintext == "hi"


def test_send_to_unknown_recipient(alice_and_bob, store):
    """Test an unknown recipient stores nothing."""
    with pytest.raises(NotFoundError):
        alice_and_bob.send_message("bob", "s3cret", "carol", "hello carol")

    assert store.messages.find_by_recipient("carol") == []


def test_send_with_wrong_password(alice_and_bob, store):
    """Test the sender must authenticate."""
    with pytest.raises(AuthenticationError):
        alice_and_bob.send_message("bob", "wrong", "alice", "hello alice")
    with pytest.raises(NotFoundError):
        alice_and_bob.send_message("carol", "s3cret", "alice", "hello alice")

    assert store.messages.find_by_recipient("alice") == []


def test_send_empty_message(alice_and_bob, store):
    """Test empty messages are refused."""
    with pytest.raises(ValidationError):
        alice_and_bob.send_message("bob", "s3cret", "alice", "")
    assert store.messages.find_by_recipient("alice") == []


def test_send_oversized_message(alice_and_bob, store):
    """Test oversized messages are refused and nothing is stored."""
    with pytest.raises(EncryptionError):
        alice_and_bob.send_message("bob", "s3cret", "alice", "x" * 191)
    assert store.messages.find_by_recipient("alice") == []


def test_list_messages(alice_and_bob):
    """Test listing requires the password and filters by sender."""
    messenger = alice_and_bob
    messenger.generate_keys("carol", "s3cret")
    messenger.send_message("bob", "s3cret", "alice", "from bob")
    messenger.send_message("carol", "s3cret", "alice", "from carol")
    messenger.send_message("alice", "s3cret", "bob", "to bob")

    assert len(messenger.list_messages("alice", "s3cret")) == 2
    assert [e.sender_id for e in messenger.list_messages("alice", "s3cret", sender="carol")] == ["carol"]
    with pytest.raises(AuthenticationError):
        messenger.list_messages("alice", "wrong")


def test_read_message_selectors(alice_and_bob):
    """Test reading by id and the not-found cases."""
    messenger = alice_and_bob
    sent = messenger.send_message("bob", "s3cret", "alice", "by id")
    to_bob = messenger.send_message("alice", "s3cret", "bob", "for bob")

    result = messenger.read_message("alice", "s3cret", "s3cret", sent.message_id)
    assert result.plaintext == "by id"
    assert result.index is None

    with pytest.raises(NotFoundError):
        messenger.read_message("alice", "s3cret", "s3cret", to_bob.message_id)
    with pytest.raises(NotFoundError):
        messenger.read_message("alice", "s3cret", "s3cret", "missing")
    for index in (0, 2, -1):
        with pytest.raises(NotFoundError):
            messenger.read_message("alice", "s3cret", "s3cret", index)


def test_read_message_wrong_credentials(alice_and_bob):
    """Test reading requires both the password and the passphrase."""
    messenger = alice_and_bob
    messenger.send_message("bob", "s3cret", "alice", "secret")

    with pytest.raises(AuthenticationError):
        messenger.read_message("alice", "wrong", "s3cret", 1)
    with pytest.raises(InvalidPassphraseError):
        messenger.read_message("alice", "s3cret", "wrong", 1)


def test_share_public_key(alice_and_bob, other_key_material):
    """Test sharing republishes the local public key."""
    messenger = alice_and_bob
    local_pem = messenger.key_manager.read_public_key("alice")
    messenger.directory.publish_public_key("alice", "s3cret", other_key_material["public_pem"])

    record = messenger.share_public_key("alice", "s3cret")

    assert record.public_key_pem == local_pem
    with pytest.raises(AuthenticationError):
        messenger.share_public_key("alice", "wrong")
    with pytest.raises(KeyFileNotFoundError):
        messenger.share_public_key("carol", "s3cret")


def test_download_public_key(alice_and_bob):
    """Test downloading stores the published key under contacts/."""
    messenger = alice_and_bob
    path = messenger.download_public_key("bob")

    assert path.name == "bob.pem"
    assert path.read_text() == messenger.directory.lookup_public_key("bob")
    with pytest.raises(NotFoundError):
        messenger.download_public_key("carol")


def test_messenger_from_parts(store, key_manager, hasher):
    """Test a Messenger assembled by hand registers and authenticates."""
    messenger = Messenger(store, key_manager, DirectoryService(store.users, hasher), key_size=2048)
    messenger.generate_keys("dave", "s3cret")
    assert messenger.directory.authenticate("dave", "s3cret").username == "dave"
