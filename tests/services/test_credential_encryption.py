"""Tests for AES-256-GCM portal credential encryption."""

import base64
import json
import os
import platform
import stat

import pytest

from src.services.credential_encryption import (
    KEY_FILENAME,
    CredentialDecryptionError,
    build_credential_record,
    decode_key,
    decrypt_credentials,
    encrypt_credentials,
    get_default_key_dir,
    get_or_create_key,
)


@pytest.fixture
def temp_key_dir(tmp_path, monkeypatch):
    """Provide a temporary key directory with no env key overrides."""
    monkeypatch.delenv("HNSYNC_CREDENTIAL_KEY", raising=False)
    monkeypatch.delenv("HNSYNC_CREDENTIAL_KEY_FILE", raising=False)
    return str(tmp_path)


class TestKeyManagement:
    """Tests for encryption key file lifecycle."""

    def test_creates_key_file(self, temp_key_dir):
        key = get_or_create_key(key_dir=temp_key_dir)
        assert len(key) == 32
        assert os.path.exists(os.path.join(temp_key_dir, ".hnsync_key"))

    def test_is_idempotent(self, temp_key_dir):
        assert get_or_create_key(key_dir=temp_key_dir) == get_or_create_key(key_dir=temp_key_dir)

    @pytest.mark.skipif(platform.system() == "Windows", reason="Unix permissions")
    def test_key_file_is_owner_only(self, temp_key_dir):
        get_or_create_key(key_dir=temp_key_dir)
        mode = os.stat(os.path.join(temp_key_dir, KEY_FILENAME)).st_mode
        assert stat.S_IMODE(mode) == 0o600

    def test_wrong_length_key_file_raises(self, temp_key_dir):
        with open(os.path.join(temp_key_dir, KEY_FILENAME), "wb") as f:
            f.write(b"short")
        with pytest.raises(ValueError, match="invalid length"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_env_key_takes_precedence(self, temp_key_dir, monkeypatch):
        """HNSYNC_CREDENTIAL_KEY wins and no key file is written."""
        raw = os.urandom(32)
        monkeypatch.setenv("HNSYNC_CREDENTIAL_KEY", base64.b64encode(raw).decode())

        assert get_or_create_key(key_dir=temp_key_dir) == raw
        assert not os.path.exists(os.path.join(temp_key_dir, KEY_FILENAME))

    def test_env_key_bad_base64_raises(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("HNSYNC_CREDENTIAL_KEY", "%%%not-base64%%%")
        with pytest.raises(ValueError, match="invalid base64"):
            get_or_create_key(key_dir=temp_key_dir)

    def test_env_key_file(self, temp_key_dir, monkeypatch):
        raw = os.urandom(32)
        path = os.path.join(temp_key_dir, "custom_key")
        with open(path, "wb") as f:
            f.write(raw)
        monkeypatch.setenv("HNSYNC_CREDENTIAL_KEY_FILE", path)

        assert get_or_create_key() == raw

    def test_env_key_file_missing_raises(self, temp_key_dir, monkeypatch):
        monkeypatch.setenv("HNSYNC_CREDENTIAL_KEY_FILE", "/nonexistent/path/key")
        with pytest.raises(ValueError, match="regular file"):
            get_or_create_key()

    def test_env_key_file_symlink_raises(self, temp_key_dir, monkeypatch):
        real_path = os.path.join(temp_key_dir, "real_key")
        with open(real_path, "wb") as f:
            f.write(os.urandom(32))
        link_path = os.path.join(temp_key_dir, "link_key")
        os.symlink(real_path, link_path)
        monkeypatch.setenv("HNSYNC_CREDENTIAL_KEY_FILE", link_path)

        with pytest.raises(ValueError):
            get_or_create_key()

    def test_default_key_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
        assert "hns-sync" in get_default_key_dir()

    def test_decode_key_strips_whitespace(self):
        raw = os.urandom(32)
        assert decode_key(f"  {base64.b64encode(raw).decode()}\n") == raw


class TestEncryptDecrypt:
    """Tests for the versioned envelope and its aad binding."""

    @pytest.fixture
    def key(self):
        return os.urandom(32)

    def test_round_trip(self, key):
        record = build_credential_record("tech1", "s3cret", "https://portal.test/login")
        envelope = encrypt_credentials(record, key, aad="hns:creds:u1")
        assert decrypt_credentials(envelope, key, aad="hns:creds:u1") == record

    def test_envelope_format(self, key):
        envelope = json.loads(encrypt_credentials({"k": "v"}, key))
        assert envelope["v"] == 1
        assert envelope["alg"] == "AES-256-GCM"
        assert len(base64.b64decode(envelope["nonce"])) == 12

    def test_unique_nonce(self, key):
        assert encrypt_credentials({"a": 1}, key) != encrypt_credentials({"a": 1}, key)

    def test_blob_under_another_users_key_fails(self, key):
        """A blob copied to another storage key does not decrypt."""
        envelope = encrypt_credentials({"username": "tech1"}, key, aad="hns:creds:u1")
        with pytest.raises(CredentialDecryptionError):
            decrypt_credentials(envelope, key, aad="hns:creds:u2")

    def test_wrong_key_fails(self, key):
        envelope = encrypt_credentials({"k": "v"}, key)
        with pytest.raises(CredentialDecryptionError):
            decrypt_credentials(envelope, os.urandom(32))

    def test_tampered_ciphertext_fails(self, key):
        envelope = json.loads(encrypt_credentials({"k": "v"}, key))
        raw = base64.b64decode(envelope["ct"])
        envelope["ct"] = base64.b64encode(raw[:-1] + bytes([raw[-1] ^ 0xFF])).decode()
        with pytest.raises(CredentialDecryptionError):
            decrypt_credentials(json.dumps(envelope), key)

    @pytest.mark.parametrize("blob, message", [
        ("not_valid_json{{{", "Invalid envelope format"),
        ("[1, 2]", "not a JSON object"),
        (json.dumps({"v": 99, "alg": "AES-256-GCM", "nonce": "AA==", "ct": "BB=="}),
         "Unsupported envelope version"),
        (json.dumps({"v": 1, "alg": "ROT13", "nonce": "AA==", "ct": "BB=="}),
         "Unsupported algorithm"),
        (json.dumps({"v": 1, "alg": "AES-256-GCM", "ct": "BB=="}), "Malformed envelope"),
        (json.dumps({"v": 1, "alg": "AES-256-GCM", "nonce": "AA==", "ct": "BB=="}),
         "Invalid nonce length"),
    ])
    def test_malformed_envelopes(self, key, blob, message):
        with pytest.raises(CredentialDecryptionError, match=message):
            decrypt_credentials(blob, key)

    def test_short_key_rejected(self, key):
        with pytest.raises(ValueError):
            encrypt_credentials({}, b"short")
        with pytest.raises(CredentialDecryptionError, match="32 bytes"):
            decrypt_credentials(encrypt_credentials({}, key), b"short")


class TestCredentialRecord:

    def test_fields(self):
        record = build_credential_record("tech1", "s3cret", "https://portal.test/login")
        assert record["username"] == "tech1"
        assert record["password"] == "s3cret"
        assert record["loginUrl"] == "https://portal.test/login"
        assert record["createdAt"].endswith("+00:00")
