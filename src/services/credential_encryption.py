"""AES-256-GCM encryption for stored HughesNet portal credentials.

Each user's portal login is kept in the key-value store as a versioned JSON
envelope. The envelope is bound to its storage key through AES-GCM
additional authenticated data, so a blob copied under another user's key
fails to decrypt.

Key source precedence:
    1. HNSYNC_CREDENTIAL_KEY env var (base64-encoded 32-byte key)
    2. HNSYNC_CREDENTIAL_KEY_FILE env var (path to raw key file)
    3. platformdirs local file (auto-generated on first use)

Ciphertext format: {"v": 1, "alg": "AES-256-GCM", "nonce": <b64>, "ct": <b64>}.
"""

import base64
import binascii
import json
import logging
import os
import platform
import stat
from datetime import UTC, datetime

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_FILENAME = ".hnsync_key"
KEY_ENV = "HNSYNC_CREDENTIAL_KEY"
KEY_FILE_ENV = "HNSYNC_CREDENTIAL_KEY_FILE"
_CURRENT_VERSION = 1
_ALGORITHM = "AES-256-GCM"
_REQUIRED_KEY_LENGTH = 32
_NONCE_LENGTH = 12


class CredentialDecryptionError(Exception):
    """Raised when credential decryption fails for any reason."""


def get_default_key_dir() -> str:
    """Return the platform-appropriate app-data directory for key storage."""
    from platformdirs import user_data_dir

    return user_data_dir("hns-sync", ensure_exists=True)


def _check_length(key: bytes, source: str) -> bytes:
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise ValueError(
            f"{source} has invalid length {len(key)} (expected {_REQUIRED_KEY_LENGTH})"
        )
    return key


def decode_key(encoded: str) -> bytes:
    """Decode a base64 key string as used in config files and env vars.

    Raises:
        ValueError: If the value is not base64 or not 32 bytes long.
    """
    try:
        key = base64.b64decode(encoded.strip(), validate=True)
    except binascii.Error as e:
        raise ValueError(f"Credential key contains invalid base64: {e}") from e
    return _check_length(key, "Credential key")


def _read_key_file(path: str) -> bytes:
    with open(path, "rb") as f:
        key = _check_length(f.read(), f"Key file {path}")
    if platform.system() != "Windows":
        mode = stat.S_IMODE(os.stat(path).st_mode)
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            logger.warning("Key file %s is readable by others (mode %o); run chmod 600", path, mode)
    return key


def get_or_create_key(key_dir: str | None = None) -> bytes:
    """Return the credential key, generating a key file on first use.

    Args:
        key_dir: Directory for the generated key file. Defaults to the
            platformdirs app-data directory.

    Raises:
        ValueError: If a key from any source has the wrong length, or
            HNSYNC_CREDENTIAL_KEY_FILE is not a regular file.
    """
    encoded = os.environ.get(KEY_ENV, "").strip()
    if encoded:
        return decode_key(encoded)

    configured_path = os.environ.get(KEY_FILE_ENV, "").strip()
    if configured_path:
        if os.path.islink(configured_path) or not os.path.isfile(configured_path):
            raise ValueError(f"{KEY_FILE_ENV} must point to a regular file: {configured_path}")
        return _read_key_file(configured_path)

    directory = key_dir or get_default_key_dir()
    os.makedirs(directory, exist_ok=True)
    key_path = os.path.join(directory, KEY_FILENAME)
    if os.path.exists(key_path):
        return _read_key_file(key_path)

    key = os.urandom(_REQUIRED_KEY_LENGTH)
    try:
        fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Lost the creation race to another process; use its key.
        return _read_key_file(key_path)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    logger.info("Generated new credential key at %s", key_path)
    return key


def build_credential_record(username: str, password: str, login_url: str) -> dict:
    """Return the credential record stored for a connected portal user."""
    return {
        "username": username,
        "password": password,
        "loginUrl": login_url,
        "createdAt": datetime.now(UTC).isoformat(),
    }


def encrypt_credentials(credentials: dict, key: bytes, aad: str = "") -> str:
    """Encrypt a credentials dict to a versioned JSON envelope string.

    Args:
        credentials: Credential record (see build_credential_record).
        key: 32-byte AES-256 key.
        aad: Additional authenticated data, normally the storage key.

    Raises:
        ValueError: If key is not exactly 32 bytes.
    """
    _check_length(key, "Encryption key")
    nonce = os.urandom(_NONCE_LENGTH)
    plaintext = json.dumps(credentials, sort_keys=True).encode("utf-8")
    ciphertext = AESGCM(key).encrypt(nonce, plaintext, aad.encode("utf-8") or None)
    return json.dumps({
        "v": _CURRENT_VERSION,
        "alg": _ALGORITHM,
        "nonce": base64.b64encode(nonce).decode("ascii"),
        "ct": base64.b64encode(ciphertext).decode("ascii"),
    })


def decrypt_credentials(encrypted: str, key: bytes, aad: str = "") -> dict:
    """Decrypt a versioned JSON envelope string back to a credentials dict.

    Raises:
        CredentialDecryptionError: If decryption fails for any reason,
            including wrong key length, tampering or a mismatched aad.
    """
    if len(key) != _REQUIRED_KEY_LENGTH:
        raise CredentialDecryptionError(
            f"Decryption key must be exactly {_REQUIRED_KEY_LENGTH} bytes (got {len(key)})"
        )

    try:
        envelope = json.loads(encrypted)
    except (json.JSONDecodeError, TypeError) as e:
        raise CredentialDecryptionError(f"Invalid envelope format: {e}") from e
    if not isinstance(envelope, dict):
        raise CredentialDecryptionError("Envelope is not a JSON object")

    if envelope.get("v") != _CURRENT_VERSION:
        raise CredentialDecryptionError(
            f"Unsupported envelope version {envelope.get('v')} (expected {_CURRENT_VERSION})"
        )
    if envelope.get("alg") != _ALGORITHM:
        raise CredentialDecryptionError(
            f"Unsupported algorithm '{envelope.get('alg')}' (expected '{_ALGORITHM}')"
        )

    try:
        nonce = base64.b64decode(envelope["nonce"], validate=True)
        ciphertext = base64.b64decode(envelope["ct"], validate=True)
    except (KeyError, TypeError, binascii.Error) as e:
        raise CredentialDecryptionError(f"Malformed envelope fields: {e}") from e

    if len(nonce) != _NONCE_LENGTH:
        raise CredentialDecryptionError(
            f"Invalid nonce length {len(nonce)} (expected {_NONCE_LENGTH})"
        )

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, aad.encode("utf-8") or None)
        result = json.loads(plaintext.decode("utf-8"))
    except Exception as e:
        raise CredentialDecryptionError(f"Decryption failed: {e}") from e

    if not isinstance(result, dict):
        raise CredentialDecryptionError(
            f"Decrypted payload is not a dict (got {type(result).__name__})"
        )
    return result
