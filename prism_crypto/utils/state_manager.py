# state_manager.py - Encrypted persistence and backup for Double Ratchet sessions
import json
import logging
import os
import re
import secrets
import shutil
import time
from base64 import b64encode, b64decode
from pathlib import Path
from typing import Dict, List, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.double_ratchet import DoubleRatchetSession
from ..core.serialization import dumps_session, loads_session
from ..security.keys import PrivatePrekeyStore
from .error_handler import (
    ErrorHandler,
    MessageFormatInvalid,
    StateDeserializationFailed,
    StateNotFound,
    StateSerializationFailed,
)

logger = logging.getLogger(__name__)

PACKAGE_VERSION = '1.0'
PBKDF2_ITERATIONS = 100000
SALT_LENGTH = 16
NONCE_LENGTH = 12

_SAFE_ID = re.compile(r'^[A-Za-z0-9_.@-]+$')

# Never a valid chat id, so the prekey file cannot be passed off as a session.
PREKEY_STORE_ID = '#prekeys'
PREKEY_STORE_FILENAME = 'prekeys.enc'


class SessionStore:
    """Password-encrypted session files, one per chat, with timestamped backups"""

    def __init__(self, state_dir: Union[str, Path], password: str,
                 error_handler: Optional[ErrorHandler] = None):
        if not password:
            raise ValueError("Session store password must not be empty")
        self.error_handler = error_handler or ErrorHandler()
        self.state_dir = Path(state_dir)
        self.backup_dir = self.state_dir / "backups"
        self._password = password

        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    def _derive_key(self, salt: bytes) -> bytes:
        """Derive encryption key from password using PBKDF2"""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._password.encode())

    def _state_file(self, chat_id: str) -> Path:
        if not _SAFE_ID.match(chat_id) or chat_id in ('.', '..'):
            raise ValueError(f"Invalid chat id for a state file name: {chat_id!r}")
        return self.state_dir / f"{chat_id}_state.enc"

    def _encrypt_data(self, plaintext: str, chat_id: str) -> str:
        """Encrypt data using AES-256-GCM with a PBKDF2 key; the chat id is authenticated"""
        salt = secrets.token_bytes(SALT_LENGTH)
        nonce = secrets.token_bytes(NONCE_LENGTH)
        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, plaintext.encode(), chat_id.encode())

        return json.dumps({
            'salt': b64encode(salt).decode(),
            'nonce': b64encode(nonce).decode(),
            'ciphertext': b64encode(ciphertext).decode(),
            'version': PACKAGE_VERSION,
        })

    def _decrypt_data(self, encrypted_data: str, chat_id: str) -> str:
        try:
            package = json.loads(encrypted_data)
            if package.get('version') != PACKAGE_VERSION:
                raise StateDeserializationFailed(f"Unsupported state package version: {package.get('version')!r}")
            salt = b64decode(package['salt'])
            nonce = b64decode(package['nonce'])
            ciphertext = b64decode(package['ciphertext'])
        except (KeyError, TypeError, ValueError) as e:
            raise StateDeserializationFailed(f"Corrupt state package: {e}")

        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(nonce, ciphertext, chat_id.encode())
        except (InvalidTag, ValueError):
            raise StateDeserializationFailed("State decryption failed: wrong password or tampered file",
                                             {'chat_id': chat_id})
        return plaintext.decode()

    def session_exists(self, chat_id: str) -> bool:
        """Check if a state file exists for the chat"""
        return self._state_file(chat_id).exists()

    def _write_atomic(self, path: Path, encrypted: str, context: str) -> None:
        tmp_file = path.with_name(path.name + ".tmp")
        try:
            with open(tmp_file, 'w') as f:
                f.write(encrypted)
            os.replace(tmp_file, path)
        except OSError as e:
            error = StateSerializationFailed(f"Could not write {path.name}: {e}")
            self.error_handler.handle_error(error, context)
            raise error

    def save_session(self, chat_id: str, session: DoubleRatchetSession) -> None:
        """Encrypt and write the session, replacing any previous state atomically"""
        encrypted = self._encrypt_data(dumps_session(session), chat_id)
        self._write_atomic(self._state_file(chat_id), encrypted, f"save_session for {chat_id}")
        logger.debug("Saved session state for %s", chat_id)

    def load_session(self, chat_id: str) -> DoubleRatchetSession:
        """Load and decrypt the session for a chat"""
        state_file = self._state_file(chat_id)
        if not state_file.exists():
            raise StateNotFound(f"State file not found for chat {chat_id}", {'chat_id': chat_id})

        try:
            with open(state_file, 'r') as f:
                encrypted_data = f.read()
            return loads_session(self._decrypt_data(encrypted_data, chat_id))
        except StateDeserializationFailed as e:
            self.error_handler.handle_error(e, f"load_session for {chat_id}")
            raise

    def delete_session(self, chat_id: str) -> bool:
        """Delete state file for a chat"""
        state_file = self._state_file(chat_id)
        if state_file.exists():
            state_file.unlink()
            logger.info("Deleted session state for %s", chat_id)
            return True
        return False

    # -- private prekeys --------------------------------------------------

    @property
    def prekey_store_file(self) -> Path:
        return self.state_dir / PREKEY_STORE_FILENAME

    def prekey_store_exists(self) -> bool:
        return self.prekey_store_file.exists()

    def save_prekey_store(self, prekey_store: PrivatePrekeyStore) -> None:
        """Encrypt and write the private prekeys that back the published bundle"""
        encrypted = self._encrypt_data(json.dumps(prekey_store.to_dict()), PREKEY_STORE_ID)
        self._write_atomic(self.prekey_store_file, encrypted, "save_prekey_store")
        logger.debug("Saved prekey store (%d one-time prekeys)", len(prekey_store.prekeys))

    def load_prekey_store(self) -> PrivatePrekeyStore:
        if not self.prekey_store_exists():
            raise StateNotFound(f"No prekey store in {self.state_dir}")

        try:
            with open(self.prekey_store_file, 'r') as f:
                plaintext = self._decrypt_data(f.read(), PREKEY_STORE_ID)
            try:
                return PrivatePrekeyStore.from_dict(json.loads(plaintext))
            except (MessageFormatInvalid, ValueError) as e:
                raise StateDeserializationFailed(f"Corrupt prekey store: {e}")
        except StateDeserializationFailed as e:
            self.error_handler.handle_error(e, "load_prekey_store")
            raise

    def create_backup(self, chat_id: str, backup_name: Optional[str] = None) -> Optional[Path]:
        """Copy the current state file into the backup directory"""
        if not self.session_exists(chat_id):
            return None

        if backup_name is None:
            timestamp = time.strftime("%Y%m%d_%H%M%S")
            backup_name = f"{chat_id}_backup_{timestamp}_{secrets.token_hex(2)}.enc"

        backup_file = self.backup_dir / backup_name
        shutil.copy2(self._state_file(chat_id), backup_file)
        return backup_file

    def restore_from_backup(self, chat_id: str, backup_file: Union[str, Path]) -> DoubleRatchetSession:
        """Restore state from a backup file after checking that it decrypts"""
        backup_file = Path(backup_file)
        if not backup_file.exists():
            raise StateNotFound(f"Backup file not found: {backup_file}")

        with open(backup_file, 'r') as f:
            session = loads_session(self._decrypt_data(f.read(), chat_id))

        shutil.copy2(backup_file, self._state_file(chat_id))
        logger.info("Restored session state for %s from %s", chat_id, backup_file.name)
        return session

    def list_backups(self, chat_id: str) -> List[Dict]:
        """List all backup files for a chat, newest first"""
        self._state_file(chat_id)
        backups = []
        for path in self.backup_dir.glob(f"{chat_id}_backup_*.enc"):
            stat = path.stat()
            backups.append({
                'name': path.name,
                'path': path,
                'size': stat.st_size,
                'modified': stat.st_mtime,
            })
        return sorted(backups, key=lambda x: x['modified'], reverse=True)
