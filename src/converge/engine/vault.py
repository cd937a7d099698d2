# Copyright (c) 2024 Converge Contributors
# MIT License

"""
Converge Vault Support

Decrypt Ansible Vault encrypted vars files, so secrets such as the admin and
database passwords can live encrypted next to the playbook.
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import os
import re
import subprocess
from pathlib import Path
from typing import Optional, Union

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from converge.engine.errors import VaultError


VAULT_HEADER = "$ANSIBLE_VAULT"
VAULT_HEADER_REGEX = re.compile(r'^\$ANSIBLE_VAULT;(\d+\.\d+);(AES256)(?:;([\w.-]+))?$')

KDF_ITERATIONS = 10000


class VaultSecret:
    """A vault password."""

    def __init__(self, password: Union[str, bytes]):
        if isinstance(password, str):
            self.password = password.encode('utf-8')
        else:
            self.password = password

    @classmethod
    def from_file(cls, password_file: Union[str, Path]) -> 'VaultSecret':
        """
        Load a vault password from a file.

        Executable files are treated as password scripts: their stdout is the
        password.
        """
        path = Path(password_file).expanduser()
        if not path.exists():
            raise VaultError(f"Vault password file not found: {path}")

        if os.access(path, os.X_OK):
            try:
                result = subprocess.run(
                    [str(path)],
                    capture_output=True,
                    text=True,
                    timeout=30,
                )
            except subprocess.TimeoutExpired:
                raise VaultError("Vault password script timed out")
            if result.returncode != 0:
                raise VaultError(f"Vault password script failed: {result.stderr.strip()}")
            return cls(result.stdout.strip())

        return cls(path.read_text(encoding='utf-8').strip())


class VaultLib:
    """
    Ansible Vault decryption.

    Supports the AES256 envelope (formats 1.1 and 1.2).
    """

    def __init__(self, secrets: Optional[list[VaultSecret]] = None):
        self.secrets = list(secrets or [])

    def add_secret(self, secret: VaultSecret) -> None:
        self.secrets.append(secret)

    def is_encrypted(self, data: Union[str, bytes]) -> bool:
        """Check if data is vault encrypted."""
        if isinstance(data, bytes):
            try:
                data = data.decode('utf-8')
            except UnicodeDecodeError:
                return False

        return isinstance(data, str) and data.lstrip().startswith(VAULT_HEADER)

    def decrypt(self, data: Union[str, bytes]) -> bytes:
        """
        Decrypt vault-encrypted data.

        Args:
            data: Vault envelope (header line followed by hex payload)

        Returns:
            Decrypted content as bytes

        Raises:
            VaultError: malformed envelope, no secret configured, or no
                secret produced a valid HMAC
        """
        if isinstance(data, bytes):
            data = data.decode('utf-8')

        lines = data.strip().splitlines()
        if not lines:
            raise VaultError("Empty vault data")

        header = lines[0].strip()
        if not VAULT_HEADER_REGEX.match(header):
            raise VaultError(f"Invalid vault header: {header}")

        payload_hex = ''.join(line.strip() for line in lines[1:])
        try:
            payload = binascii.unhexlify(payload_hex)
        except binascii.Error as e:
            raise VaultError(f"Invalid vault payload: {e}")

        if not self.secrets:
            raise VaultError("Encrypted content found but no vault password was provided")

        for secret in self.secrets:
            try:
                return self._decrypt_aes256(payload, secret.password)
            except VaultError:
                continue

        raise VaultError("Vault decryption failed: no valid password found")

    def decrypt_file(self, file_path: Union[str, Path]) -> bytes:
        """Decrypt a vault-encrypted file."""
        path = Path(file_path)
        if not path.exists():
            raise VaultError(f"Vault file not found: {path}")
        return self.decrypt(path.read_text(encoding='utf-8'))

    def _decrypt_aes256(self, payload: bytes, password: bytes) -> bytes:
        """
        Decrypt the inner payload.

        The inner payload is three hex strings joined by newlines:
        salt, HMAC-SHA256 of the ciphertext, ciphertext.
        """
        try:
            salt_hex, hmac_hex, ciphertext_hex = payload.decode('ascii').split('\n', 2)
            salt = binascii.unhexlify(salt_hex)
            expected_hmac = binascii.unhexlify(hmac_hex)
            ciphertext = binascii.unhexlify(ciphertext_hex.strip())
        except (UnicodeDecodeError, ValueError, binascii.Error) as e:
            raise VaultError(f"Invalid vault data format: {e}")

        derived = hashlib.pbkdf2_hmac('sha256', password, salt, KDF_ITERATIONS, 80)
        key = derived[:32]
        hmac_key = derived[32:64]
        iv = derived[64:80]

        computed_hmac = hmac.new(hmac_key, ciphertext, hashlib.sha256).digest()
        if not hmac.compare_digest(computed_hmac, expected_hmac):
            raise VaultError("HMAC verification failed - wrong password?")

        decryptor = Cipher(algorithms.AES(key), modes.CTR(iv)).decryptor()
        plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        return _unpad_pkcs7(plaintext)


def _unpad_pkcs7(data: bytes) -> bytes:
    """Remove PKCS7 padding (128-bit blocks)."""
    if not data:
        return data

    padding_len = data[-1]
    if padding_len == 0 or padding_len > 16 or padding_len > len(data):
        raise VaultError("Invalid padding in decrypted vault data")
    if not all(b == padding_len for b in data[-padding_len:]):
        raise VaultError("Invalid padding in decrypted vault data")
    return data[:-padding_len]


def decrypt_vault_string(encrypted: str, password: str) -> str:
    """Convenience function to decrypt a vault string."""
    vault = VaultLib([VaultSecret(password)])
    return vault.decrypt(encrypted).decode('utf-8')
