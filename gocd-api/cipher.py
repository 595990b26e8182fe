import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


logger = logging.getLogger("gocd.api")

CIPHER_KEY_SETTING = "cipher_key"


class CipherError(Exception):
    pass


class GoCipher:
    """Encrypts secure configuration values (secure environment variables,
    secure plugin properties and material passwords) with a server-wide key."""

    def __init__(self, key: str) -> None:
        try:
            self._fernet = Fernet(key.encode("utf-8") if isinstance(key, str) else key)
        except (TypeError, ValueError) as exc:
            raise CipherError("Cipher key must be a url-safe base64 encoded 32-byte key") from exc

    def encrypt(self, plain_text: Optional[str]) -> Optional[str]:
        if plain_text is None:
            return None
        return self._fernet.encrypt(plain_text.encode("utf-8")).decode("utf-8")

    def decrypt(self, cipher_text: Optional[str]) -> Optional[str]:
        if cipher_text is None:
            return None
        if not isinstance(cipher_text, str):
            raise CipherError("Encrypted value must be a string")
        try:
            return self._fernet.decrypt(cipher_text.encode("utf-8")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise CipherError("Encrypted value could not be decrypted with the server cipher key") from exc

    def is_encrypted_with_this_key(self, cipher_text: Optional[str]) -> bool:
        if not cipher_text:
            return False
        try:
            self.decrypt(cipher_text)
        except CipherError:
            return False
        return True


def build_cipher(storage, configured_key: Optional[str]) -> GoCipher:
    if configured_key:
        return GoCipher(configured_key)
    key = storage.get_server_setting(CIPHER_KEY_SETTING)
    if not key:
        key = Fernet.generate_key().decode("utf-8")
        storage.set_server_setting(CIPHER_KEY_SETTING, key)
        logger.info("cipher.key generated source=store")
    return GoCipher(key)
