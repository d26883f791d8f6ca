from functools import cache

from cryptography.fernet import Fernet, InvalidToken

from mailsync.exceptions import InternalError
from settings import settings


@cache
def _cipher_suite() -> Fernet:
    return Fernet(settings.password_encryption_key.encode())


class PasswordUtils:
    """Encrypts stored passwords and OAuth2 tokens at rest."""

    @staticmethod
    def encrypt_secret(secret: str) -> str:
        return _cipher_suite().encrypt(secret.encode()).decode()

    @staticmethod
    def decrypt_secret(secret: str) -> str:
        try:
            return _cipher_suite().decrypt(secret.encode()).decode()
        except InvalidToken:
            raise InternalError("Stored credential could not be decrypted")
