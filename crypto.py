import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from config import Settings, get_settings


def derive_key(secret: str) -> bytes:
    digest = hashlib.sha256(b"credential-key:" + secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def fingerprint(credential: str) -> str:
    """Short stable tag for a credential; the only form that may be logged."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:12]


class CredentialVault:
    """Encrypts aggregator access credentials at rest.

    The first configured key encrypts; every configured key may decrypt, so
    keys can be rotated by prepending a new one.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        keys = settings.credential_keys or [derive_key(settings.secret_key).decode()]
        self._fernet = MultiFernet([Fernet(key) for key in keys])

    def encrypt(self, credential: str) -> str:
        return self._fernet.encrypt(credential.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise RuntimeError("Stored credential could not be decrypted") from exc

    def rotate(self, token: str) -> str:
        return self._fernet.rotate(token.encode("ascii")).decode("ascii")
