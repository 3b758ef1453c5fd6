"""Encryption service for certificate containers and passwords at rest."""

import base64
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from verifactu_api.settings import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class DecryptionError(ValueError):
    """Stored ciphertext could not be decrypted."""


class EncryptionService:
    """Envelope encryption for sensitive tenant material.

    ``local`` derives a Fernet key from SECRET_KEY and a per-installation
    salt. ``aws_kms`` asks KMS for a data key per value (containers exceed the
    KMS direct-encrypt size limit) and stores the wrapped key with the token.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        secret_key: Optional[str] = None,
        salt: Optional[str] = None,
        key_id: Optional[str] = None,
    ):
        """Initialize encryption service."""
        self.provider = (provider or settings.certificate_encryption_provider).lower()
        self.key_id = key_id or settings.certificate_encryption_key_id
        self._secret_key = secret_key or settings.secret_key
        self._salt = salt or settings.local_encryption_salt
        self._kms_client = None
        self._fernet = None
        self._initialize()

    def _initialize(self):
        """Initialize encryption backend."""
        if not settings.is_local and self.provider == "local":
            raise ValueError(
                f"Local encryption provider not allowed in {settings.environment} environment. "
                "Set CERTIFICATE_ENCRYPTION_PROVIDER=aws_kms and configure KMS keys."
            )

        if self.provider == "aws_kms":
            if not self.key_id:
                raise ValueError("CERTIFICATE_ENCRYPTION_KEY_ID required for AWS KMS encryption")
            if not settings.aws_region:
                raise ValueError("AWS_REGION required for AWS KMS encryption")

            try:
                self._kms_client = boto3.client(
                    "kms",
                    region_name=settings.aws_region,
                    aws_access_key_id=settings.aws_access_key_id,
                    aws_secret_access_key=settings.aws_secret_access_key,
                )
                self._kms_client.describe_key(KeyId=self.key_id)
                logger.info(f"KMS encryption initialized with key {self.key_id}")
            except ClientError as e:
                error_code = e.response.get("Error", {}).get("Code", "")
                if error_code == "NotFoundException":
                    raise ValueError(f"KMS encryption key {self.key_id} not found")
                raise ValueError(f"Failed to initialize KMS encryption: {e}")
            except BotoCoreError as e:
                raise ValueError(f"Failed to initialize KMS client: {e}")
        elif self.provider == "local":
            if not self._salt:
                raise ValueError(
                    "LOCAL_ENCRYPTION_SALT required when CERTIFICATE_ENCRYPTION_PROVIDER=local. "
                    "Generate a random 32-byte salt per installation."
                )

            try:
                salt_bytes = base64.b64decode(self._salt, validate=True)
            except ValueError:
                salt_bytes = self._salt.encode()[:32].ljust(32, b"\0")

            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=salt_bytes,
                iterations=100000,
            )
            key = base64.urlsafe_b64encode(kdf.derive(self._secret_key.encode()))
            self._fernet = Fernet(key)
            logger.info("Local Fernet encryption initialized with per-installation salt")
        else:
            raise ValueError(f"Unknown encryption provider: {self.provider}")

    def encrypt_bytes(self, plaintext: bytes, encryption_context: Optional[dict] = None) -> dict:
        """Encrypt bytes and return ciphertext metadata."""
        context = encryption_context or {}
        if self.provider == "aws_kms":
            try:
                response = self._kms_client.generate_data_key(
                    KeyId=self.key_id,
                    KeySpec="AES_256",
                    EncryptionContext=context,
                )
            except ClientError as e:
                raise ValueError(f"KMS data key generation failed: {e}")
            fernet = Fernet(base64.urlsafe_b64encode(response["Plaintext"]))
            return {
                "ciphertext": fernet.encrypt(plaintext).decode(),
                "wrapped_key": base64.b64encode(response["CiphertextBlob"]).decode(),
                "key_id": response["KeyId"],
                "encryption_context": context,
            }

        return {
            "ciphertext": self._fernet.encrypt(plaintext).decode(),
            "key_id": "local",
            "encryption_context": context,
        }

    def decrypt_bytes(self, ciphertext_data: dict) -> bytes:
        """Decrypt ciphertext metadata produced by ``encrypt_bytes``."""
        token = ciphertext_data["ciphertext"].encode()
        try:
            if self.provider == "aws_kms":
                try:
                    response = self._kms_client.decrypt(
                        CiphertextBlob=base64.b64decode(ciphertext_data["wrapped_key"]),
                        EncryptionContext=ciphertext_data.get("encryption_context", {}),
                    )
                except ClientError as e:
                    raise DecryptionError(f"KMS decryption failed: {e}")
                fernet = Fernet(base64.urlsafe_b64encode(response["Plaintext"]))
                return fernet.decrypt(token)
            return self._fernet.decrypt(token)
        except (InvalidToken, KeyError) as e:
            raise DecryptionError(f"Stored ciphertext is invalid: {e.__class__.__name__}")

    def encrypt(self, plaintext: str, encryption_context: Optional[dict] = None) -> dict:
        """Encrypt text and return ciphertext metadata."""
        return self.encrypt_bytes(plaintext.encode(), encryption_context)

    def decrypt(self, ciphertext_data: dict) -> str:
        """Decrypt ciphertext and return plaintext."""
        return self.decrypt_bytes(ciphertext_data).decode()


# Global encryption service instance
_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
