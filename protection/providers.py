"""
Key provider adapters.

A KeyProvider wraps one key-management backend and converts every failure into
a ProviderResult tagged TRANSIENT or PERMANENT. Backend error names are only
looked at here.
"""

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Dict, Any

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from cryptography.fernet import Fernet, InvalidToken

from config_manager import EncryptionConfig, ConfigurationError
from protection.errors import ProviderErrorKind

logger = logging.getLogger(__name__)


# KMS error codes that may succeed when retried
TRANSIENT_ERROR_CODES = frozenset({
    "ThrottlingException",
    "LimitExceededException",
    "KMSInternalException",
    "ServiceUnavailableException",
    "ServiceUnavailable",
    "DependencyTimeoutException",
    "KeyUnavailableException",
    "RequestTimeout",
    "RequestTimeoutException",
    "TIMEOUT",
})


def classify_error_code(error_code: str) -> ProviderErrorKind:
    """Map a provider error code to a retry kind; unknown codes are permanent."""
    if error_code in TRANSIENT_ERROR_CODES:
        return ProviderErrorKind.TRANSIENT
    return ProviderErrorKind.PERMANENT


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of one key-provider call: a value or a classified failure"""
    value: Optional[str] = None
    error_kind: Optional[ProviderErrorKind] = None
    error_code: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @property
    def is_transient(self) -> bool:
        return self.error_kind == ProviderErrorKind.TRANSIENT

    @classmethod
    def success(cls, value: str) -> 'ProviderResult':
        return cls(value=value)

    @classmethod
    def failure(cls, error_code: str, message: str = "",
                kind: Optional[ProviderErrorKind] = None) -> 'ProviderResult':
        return cls(
            error_kind=kind or classify_error_code(error_code),
            error_code=error_code,
            message=message
        )

    @classmethod
    def transient(cls, error_code: str, message: str = "") -> 'ProviderResult':
        return cls.failure(error_code, message, ProviderErrorKind.TRANSIENT)

    @classmethod
    def permanent(cls, error_code: str, message: str = "") -> 'ProviderResult':
        return cls.failure(error_code, message, ProviderErrorKind.PERMANENT)


class KeyProvider(ABC):
    """Abstract key-management backend"""

    name = "base"

    @abstractmethod
    async def encrypt(self, plaintext: str, key_id: str) -> ProviderResult:
        """Encrypt plaintext under key_id; ok value is an opaque ciphertext string"""

    @abstractmethod
    async def decrypt(self, ciphertext: str, key_id: str) -> ProviderResult:
        """Decrypt a ciphertext produced by encrypt(); ok value is the plaintext"""


# ============================================
# AWS KMS
# ============================================

class AwsKmsKeyProvider(KeyProvider):
    """
    AWS KMS adapter.

    boto3 calls block, so they run in a worker thread. The ciphertext handed
    back to callers is the base64 encoding of the KMS ciphertext blob.
    """

    name = "aws_kms"

    def __init__(self, region: Optional[str] = None, client: Any = None):
        """
        Args:
            region: AWS region for the KMS client
            client: Pre-built KMS client (tests inject a stub here)
        """
        self.region = region
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("kms", region_name=self.region)
        return self._client

    async def encrypt(self, plaintext: str, key_id: str) -> ProviderResult:
        try:
            response = await asyncio.to_thread(
                self.client.encrypt,
                KeyId=key_id,
                Plaintext=plaintext.encode('utf-8')
            )
        except ClientError as e:
            return self._client_error_result(e)
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            return ProviderResult.transient(type(e).__name__, str(e))
        except BotoCoreError as e:
            return ProviderResult.permanent(type(e).__name__, str(e))

        blob = response.get("CiphertextBlob")
        if not blob:
            return ProviderResult.permanent("EmptyCiphertext", "KMS returned no ciphertext")
        return ProviderResult.success(base64.b64encode(blob).decode('ascii'))

    async def decrypt(self, ciphertext: str, key_id: str) -> ProviderResult:
        try:
            blob = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError):
            return ProviderResult.permanent("InvalidCiphertextException", "Ciphertext is not valid base64")

        try:
            response = await asyncio.to_thread(
                self.client.decrypt,
                CiphertextBlob=blob,
                KeyId=key_id
            )
        except ClientError as e:
            return self._client_error_result(e)
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError) as e:
            return ProviderResult.transient(type(e).__name__, str(e))
        except BotoCoreError as e:
            return ProviderResult.permanent(type(e).__name__, str(e))

        plaintext = response.get("Plaintext")
        if plaintext is None:
            return ProviderResult.permanent("EmptyPlaintext", "KMS returned no plaintext")
        try:
            return ProviderResult.success(plaintext.decode('utf-8'))
        except UnicodeDecodeError:
            return ProviderResult.permanent("InvalidPlaintextEncoding", "Plaintext is not UTF-8")

    @staticmethod
    def _client_error_result(error: ClientError) -> ProviderResult:
        details = error.response.get("Error", {})
        code = details.get("Code", "Unknown")
        message = details.get("Message", "")
        return ProviderResult.failure(code, message)


# ============================================
# FERNET (local)
# ============================================

class FernetKeyProvider(KeyProvider):
    """
    Local symmetric provider built on cryptography's Fernet.

    Keys are looked up by key_id. Meant for development and tests; there is no
    remote call, so nothing is ever transient.
    """

    name = "fernet"

    def __init__(self, keys: Dict[str, str]):
        """
        Args:
            keys: Mapping of key_id to urlsafe base64 Fernet key
        """
        self._fernets: Dict[str, Fernet] = {
            key_id: Fernet(key.encode('ascii') if isinstance(key, str) else key)
            for key_id, key in keys.items()
        }

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode('ascii')

    def _fernet(self, key_id: str) -> Optional[Fernet]:
        return self._fernets.get(key_id)

    async def encrypt(self, plaintext: str, key_id: str) -> ProviderResult:
        fernet = self._fernet(key_id)
        if fernet is None:
            return ProviderResult.permanent("NotFoundException", f"Unknown key: {key_id}")
        token = fernet.encrypt(plaintext.encode('utf-8'))
        return ProviderResult.success(token.decode('ascii'))

    async def decrypt(self, ciphertext: str, key_id: str) -> ProviderResult:
        fernet = self._fernet(key_id)
        if fernet is None:
            return ProviderResult.permanent("NotFoundException", f"Unknown key: {key_id}")
        try:
            plaintext = fernet.decrypt(ciphertext.encode('ascii'))
        except (InvalidToken, UnicodeEncodeError):
            return ProviderResult.permanent("InvalidCiphertextException", "Invalid Fernet token")
        try:
            return ProviderResult.success(plaintext.decode('utf-8'))
        except UnicodeDecodeError:
            return ProviderResult.permanent("InvalidPlaintextEncoding", "Plaintext is not UTF-8")


def create_key_provider(config: EncryptionConfig) -> KeyProvider:
    """
    Build the key provider named in the encryption config.

    Args:
        config: Encryption configuration

    Returns:
        KeyProvider instance

    Raises:
        ConfigurationError: If the provider is unknown or not configured
    """
    if config.provider == "aws_kms":
        logger.info(f"Using AWS KMS key provider (region={config.region})")
        return AwsKmsKeyProvider(region=config.region)
    if config.provider == "fernet":
        if not config.fernet_keys:
            raise ConfigurationError("encryption.fernet_keys is required for the fernet provider")
        logger.info(f"Using Fernet key provider with {len(config.fernet_keys)} key(s)")
        return FernetKeyProvider(config.fernet_keys)
    raise ConfigurationError(f"Unknown key provider: {config.provider}")
