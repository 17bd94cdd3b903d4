"""
Field Encryption Gateway

Encrypts and decrypts individual sensitive fields through a KeyProvider, with:
- Exponential-backoff retries for transient provider failures (tenacity)
- A TTL/capacity-bounded plaintext cache in front of decrypt
- An audit event for every attempt, never carrying plaintext
- Prometheus counters and call timings

Usage:
    gateway = EncryptionGateway(provider, key_id="alias/kyc-data", audit_sink=sink)
    ciphertext = await gateway.encrypt_field("ID123", "rec-1", "identifier")
    plaintext = await gateway.decrypt_field(ciphertext, "rec-1", "identifier")
"""

import asyncio
import hashlib
import logging
from typing import Optional, Dict, Tuple, Callable, Awaitable

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_result

from audit_logger import AuditSink, AuditEvent, AuditAction, AuditStatus, emit_safely
from config_manager import ConfigManager
from log_utils import sanitize_for_logging
from monitoring import (
    record_event,
    async_timed_operation,
    ENCRYPTION_OPERATIONS,
    DECRYPTION_OPERATIONS,
    CACHE_HITS,
    ENCRYPTION_ERRORS,
    DECRYPTION_ERRORS,
)
from protection.cache import EncryptionCache
from protection.errors import (
    CacheEvictionError,
    DecryptionError,
    EncryptionError,
    ProtectionError,
    ProviderErrorKind,
)
from protection.hashing import IdentifierHasher
from protection.providers import KeyProvider, ProviderResult, create_key_provider

logger = logging.getLogger(__name__)

DECRYPTION_ERROR_SENTINEL = "[DECRYPTION_ERROR]"
ENCRYPTION_ERROR_SENTINEL = "[ENCRYPTION_ERROR]"

DEFAULT_RETRIES = 3

ENCRYPT = "encrypt"
DECRYPT = "decrypt"


def ciphertext_fingerprint(ciphertext: str) -> str:
    """Short digest used to refer to a ciphertext in audit events and logs."""
    return hashlib.sha256(ciphertext.encode('utf-8')).hexdigest()[:16]


class EncryptionGateway:
    """Field-level encryption facade over a KeyProvider"""

    def __init__(
        self,
        provider: KeyProvider,
        key_id: str,
        cache: Optional[EncryptionCache] = None,
        audit_sink: Optional[AuditSink] = None,
        hasher: Optional[IdentifierHasher] = None,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 8.0,
        call_timeout: Optional[float] = None,
        cache_on_encrypt: bool = True,
        default_retries: int = DEFAULT_RETRIES,
        cache_sweep_interval: Optional[float] = None
    ):
        """
        Initialize the gateway

        Args:
            provider: Key-management backend
            key_id: Key identifier passed to the provider on every call
            cache: Plaintext cache (a default-sized one is created if omitted)
            audit_sink: Destination for audit events (None disables auditing)
            hasher: Identifier hasher used by hash_field
            retry_base_delay: Delay before the first retry, doubled on each retry
            retry_max_delay: Upper bound for a single retry delay
            call_timeout: Per-attempt provider timeout in seconds
            cache_on_encrypt: Also cache ciphertext -> plaintext after encrypt
            default_retries: Retries used when a call does not pass its own
            cache_sweep_interval: Seconds between background purges of expired
                cache entries (None or 0 disables the sweep)
        """
        self.provider = provider
        self.key_id = key_id
        self.cache = cache if cache is not None else EncryptionCache()
        self.audit_sink = audit_sink
        self.hasher = hasher or IdentifierHasher()
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.call_timeout = call_timeout
        self.cache_on_encrypt = cache_on_encrypt
        self.default_retries = default_retries
        self.cache_sweep_interval = cache_sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: ConfigManager,
        provider: Optional[KeyProvider] = None,
        audit_sink: Optional[AuditSink] = None
    ) -> 'EncryptionGateway':
        """Build a gateway from the encryption and hashing config sections."""
        enc = config.encryption
        return cls(
            provider=provider or create_key_provider(enc),
            key_id=enc.key_id,
            cache=EncryptionCache(
                ttl_seconds=enc.cache_ttl_seconds,
                max_entries=enc.cache_max_entries
            ),
            audit_sink=audit_sink,
            hasher=IdentifierHasher(normalize=config.hashing.normalize),
            retry_base_delay=enc.retry_base_delay_seconds,
            retry_max_delay=enc.retry_max_delay_seconds,
            call_timeout=enc.call_timeout_seconds,
            cache_on_encrypt=enc.cache_on_encrypt,
            default_retries=enc.max_retries,
            cache_sweep_interval=enc.cache_sweep_interval_seconds
        )

    # ============================================
    # CACHE EXPIRY SWEEP
    # ============================================

    def start_cache_sweeper(self) -> None:
        """
        Purge expired cache entries in the background so plaintext does not
        outlive its TTL on an idle gateway. Needs a running event loop.
        """
        if not self.cache_sweep_interval or self.sweeper_running:
            return
        self._sweeper = asyncio.create_task(self._sweep_cache())
        logger.debug(f"Cache sweeper started (every {self.cache_sweep_interval}s)")

    async def stop_cache_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def _sweep_cache(self) -> None:
        while True:
            await asyncio.sleep(self.cache_sweep_interval)
            removed = self.cache.purge_expired()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired entr{'y' if removed == 1 else 'ies'}")

    # ============================================
    # PUBLIC OPERATIONS
    # ============================================

    async def encrypt_field(
        self,
        plaintext: str,
        resource_id: str,
        field_name: str,
        retries: Optional[int] = None
    ) -> str:
        """
        Encrypt one field value.

        Args:
            plaintext: Value to encrypt
            resource_id: Record the field belongs to (audit only)
            field_name: Name of the field (audit only)
            retries: Retries after the first attempt for transient failures

        Returns:
            Opaque ciphertext string

        Raises:
            EncryptionError: On a permanent failure or when retries are exhausted
        """
        result, attempts = await self._call_with_retry(
            ENCRYPT,
            lambda: self.provider.encrypt(plaintext, self.key_id),
            resource_id,
            field_name,
            self._retries(retries)
        )

        if not result.ok:
            record_event(ENCRYPTION_ERRORS)
            logger.error(
                f"Encryption failed for {sanitize_for_logging(resource_id)}/{sanitize_for_logging(field_name)} after {attempts} attempt(s): "
                f"{result.error_code}"
            )
            raise EncryptionError(
                f"Failed to encrypt field {field_name}: {result.error_code}",
                error_code=result.error_code or "UNKNOWN",
                kind=result.error_kind or ProviderErrorKind.PERMANENT,
                attempts=attempts,
                resource_id=resource_id,
                field_name=field_name
            )

        record_event(ENCRYPTION_OPERATIONS)
        if self.cache_on_encrypt:
            self._cache_put(result.value, plaintext)
        return result.value

    async def decrypt_field(
        self,
        ciphertext: str,
        resource_id: str,
        field_name: str,
        retries: Optional[int] = None
    ) -> str:
        """
        Decrypt one field value, serving from the cache when possible.

        Args:
            ciphertext: Value produced by encrypt_field
            resource_id: Record the field belongs to (audit only)
            field_name: Name of the field (audit only)
            retries: Retries after the first attempt for transient failures

        Returns:
            Plaintext

        Raises:
            DecryptionError: On a permanent failure or when retries are exhausted
        """
        cached = self.cache.get(ciphertext)
        if cached is not None:
            record_event(CACHE_HITS)
            await self._audit(AuditEvent(
                action=AuditAction.DATA_DECRYPTED,
                status=AuditStatus.SUCCESS,
                resource_id=resource_id,
                resource_type="field",
                field_name=field_name,
                metadata={'cache_hit': True}
            ))
            return cached

        result, attempts = await self._call_with_retry(
            DECRYPT,
            lambda: self.provider.decrypt(ciphertext, self.key_id),
            resource_id,
            field_name,
            self._retries(retries)
        )

        if not result.ok:
            record_event(DECRYPTION_ERRORS)
            logger.error(
                f"Decryption failed for {sanitize_for_logging(resource_id)}/{sanitize_for_logging(field_name)} after {attempts} attempt(s): "
                f"{result.error_code}"
            )
            raise DecryptionError(
                f"Failed to decrypt field {field_name}: {result.error_code}",
                error_code=result.error_code or "UNKNOWN",
                kind=result.error_kind or ProviderErrorKind.PERMANENT,
                attempts=attempts,
                resource_id=resource_id,
                field_name=field_name
            )

        record_event(DECRYPTION_OPERATIONS)
        self._cache_put(ciphertext, result.value)
        return result.value

    def hash_field(self, plaintext: str) -> str:
        """Deterministic correlation hash of a field value."""
        return self.hasher.hash(plaintext)

    async def clear_cache(self, ciphertext: Optional[str] = None) -> int:
        """
        Drop one cache entry, or the whole cache.

        Args:
            ciphertext: Entry to drop; None clears everything

        Returns:
            Number of entries removed
        """
        if ciphertext is not None:
            removed = 1 if self.cache.evict(ciphertext) else 0
            resource_id = ciphertext_fingerprint(ciphertext)
            resource_type = "field"
        else:
            removed = self.cache.clear()
            resource_id = "all"
            resource_type = "all"

        logger.info(f"Encryption cache cleared ({resource_type}): {removed} entr{'y' if removed == 1 else 'ies'} removed")
        await self._audit(AuditEvent(
            action=AuditAction.CACHE_CLEARED,
            status=AuditStatus.SUCCESS,
            resource_id=resource_id,
            resource_type=resource_type,
            metadata={'entries_removed': removed}
        ))
        return removed

    # ============================================
    # MULTI-FIELD HELPERS
    # ============================================

    async def encrypt_fields(
        self,
        values: Dict[str, str],
        resource_id: str
    ) -> Tuple[Dict[str, str], Dict[str, str]]:
        """
        Encrypt several fields concurrently; one failing field never affects the others.

        Returns:
            (ciphertexts by field name, error codes by failed field name)
        """
        names = list(values)
        outcomes = await asyncio.gather(
            *(self.encrypt_field(values[name], resource_id, name) for name in names),
            return_exceptions=True
        )

        encrypted: Dict[str, str] = {}
        failed: Dict[str, str] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, ProtectionError):
                failed[name] = outcome.error_code
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                encrypted[name] = outcome
        return encrypted, failed

    async def decrypt_fields(self, field_map: Dict[str, str], resource_id: str) -> Dict[str, str]:
        """
        Decrypt several fields concurrently.

        A field that cannot be decrypted maps to DECRYPTION_ERROR_SENTINEL.
        """
        names = list(field_map)
        outcomes = await asyncio.gather(
            *(self.decrypt_field(field_map[name], resource_id, name) for name in names),
            return_exceptions=True
        )

        decrypted: Dict[str, str] = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, ProtectionError):
                decrypted[name] = DECRYPTION_ERROR_SENTINEL
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                decrypted[name] = outcome
        return decrypted

    # ============================================
    # INTERNALS
    # ============================================

    def _retries(self, retries: Optional[int]) -> int:
        value = self.default_retries if retries is None else retries
        return max(0, value)

    def _cache_put(self, ciphertext: str, plaintext: str) -> None:
        try:
            self.cache.put(ciphertext, plaintext)
        except CacheEvictionError as e:
            logger.error(f"Encryption cache invariant violated ({e}); dropping cache")
            self.cache.clear()

    async def _audit(self, event: AuditEvent) -> None:
        await emit_safely(self.audit_sink, event)

    async def _call_with_retry(
        self,
        operation: str,
        call: Callable[[], Awaitable[ProviderResult]],
        resource_id: str,
        field_name: str,
        retries: int
    ) -> Tuple[ProviderResult, int]:
        """
        Run a provider call with retries on TRANSIENT results.

        Returns:
            (last result, number of attempts made)
        """
        attempts = 0

        async def attempt() -> ProviderResult:
            nonlocal attempts
            attempts += 1
            return await self._attempt(operation, call, resource_id, field_name, attempts, retries)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait_exponential(multiplier=self.retry_base_delay, max=self.retry_max_delay),
            retry=retry_if_result(lambda result: result.is_transient),
            retry_error_callback=lambda retry_state: retry_state.outcome.result()
        )
        result = await retrying(attempt)
        return result, attempts

    async def _attempt(
        self,
        operation: str,
        call: Callable[[], Awaitable[ProviderResult]],
        resource_id: str,
        field_name: str,
        attempt_number: int,
        retries: int
    ) -> ProviderResult:
        """One provider call, timed and audited."""
        if operation == ENCRYPT:
            success_action, failure_action = AuditAction.DATA_ENCRYPTED, AuditAction.ENCRYPTION_ERROR
        else:
            success_action, failure_action = AuditAction.DATA_DECRYPTED, AuditAction.DECRYPTION_ERROR

        try:
            result = await self._timed_call(operation, call)
        except asyncio.CancelledError:
            await self._audit(AuditEvent(
                action=failure_action,
                status=AuditStatus.FAILURE,
                resource_id=resource_id,
                resource_type="field",
                field_name=field_name,
                error_code="CANCELLED",
                metadata={'attempt': attempt_number, 'will_retry': False}
            ))
            raise

        if result.ok:
            metadata = {'attempt': attempt_number}
            if operation == DECRYPT:
                metadata['cache_hit'] = False
            await self._audit(AuditEvent(
                action=success_action,
                status=AuditStatus.SUCCESS,
                resource_id=resource_id,
                resource_type="field",
                field_name=field_name,
                metadata=metadata
            ))
            return result

        will_retry = result.is_transient and attempt_number <= retries
        if will_retry:
            logger.warning(
                f"Transient {operation} failure for {sanitize_for_logging(resource_id)}/{sanitize_for_logging(field_name)} "
                f"(attempt {attempt_number}/{retries + 1}): {result.error_code}, retrying"
            )
        await self._audit(AuditEvent(
            action=failure_action,
            status=AuditStatus.FAILURE,
            resource_id=resource_id,
            resource_type="field",
            field_name=field_name,
            error_code=result.error_code,
            metadata={
                'attempt': attempt_number,
                'will_retry': will_retry,
                'error_kind': result.error_kind.value if result.error_kind else None,
                'error_message': result.message
            }
        ))
        return result

    async def _timed_call(
        self,
        operation: str,
        call: Callable[[], Awaitable[ProviderResult]]
    ) -> ProviderResult:
        @async_timed_operation(f"provider_{operation}")
        async def run() -> ProviderResult:
            if self.call_timeout is None:
                return await call()
            return await asyncio.wait_for(call(), timeout=self.call_timeout)

        try:
            return await run()
        except asyncio.TimeoutError:
            return ProviderResult.transient("TIMEOUT", f"Provider call exceeded {self.call_timeout}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error from key provider during {operation}")
            return ProviderResult.permanent(type(e).__name__, "Unexpected key provider error")
