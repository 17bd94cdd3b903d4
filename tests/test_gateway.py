"""
Tests for the field encryption gateway.

Covers:
- Round trips and caching
- Retry of transient failures and immediate failure on permanent ones
- Audit events (never containing plaintext)
- Timeouts, cancellation and cache self-healing
- Per-field isolation of multi-field operations
"""

import asyncio
import time

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_logger import AuditAction, AuditSink, AuditStatus
from config_manager import ConfigManager
from monitoring import get_event_count, CACHE_HITS, DECRYPTION_OPERATIONS, DECRYPTION_ERRORS
from protection.cache import EncryptionCache
from protection.errors import (
    CacheEvictionError,
    DecryptionError,
    EncryptionError,
    ProviderErrorKind,
)
from protection.gateway import (
    EncryptionGateway,
    DECRYPTION_ERROR_SENTINEL,
    ciphertext_fingerprint,
)
from protection.providers import KeyProvider, ProviderResult

SECRET = "Secret-Value-123"


def throttled() -> ProviderResult:
    return ProviderResult.failure("ThrottlingException", "Rate exceeded")


class ExplodingSink(AuditSink):
    async def emit(self, event):
        raise RuntimeError("sink down")


class BlockingProvider(KeyProvider):
    """Provider whose calls never complete"""

    name = "blocking"

    def __init__(self):
        self.started = asyncio.Event()
        self.calls = 0

    async def _block(self) -> ProviderResult:
        self.calls += 1
        self.started.set()
        await asyncio.Event().wait()
        return ProviderResult.success("unreachable")

    async def encrypt(self, plaintext, key_id):
        return await self._block()

    async def decrypt(self, ciphertext, key_id):
        return await self._block()


class RaisingProvider(KeyProvider):
    """Provider that breaks its contract by raising"""

    name = "raising"

    async def encrypt(self, plaintext, key_id):
        raise RuntimeError("driver bug")

    async def decrypt(self, ciphertext, key_id):
        raise RuntimeError("driver bug")


class FlakyCache(EncryptionCache):
    """Cache whose inserts can be made to fail"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail = False

    def put(self, ciphertext, plaintext):
        if self.fail:
            raise CacheEvictionError("order corrupted")
        super().put(ciphertext, plaintext)


@pytest.fixture
def gateway(scripted_provider, audit_sink, clock):
    return EncryptionGateway(
        scripted_provider,
        key_id="test-key",
        cache=EncryptionCache(clock=clock),
        audit_sink=audit_sink,
        retry_base_delay=0,
        retry_max_delay=0,
        cache_on_encrypt=False
    )


class TestRoundTrip:
    """Encrypt / decrypt basics."""

    async def test_round_trip(self, gateway):
        ciphertext = await gateway.encrypt_field(SECRET, "rec-1", "identifier")
        assert ciphertext != SECRET
        assert await gateway.decrypt_field(ciphertext, "rec-1", "identifier") == SECRET

    async def test_hash_field_delegates_to_hasher(self, gateway):
        assert gateway.hash_field("ID123") == gateway.hasher.hash("ID123")
        assert len(gateway.hash_field("ID123")) == 64

    async def test_round_trip_with_fernet(self, audit_sink):
        from protection.providers import FernetKeyProvider
        provider = FernetKeyProvider({"k": FernetKeyProvider.generate_key()})
        gateway = EncryptionGateway(provider, key_id="k", audit_sink=audit_sink, cache_on_encrypt=False)

        ciphertext = await gateway.encrypt_field("Jane Doe", "rec-1", "full_name")
        assert await gateway.decrypt_field(ciphertext, "rec-1", "full_name") == "Jane Doe"


class TestCaching:
    """Decrypt cache behaviour."""

    async def test_repeated_decrypts_call_provider_once(self, gateway, scripted_provider):
        ciphertext = scripted_provider.wrap(SECRET)

        for _ in range(5):
            assert await gateway.decrypt_field(ciphertext, "rec-1", "identifier") == SECRET

        assert scripted_provider.decrypt_calls == 1
        assert get_event_count(CACHE_HITS) == 4
        assert get_event_count(DECRYPTION_OPERATIONS) == 1

    async def test_provider_called_again_after_ttl(self, gateway, scripted_provider, clock):
        ciphertext = scripted_provider.wrap(SECRET)
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")

        clock.advance(301)
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")

        assert scripted_provider.decrypt_calls == 2

    async def test_encrypt_fills_cache_when_enabled(self, scripted_provider, clock):
        gateway = EncryptionGateway(
            scripted_provider, "test-key",
            cache=EncryptionCache(clock=clock),
            cache_on_encrypt=True
        )
        ciphertext = await gateway.encrypt_field(SECRET, "rec-1", "identifier")

        assert await gateway.decrypt_field(ciphertext, "rec-1", "identifier") == SECRET
        assert scripted_provider.decrypt_calls == 0

    async def test_sweeper_purges_idle_cache(self, scripted_provider, clock):
        cache = EncryptionCache(clock=clock)
        gateway = EncryptionGateway(scripted_provider, "test-key", cache=cache, cache_sweep_interval=0.01)
        await gateway.decrypt_field(scripted_provider.wrap(SECRET), "rec-1", "identifier")
        assert len(cache._entries) == 1

        gateway.start_cache_sweeper()
        try:
            assert gateway.sweeper_running
            clock.advance(301)
            await asyncio.sleep(0.1)
            assert len(cache._entries) == 0
        finally:
            await gateway.stop_cache_sweeper()

        assert not gateway.sweeper_running

    async def test_sweeper_disabled_without_interval(self, gateway):
        gateway.start_cache_sweeper()
        assert not gateway.sweeper_running
        await gateway.stop_cache_sweeper()

    async def test_cache_hit_is_audited(self, gateway, scripted_provider, audit_sink):
        ciphertext = scripted_provider.wrap(SECRET)
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")

        events = audit_sink.by_action(AuditAction.DATA_DECRYPTED)
        assert [e.metadata['cache_hit'] for e in events] == [False, True]

    async def test_clear_single_entry(self, gateway, scripted_provider, audit_sink):
        ciphertext = scripted_provider.wrap(SECRET)
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")

        removed = await gateway.clear_cache(ciphertext)
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")

        assert removed == 1
        assert scripted_provider.decrypt_calls == 2
        event = audit_sink.by_action(AuditAction.CACHE_CLEARED)[0]
        assert event.resource_type == "field"
        assert event.resource_id == ciphertext_fingerprint(ciphertext)
        assert ciphertext not in event.to_json()
        assert SECRET not in event.to_json()

    async def test_clear_all(self, gateway, scripted_provider, audit_sink):
        for value in ("a", "b", "c"):
            await gateway.decrypt_field(scripted_provider.wrap(value), "rec-1", "f")

        assert await gateway.clear_cache() == 3
        assert len(gateway.cache) == 0
        event = audit_sink.by_action(AuditAction.CACHE_CLEARED)[0]
        assert event.resource_type == "all"
        assert event.metadata['entries_removed'] == 3

    async def test_cache_invariant_violation_self_heals(self, scripted_provider, clock):
        cache = FlakyCache(clock=clock)
        cache.put("old", "value")
        cache.fail = True
        gateway = EncryptionGateway(scripted_provider, "test-key", cache=cache, retry_base_delay=0)

        plaintext = await gateway.decrypt_field(scripted_provider.wrap(SECRET), "rec-1", "identifier")

        assert plaintext == SECRET
        assert len(cache) == 0


class TestRetries:
    """Retry policy for transient and permanent failures."""

    async def test_transient_then_success(self, gateway, scripted_provider, audit_sink):
        scripted_provider.decrypt_script = [throttled(), throttled()]

        plaintext = await gateway.decrypt_field(scripted_provider.wrap(SECRET), "rec-1", "identifier")

        assert plaintext == SECRET
        assert scripted_provider.decrypt_calls == 3
        failures = audit_sink.by_action(AuditAction.DECRYPTION_ERROR)
        assert [e.metadata['attempt'] for e in failures] == [1, 2]
        assert all(e.metadata['will_retry'] for e in failures)
        assert audit_sink.by_action(AuditAction.DATA_DECRYPTED)[0].metadata['attempt'] == 3

    async def test_retries_exhausted(self, gateway, scripted_provider, audit_sink):
        scripted_provider.decrypt_script = [throttled() for _ in range(10)]

        with pytest.raises(DecryptionError) as exc_info:
            await gateway.decrypt_field(scripted_provider.wrap(SECRET), "rec-1", "identifier", retries=3)

        error = exc_info.value
        assert error.error_code == "ThrottlingException"
        assert error.kind == ProviderErrorKind.TRANSIENT
        assert error.attempts == 4
        assert error.field_name == "identifier"
        assert scripted_provider.decrypt_calls == 4
        last = audit_sink.by_action(AuditAction.DECRYPTION_ERROR)[-1]
        assert last.metadata['will_retry'] is False
        assert get_event_count(DECRYPTION_ERRORS) == 1

    async def test_zero_retries_makes_one_attempt(self, gateway, scripted_provider):
        scripted_provider.encrypt_script = [throttled()]

        with pytest.raises(EncryptionError):
            await gateway.encrypt_field(SECRET, "rec-1", "identifier", retries=0)

        assert scripted_provider.encrypt_calls == 1

    async def test_permanent_error_is_not_retried(self, gateway, scripted_provider):
        scripted_provider.decrypt_script = [ProviderResult.failure("AccessDeniedException")]

        with pytest.raises(DecryptionError) as exc_info:
            await gateway.decrypt_field(scripted_provider.wrap(SECRET), "rec-1", "identifier")

        assert exc_info.value.kind == ProviderErrorKind.PERMANENT
        assert exc_info.value.attempts == 1
        assert scripted_provider.decrypt_calls == 1

    async def test_invalid_ciphertext_fails_fast(self, gateway, scripted_provider):
        with pytest.raises(DecryptionError) as exc_info:
            await gateway.decrypt_field("garbage", "rec-1", "identifier")

        assert exc_info.value.error_code == "InvalidCiphertextException"
        assert scripted_provider.decrypt_calls == 1

    async def test_encrypt_permanent_failure(self, gateway, scripted_provider, audit_sink):
        scripted_provider.encrypt_script = [ProviderResult.failure("DisabledException")]

        with pytest.raises(EncryptionError) as exc_info:
            await gateway.encrypt_field(SECRET, "rec-1", "identifier")

        assert exc_info.value.error_code == "DisabledException"
        event = audit_sink.by_action(AuditAction.ENCRYPTION_ERROR)[0]
        assert event.status == AuditStatus.FAILURE
        assert event.error_code == "DisabledException"
        assert SECRET not in str(exc_info.value)

    async def test_backoff_waits_between_attempts(self, scripted_provider):
        gateway = EncryptionGateway(scripted_provider, "test-key", retry_base_delay=0.05, retry_max_delay=1.0)
        scripted_provider.decrypt_script = [throttled(), throttled()]

        started = time.monotonic()
        await gateway.decrypt_field(scripted_provider.wrap(SECRET), "rec-1", "identifier")

        # 0.05s then 0.1s
        assert time.monotonic() - started >= 0.14

    async def test_provider_exception_becomes_permanent_failure(self):
        gateway = EncryptionGateway(RaisingProvider(), "test-key", retry_base_delay=0)

        with pytest.raises(EncryptionError) as exc_info:
            await gateway.encrypt_field(SECRET, "rec-1", "identifier")

        assert exc_info.value.error_code == "RuntimeError"
        assert exc_info.value.attempts == 1


class TestAudit:
    """Audit event content and sink failures."""

    async def test_events_never_contain_plaintext(self, gateway, scripted_provider, audit_sink):
        scripted_provider.encrypt_script = [throttled()]
        ciphertext = await gateway.encrypt_field(SECRET, "rec-1", "identifier")
        await gateway.decrypt_field(ciphertext, "rec-1", "identifier")
        await gateway.clear_cache()

        assert len(audit_sink.events) >= 4
        for event in audit_sink.events:
            assert SECRET not in event.to_json()

    async def test_success_event_fields(self, gateway, audit_sink):
        await gateway.encrypt_field(SECRET, "rec-7", "full_name")

        event = audit_sink.by_action(AuditAction.DATA_ENCRYPTED)[0]
        assert event.status == AuditStatus.SUCCESS
        assert event.resource_id == "rec-7"
        assert event.field_name == "full_name"
        assert event.resource_type == "field"

    async def test_failure_log_cannot_be_forged(self, gateway, scripted_provider, caplog):
        scripted_provider.encrypt_script = [ProviderResult.failure("DisabledException")]

        with caplog.at_level("ERROR", logger="protection.gateway"):
            with pytest.raises(EncryptionError):
                await gateway.encrypt_field(SECRET, "rec-1\nFAKE LOG ENTRY", "identifier\r\nx")

        messages = [r.getMessage() for r in caplog.records if r.name == "protection.gateway"]
        assert messages
        for message in messages:
            assert "\n" not in message
            assert "\r" not in message
        assert "rec-1 FAKE LOG ENTRY/identifier x" in messages[0]

    async def test_failing_sink_does_not_fail_operation(self, scripted_provider):
        gateway = EncryptionGateway(scripted_provider, "test-key", audit_sink=ExplodingSink())

        ciphertext = await gateway.encrypt_field(SECRET, "rec-1", "identifier")

        assert await gateway.decrypt_field(ciphertext, "rec-1", "identifier") == SECRET


class TestTimeoutAndCancellation:
    """Timeouts become transient failures; cancellation propagates."""

    async def test_timeout_is_retried_then_fails(self, audit_sink):
        provider = BlockingProvider()
        gateway = EncryptionGateway(
            provider, "test-key",
            audit_sink=audit_sink,
            retry_base_delay=0,
            call_timeout=0.01
        )

        with pytest.raises(DecryptionError) as exc_info:
            await gateway.decrypt_field("ct", "rec-1", "identifier", retries=1)

        assert exc_info.value.error_code == "TIMEOUT"
        assert exc_info.value.kind == ProviderErrorKind.TRANSIENT
        assert provider.calls == 2

    async def test_cancellation_is_audited_and_propagated(self, audit_sink):
        provider = BlockingProvider()
        gateway = EncryptionGateway(provider, "test-key", audit_sink=audit_sink)

        task = asyncio.create_task(gateway.decrypt_field("ct", "rec-1", "identifier"))
        await provider.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        failures = audit_sink.by_action(AuditAction.DECRYPTION_ERROR)
        assert failures[-1].error_code == "CANCELLED"
        assert audit_sink.by_action(AuditAction.DATA_DECRYPTED) == []
        assert provider.calls == 1


class TestMultiField:
    """Per-field isolation."""

    async def test_decrypt_fields_isolates_failures(self, gateway, scripted_provider):
        field_map = {
            "identifier": scripted_provider.wrap("ID123"),
            "full_name": "corrupted",
            "address": scripted_provider.wrap("1 Main Rd"),
        }

        result = await gateway.decrypt_fields(field_map, "rec-1")

        assert result == {
            "identifier": "ID123",
            "full_name": DECRYPTION_ERROR_SENTINEL,
            "address": "1 Main Rd",
        }

    async def test_encrypt_fields_isolates_failures(self, gateway, scripted_provider):
        scripted_provider.fail_plaintexts["bad"] = ProviderResult.failure("AccessDeniedException")

        encrypted, failed = await gateway.encrypt_fields({"a": "good", "b": "bad"}, "rec-1")

        assert set(encrypted) == {"a"}
        assert failed == {"b": "AccessDeniedException"}


class TestFromConfig:
    """Building the gateway from configuration."""

    def test_from_config(self, tmp_path, monkeypatch, scripted_provider):
        monkeypatch.setenv("DATA_ENCRYPTION_KEY_ID", "alias/kyc-data")
        config = ConfigManager(str(tmp_path / "missing.yaml"))

        gateway = EncryptionGateway.from_config(config, provider=scripted_provider)

        assert gateway.key_id == "alias/kyc-data"
        assert gateway.cache.ttl_seconds == 300.0
        assert gateway.cache.max_entries == 1000
        assert gateway.default_retries == 3
        assert gateway.cache_on_encrypt is True
