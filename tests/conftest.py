"""
Shared fixtures and test doubles.
"""

import base64
import sys
from pathlib import Path
from typing import List, Dict

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from audit_logger import InMemoryAuditSink
from monitoring import reset_metrics
from protection.providers import KeyProvider, ProviderResult


class ScriptedKeyProvider(KeyProvider):
    """
    KeyProvider double.

    Without a script it "encrypts" by base64-encoding with a prefix. Scripted
    failures are consumed one per call, before falling back to that default.
    """

    name = "scripted"

    def __init__(self):
        self.encrypt_calls = 0
        self.decrypt_calls = 0
        self.encrypt_script: List[ProviderResult] = []
        self.decrypt_script: List[ProviderResult] = []
        self.fail_plaintexts: Dict[str, ProviderResult] = {}
        self.fail_ciphertexts: Dict[str, ProviderResult] = {}

    @staticmethod
    def wrap(plaintext: str) -> str:
        return "ct:" + base64.b64encode(plaintext.encode('utf-8')).decode('ascii')

    async def encrypt(self, plaintext: str, key_id: str) -> ProviderResult:
        self.encrypt_calls += 1
        if plaintext in self.fail_plaintexts:
            return self.fail_plaintexts[plaintext]
        if self.encrypt_script:
            return self.encrypt_script.pop(0)
        return ProviderResult.success(self.wrap(plaintext))

    async def decrypt(self, ciphertext: str, key_id: str) -> ProviderResult:
        self.decrypt_calls += 1
        if ciphertext in self.fail_ciphertexts:
            return self.fail_ciphertexts[ciphertext]
        if self.decrypt_script:
            return self.decrypt_script.pop(0)
        if not ciphertext.startswith("ct:"):
            return ProviderResult.permanent("InvalidCiphertextException", "not a scripted ciphertext")
        return ProviderResult.success(base64.b64decode(ciphertext[3:]).decode('utf-8'))


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def scripted_provider() -> ScriptedKeyProvider:
    return ScriptedKeyProvider()


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def clean_metrics():
    """Reset in-process metrics between tests"""
    reset_metrics()
    yield
    reset_metrics()
