import statistics
import time

import pytest

from gatehouse.service.auth import Authenticator
from gatehouse.service.passwords import PasswordHasher


@pytest.fixture
def authenticator(memory_store, fast_hasher):
    return Authenticator(memory_store, fast_hasher)


@pytest.fixture
def user(memory_store, fast_hasher):
    return memory_store.create_user("alice@example.com", fast_hasher.hash("correct-horse-battery"))


class TestAuthenticate:
    def test_correct_credentials_return_user(self, authenticator, user):
        assert authenticator.authenticate("alice@example.com", "correct-horse-battery").id == user.id

    def test_email_is_normalized(self, authenticator, user):
        found = authenticator.authenticate("  ALICE@Example.com ", "correct-horse-battery")
        assert found is not None
        assert found.id == user.id

    def test_wrong_password_returns_none(self, authenticator, user):
        assert authenticator.authenticate("alice@example.com", "wrong-password") is None

    def test_unknown_email_returns_none(self, authenticator, user):
        assert authenticator.authenticate("nobody@example.com", "correct-horse-battery") is None

    def test_unknown_email_still_verifies_a_hash(self, memory_store):
        calls = []

        class RecordingHasher(PasswordHasher):
            def verify(self, password_hash, password):
                calls.append(password_hash)
                return super().verify(password_hash, password)

        hasher = RecordingHasher(time_cost=1, memory_cost=1024, parallelism=1)
        authenticator = Authenticator(memory_store, hasher)
        assert authenticator.authenticate("nobody@example.com", "whatever") is None
        assert len(calls) == 1
        assert calls[0].startswith("$argon2id$")

    def test_throwaway_hash_is_built_once(self, authenticator):
        authenticator.authenticate("nobody@example.com", "a")
        first = authenticator._dummy_hash
        authenticator.authenticate("nobody2@example.com", "b")
        assert authenticator._dummy_hash == first

    def test_outdated_hash_is_upgraded_on_login(self, memory_store, fast_hasher):
        weak = PasswordHasher(time_cost=1, memory_cost=512, parallelism=1)
        user = memory_store.create_user("bob@example.com", weak.hash("correct-horse-battery"))
        authenticator = Authenticator(memory_store, fast_hasher)

        assert authenticator.authenticate("bob@example.com", "correct-horse-battery")
        upgraded = memory_store.get_user(user.id).password_hash
        assert upgraded != user.password_hash
        assert not fast_hasher.needs_rehash(upgraded)
        assert authenticator.authenticate("bob@example.com", "correct-horse-battery")


def test_missing_user_and_wrong_password_take_similar_time(memory_store):
    """Median latency of both failure paths must be close (repeated sampling)."""
    hasher = PasswordHasher(time_cost=2, memory_cost=8192, parallelism=1)
    memory_store.create_user("carol@example.com", hasher.hash("correct-horse-battery"))
    authenticator = Authenticator(memory_store, hasher)
    # Warm up so the one-off throwaway hash is not measured
    authenticator.authenticate("nobody@example.com", "x")

    def sample(email: str) -> float:
        start = time.perf_counter()
        assert authenticator.authenticate(email, "wrong-password") is None
        return time.perf_counter() - start

    missing, wrong = [], []
    for _ in range(15):
        missing.append(sample("nobody@example.com"))
        wrong.append(sample("carol@example.com"))

    ratio = statistics.median(missing) / statistics.median(wrong)
    assert 0.5 < ratio < 2.0
