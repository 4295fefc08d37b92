"""Thread-safety of the local cache layer and the store's conditional updates."""

import threading
from typing import Callable, List

from authcore.storage.models import RefreshToken, utcnow
from authcore.storage.tiered_cache import LocalCache


def _run_threads(count: int, target: Callable[[int], None]) -> None:
    barrier = threading.Barrier(count)

    def _worker(index: int) -> None:
        barrier.wait()
        target(index)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)


class TestLocalCacheThreads:
    def test_concurrent_writers_and_evictions(self):
        cache = LocalCache(max_entries=200)
        errors: List[Exception] = []

        def _work(index: int) -> None:
            try:
                for n in range(500):
                    key = f"k{index}:{n}"
                    cache.set(key, n, 60, tags=("t", f"t{index}"))
                    cache.get(key)
                    if n % 50 == 0:
                        cache.remove_by_tag(f"t{index}")
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        _run_threads(8, _work)

        assert errors == []
        assert len(cache) <= 200


def _user_with_token(store):
    user = store.create_user("race@example.com", "Race")
    token = RefreshToken.new(user.id, "old-hash", 7)
    store.create_refresh_token(token)
    return user


class TestStoreRaces:
    def test_only_one_rotation_wins(self, memory_store):
        user = _user_with_token(memory_store)
        results: List[bool] = []
        lock = threading.Lock()

        def _rotate(index: int) -> None:
            replacement = RefreshToken.new(user.id, f"new-{index}", 7)
            ok = memory_store.rotate_refresh_token(
                "old-hash", user.id, user.security_stamp, replacement, utcnow()
            )
            with lock:
                results.append(ok)

        _run_threads(8, _rotate)

        assert results.count(True) == 1
        live = [
            t for t in memory_store.refresh_tokens.values() if not t.revoked
        ]
        assert len(live) == 1

    def test_recovery_code_consumed_once(self, memory_store):
        user = memory_store.create_user("codes@example.com", "Codes")
        memory_store.set_pending_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
        assert memory_store.enable_two_factor(user.id, "JBSWY3DPEHPK3PXP", 1, ["code-hash"])
        results: List[bool] = []
        lock = threading.Lock()

        def _consume(_: int) -> None:
            ok = memory_store.consume_recovery_code(user.id, "code-hash")
            with lock:
                results.append(ok)

        _run_threads(8, _consume)

        assert results.count(True) == 1
        assert memory_store.count_recovery_codes(user.id) == 0

    def test_totp_step_consumed_once(self, memory_store):
        user = memory_store.create_user("steps@example.com", "Steps")
        memory_store.set_pending_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
        memory_store.enable_two_factor(user.id, "JBSWY3DPEHPK3PXP", 1, [])
        results: List[bool] = []
        lock = threading.Lock()

        def _consume(_: int) -> None:
            ok = memory_store.consume_totp_step(user.id, 2)
            with lock:
                results.append(ok)

        _run_threads(8, _consume)

        assert results.count(True) == 1
