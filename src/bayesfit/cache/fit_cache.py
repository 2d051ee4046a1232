"""
Run-scoped cache of fit results, keyed by canonical model hash.

Guarantees:
- at most one fit computation per CacheKey during the cache's lifetime;
  repeated and concurrent requests share the stored FitResult object
- distinct keys fit in parallel, at most `max_concurrent_fits` at a time;
  further requests queue for a slot
- a fit that exceeds its timeout, or is cancelled, resolves every waiter
  with a Failed(TIMEOUT/CANCELLED) result and is evicted, so a fresh request
  may try again; other failures are stored and shared like successes
- a request joining an in-flight fit waits at most its own timeout; giving
  up affects that caller only
- exceptions raised by the fit function are recorded as
  Failed(SAMPLER_ERROR) results, never propagated past the cache
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from bayesfit.cache.cancellation import CancelToken, bind_token, unbind_token
from bayesfit.cache.keys import cache_key, short_key
from bayesfit.errors import FitCancelled
from bayesfit.inference.results import FailureKind, FitResult
from bayesfit.spec.builder import ModelSpec

logger = logging.getLogger("bayesfit.cache")

FitFn = Callable[[ModelSpec], FitResult]

# Seconds between cancellation checks while queued for a slot
_SLOT_POLL = 0.05


@dataclass
class CacheStats:
    """Counters for one cache lifetime."""

    hits: int = 0
    misses: int = 0
    fits_started: int = 0
    late_results_discarded: int = 0


class _PendingFit:
    """One cache slot: resolved exactly once, waited on by every requester."""

    def __init__(self, key: str, spec: ModelSpec) -> None:
        self.key = key
        self.spec = spec
        self.token = CancelToken()
        self.result: Optional[FitResult] = None
        self._done = threading.Event()
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def resolve(self, result: FitResult) -> bool:
        """Store `result` unless already resolved. True if this call won."""
        with self._lock:
            if self._done.is_set():
                return False
            self.result = result
            self._done.set()
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)


class FitCache:
    """
    In-memory fit cache with per-key serialization and admission control.

    Parameters
    ----------
    max_concurrent_fits : int
        Maximum number of fits running at once. Default 2.
    default_timeout : float, optional
        Per-fit timeout in seconds when a request gives none. Default None
        (wait indefinitely).
    """

    def __init__(self, max_concurrent_fits: int = 2, default_timeout: Optional[float] = None) -> None:
        if max_concurrent_fits < 1:
            raise ValueError(f"max_concurrent_fits must be >= 1. Got {max_concurrent_fits}")
        if default_timeout is not None and default_timeout <= 0:
            raise ValueError(f"default_timeout must be > 0. Got {default_timeout}")

        self.max_concurrent_fits = max_concurrent_fits
        self.default_timeout = default_timeout
        self.stats = CacheStats()
        self._lock = threading.Lock()
        self._entries: Dict[str, _PendingFit] = {}
        self._slots = threading.BoundedSemaphore(max_concurrent_fits)
        self._workers: Set[threading.Thread] = set()
        self._closed = False

    def get_or_fit(self, spec: ModelSpec, fit_fn: FitFn, timeout: Optional[float] = None) -> FitResult:
        """
        Return the cached FitResult for `spec`, computing it with `fit_fn` on a miss.

        Parameters
        ----------
        spec : ModelSpec
            Model to fit.
        fit_fn : Callable[[ModelSpec], FitResult]
            Computes the fit (normally SamplerAdapter.fit).
        timeout : float, optional
            For the request that starts the computation, seconds the fit may
            run once it has a slot. For a request that joins an in-flight fit,
            seconds it waits for the shared outcome; giving up returns
            Failed(TIMEOUT) to that caller only and leaves the fit running.

        Returns
        -------
        FitResult
            The shared result; Failed(TIMEOUT) if the fit (or this caller's
            wait) ran out of time.
        """
        key = cache_key(spec)
        with self._lock:
            if self._closed:
                raise RuntimeError("FitCache is closed")
            entry = self._entries.get(key)
            owner = entry is None
            if owner:
                entry = _PendingFit(key, spec)
                self._entries[key] = entry
                self.stats.misses += 1
            else:
                self.stats.hits += 1

        timeout = self.default_timeout if timeout is None else timeout
        if not owner:
            if not entry.done:
                logger.debug("Waiting for in-flight fit %s", short_key(key))
            if not entry.wait(timeout):
                logger.warning("Stopped waiting for in-flight fit %s after %ss", short_key(key), timeout)
                return FitResult.failure(
                    spec, key, FailureKind.TIMEOUT,
                    f"waited {timeout}s for an in-flight fit", elapsed=timeout,
                )
            logger.debug("Cache hit for %s", short_key(key))
            return entry.result

        return self._run(entry, fit_fn, timeout)

    def _run(self, entry: _PendingFit, fit_fn: FitFn, timeout: Optional[float]) -> FitResult:
        # Queued owners still see cancel() and clear()
        while not self._slots.acquire(timeout=_SLOT_POLL):
            if entry.token.cancelled:
                entry.wait()
                return entry.result
        if entry.token.cancelled:
            self._slots.release()
            entry.wait()
            return entry.result

        worker = threading.Thread(
            target=self._work,
            args=(entry, fit_fn),
            name=f"bayesfit-fit-{short_key(entry.key)}",
            daemon=True,
        )
        with self._lock:
            self._workers.add(worker)
            self.stats.fits_started += 1
        logger.info("Fitting %s (key %s)", entry.spec, short_key(entry.key))
        try:
            worker.start()
        except RuntimeError as exc:
            logger.exception("Could not start a worker for %s", entry.spec)
            with self._lock:
                self._workers.discard(worker)
            self._slots.release()
            self._finish(entry, FitResult.failure(
                entry.spec, entry.key, FailureKind.SAMPLER_ERROR,
                f"could not start fit worker: {exc}",
            ))
            return entry.result

        if not entry.wait(timeout):
            entry.token.cancel(f"timed out after {timeout}s")
            self._finish(entry, FitResult.failure(
                entry.spec, entry.key, FailureKind.TIMEOUT, f"fit exceeded {timeout}s",
                elapsed=timeout,
            ))
        return entry.result

    def _work(self, entry: _PendingFit, fit_fn: FitFn) -> None:
        handle = bind_token(entry.token)
        start = time.perf_counter()
        try:
            result = fit_fn(entry.spec)
            if not isinstance(result, FitResult):
                result = FitResult.failure(
                    entry.spec, entry.key, FailureKind.SAMPLER_ERROR,
                    f"fit function returned {type(result).__name__}, expected FitResult",
                )
        except FitCancelled as exc:
            result = FitResult.failure(entry.spec, entry.key, FailureKind.CANCELLED, str(exc))
        except MemoryError as exc:
            result = FitResult.failure(entry.spec, entry.key, FailureKind.RESOURCE_EXHAUSTED, str(exc))
        except Exception as exc:
            logger.exception("Fit function raised for %s", entry.spec)
            result = FitResult.failure(
                entry.spec, entry.key, FailureKind.SAMPLER_ERROR, f"{type(exc).__name__}: {exc}"
            )
        finally:
            unbind_token(handle)
            self._slots.release()
            with self._lock:
                self._workers.discard(threading.current_thread())

        if not self._finish(entry, result):
            with self._lock:
                self.stats.late_results_discarded += 1
            logger.info(
                "Discarded result of %s after %.1fs: request already resolved (%s)",
                short_key(entry.key), time.perf_counter() - start, entry.token.reason,
            )

    def _finish(self, entry: _PendingFit, result: FitResult) -> bool:
        if not entry.resolve(result):
            return False

        reason = result.status.reason
        if reason is not None and reason.retryable:
            with self._lock:
                if self._entries.get(entry.key) is entry:
                    del self._entries[entry.key]
            logger.warning("Fit %s did not complete: %s", entry.spec, reason)
        elif reason is not None:
            logger.warning("Fit %s failed: %s", entry.spec, reason)
        else:
            logger.info("Stored fit %s (%.1fs)", short_key(entry.key), result.elapsed)
        return True

    def cancel(self, spec: ModelSpec, reason: str = "cancelled by caller") -> bool:
        """
        Cancel an in-flight fit. Waiters receive Failed(CANCELLED) immediately.

        Returns
        -------
        bool
            True if a running or queued fit was cancelled.
        """
        with self._lock:
            entry = self._entries.get(cache_key(spec))
        if entry is None or entry.done:
            return False
        entry.token.cancel(reason)
        return self._finish(
            entry, FitResult.failure(entry.spec, entry.key, FailureKind.CANCELLED, reason)
        )

    def get(self, spec: ModelSpec) -> Optional[FitResult]:
        """Completed result for `spec`, or None. Never starts a fit."""
        with self._lock:
            entry = self._entries.get(cache_key(spec))
        return entry.result if entry is not None and entry.done else None

    def invalidate(self, spec: ModelSpec) -> bool:
        """Drop the completed entry for `spec`. In-flight fits are left alone."""
        key = cache_key(spec)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.done:
                return False
            del self._entries[key]
        return True

    def clear(self) -> None:
        """Evict every entry; in-flight fits are cancelled."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            if not entry.done:
                entry.token.cancel("cache cleared")
                self._finish(
                    entry,
                    FitResult.failure(entry.spec, entry.key, FailureKind.CANCELLED, "cache cleared"),
                )

    def close(self, wait: float = 5.0) -> None:
        """Tear down: cancel in-flight fits, drop entries, join workers."""
        with self._lock:
            self._closed = True
        self.clear()
        with self._lock:
            workers = list(self._workers)
        deadline = time.monotonic() + wait
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
            if worker.is_alive():
                logger.warning("Worker %s still running after close", worker.name)

    def __contains__(self, spec: ModelSpec) -> bool:
        return self.get(spec) is not None

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if entry.done)

    def __enter__(self) -> "FitCache":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"FitCache(entries={len(self)}, max_concurrent_fits={self.max_concurrent_fits}, "
            f"hits={self.stats.hits}, misses={self.stats.misses})"
        )
