from __future__ import annotations

import time
from threading import Event, Lock, Thread

from . import db
from .kube import ClusterError, KubeServices
from .reconciler import DONE, FATAL, Outcome, Reconciler, retry
from .workqueue import RetryPolicy, WorkQueue


class Controller:
    """Feeds service changes into the reconciler and applies its retry decisions."""

    def __init__(
        self,
        reconciler: Reconciler,
        services: KubeServices,
        workers: int = 2,
        policy: RetryPolicy | None = None,
        resync_interval_s: int = 300,
        sweep_interval_s: int = 120,
        queue: WorkQueue | None = None,
    ):
        self.reconciler = reconciler
        self.services = services
        self.workers = max(1, int(workers))
        self.policy = policy or RetryPolicy()
        self.resync_interval_s = max(1, int(resync_interval_s))
        self.sweep_interval_s = max(1, int(sweep_interval_s))
        self.queue = queue or WorkQueue()
        self._attempts: dict[str, int] = {}
        self._attempts_lock = Lock()
        self._stop = Event()
        self._threads: list[Thread] = []

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self._stop.clear()
        self._threads = [Thread(target=self._watch_loop, name="nlbc-watch", daemon=True)]
        self._threads += [Thread(target=self._work_loop, name=f"nlbc-worker-{i}", daemon=True) for i in range(self.workers)]
        self._threads.append(Thread(target=self._periodic_loop, name="nlbc-periodic", daemon=True))
        for t in self._threads:
            t.start()
        db.log_event("INFO", f"Controller started with {self.workers} workers")

    def stop(self) -> None:
        self._stop.set()
        self.queue.shutdown()

    def enqueue_all(self) -> str | None:
        """Queue every service in the cluster and every service the ledger knows.

        Returns the list resourceVersion, or None when listing failed.
        """
        for a in self.reconciler.ledger.allocations():
            self.queue.add(a.service)
        try:
            names, resource_version = self.services.list_identities()
        except ClusterError as e:
            db.log_event("ERROR", f"Resync failed: {e}")
            return None
        for name in names:
            self.queue.add(name)
        return resource_version

    def process_one(self, timeout: float | None = 1.0) -> bool:
        """Run one queued pass. False when nothing was queued."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False
        try:
            try:
                outcome = self.reconciler.reconcile(key)
            except Exception as e:
                db.log_event("ERROR", f"Reconcile crashed: {type(e).__name__}: {e}", service_name=key)
                outcome = retry(f"{type(e).__name__}: {e}")
            self._handle(key, outcome)
        finally:
            self.queue.done(key)
        return True

    def _handle(self, key: str, outcome: Outcome) -> None:
        if outcome.action in (DONE, FATAL):
            with self._attempts_lock:
                self._attempts.pop(key, None)
            if outcome.action == FATAL:
                db.log_event("CRITICAL", f"Not retrying: {outcome.message}", service_name=key)
            return

        with self._attempts_lock:
            attempt = self._attempts.get(key, 0) + 1
            self._attempts[key] = attempt
            if self.policy.gives_up(attempt):
                del self._attempts[key]
        if self.policy.gives_up(attempt):
            db.log_event("ERROR", f"Giving up after {attempt} attempts: {outcome.message}", service_name=key)
            return
        self.queue.add(key, delay_s=self.policy.delay(attempt))

    def attempts(self, key: str) -> int:
        with self._attempts_lock:
            return self._attempts.get(key, 0)

    def _work_loop(self) -> None:
        while not self._stop.is_set():
            self.process_one(timeout=1.0)

    def _watch_loop(self) -> None:
        while not self._stop.is_set():
            resource_version = self.enqueue_all()
            if resource_version is None:
                self._stop.wait(5)
                continue
            try:
                for name in self.services.watch_identities(resource_version, self._stop):
                    self.queue.add(name)
            except ClusterError as e:
                db.log_event("ERROR", f"{e}. Restarting watch")
                self._stop.wait(5)
            except Exception as e:
                db.log_event("ERROR", f"Service watch crashed: {type(e).__name__}: {e}")
                self._stop.wait(5)

    def _periodic_loop(self) -> None:
        started = time.monotonic()
        last_resync = last_sweep = started
        while not self._stop.wait(1):
            now = time.monotonic()
            if now - last_resync >= self.resync_interval_s:
                last_resync = now
                self.enqueue_all()
            if now - last_sweep >= self.sweep_interval_s:
                last_sweep = now
                try:
                    self.reconciler.collect_orphans()
                except Exception as e:
                    db.log_event("ERROR", f"Orphan sweep failed: {type(e).__name__}: {e}")
