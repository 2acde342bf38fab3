"""Bounded worker pool for accepted client connections."""

from __future__ import annotations

import logging
import queue
import socket
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

ClientAddress = tuple[str, int]
ConnectionHandler = Callable[[socket.socket, ClientAddress], None]


class ThreadPool:
    """Fixed set of worker threads fed from a bounded connection queue."""

    def __init__(self, worker_count: int, queue_size: int, handler: ConnectionHandler) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self._handler = handler
        self._worker_count = worker_count
        self._queue: queue.Queue[tuple[socket.socket, ClientAddress]] = queue.Queue(
            maxsize=queue_size
        )
        self._threads: list[threading.Thread] = []
        # Connections queued or being served.
        self._pending = 0
        self._idle = threading.Condition()
        self._accepting = True
        self._stopped = threading.Event()
        self._shutdown_lock = threading.Lock()
        self._shutdown_started = False

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def threads(self) -> tuple[threading.Thread, ...]:
        return tuple(self._threads)

    @property
    def pending(self) -> int:
        with self._idle:
            return self._pending

    def start(self) -> None:
        for index in range(self._worker_count):
            worker = threading.Thread(
                target=self._run_worker,
                name=f"httpserve-worker-{index}",
                daemon=True,
            )
            self._threads.append(worker)
            worker.start()

    def submit(self, client_socket: socket.socket, address: ClientAddress) -> bool:
        """Queue a connection; False when the pool is full or shutting down."""
        if not self._accepting:
            return False
        with self._idle:
            try:
                self._queue.put_nowait((client_socket, address))
            except queue.Full:
                return False
            self._pending += 1
        return True

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending:
                if deadline is None:
                    self._idle.wait(timeout=0.1)
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(timeout=min(remaining, 0.1))
        return True

    def shutdown(self, *, drain_timeout: float | None = 0.0) -> None:
        """Stop taking work, let pending connections finish, then stop workers."""
        with self._shutdown_lock:
            if self._shutdown_started:
                return
            self._shutdown_started = True

        self._accepting = False
        if drain_timeout != 0.0 and not self.wait_until_idle(timeout=drain_timeout):
            logger.warning("Worker pool still busy after %.1fs drain timeout", drain_timeout)

        self._stopped.set()
        for thread in self._threads:
            thread.join(timeout=1.0)

    def _run_worker(self) -> None:
        while True:
            try:
                client_socket, address = self._queue.get(timeout=0.2)
            except queue.Empty:
                if self._stopped.is_set():
                    return
                continue

            try:
                self._handler(client_socket, address)
            except Exception:
                logger.exception("Unhandled error while serving %s", address[0])
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()
                self._queue.task_done()
