"""
Build worker pool and standalone worker process.

The API process starts a pool in-process unless BUILDER_START_WORKERS=0.
Extra capacity can run as separate processes sharing the same data dir:

    python -m app.worker
"""
import logging
import signal
import threading
from typing import Callable, Optional

from app.core.build_runner import BuildWorker
from app.core.config import get_config
from app.core.job_queue import BuildQueue, build_queue

logger = logging.getLogger(__name__)


def run_worker_loop(worker: BuildWorker, stop_event: threading.Event, poll_s: float) -> None:
    """Process jobs until stop_event is set. Sleeps on the queue when it is empty."""
    logger.info("worker_started", extra={"worker_id": worker.worker_id})
    while not stop_event.is_set():
        try:
            handled = worker.run_once()
        except Exception:
            # Queue/database trouble: keep the worker alive and retry later
            logger.exception("worker_loop_error", extra={"worker_id": worker.worker_id})
            stop_event.wait(poll_s)
            continue
        if handled is None:
            worker.queue.wait_for_work(poll_s)
    logger.info("worker_stopped", extra={"worker_id": worker.worker_id})


class WorkerPool:
    """Fixed set of worker threads consuming the build queue."""

    def __init__(
        self,
        size: Optional[int] = None,
        worker_factory: Callable[[], BuildWorker] = BuildWorker,
        queue: Optional[BuildQueue] = None,
        poll_s: Optional[float] = None,
    ):
        config = get_config()
        self.size = size or config.workers
        self._worker_factory = worker_factory
        self._queue = queue or build_queue
        self._poll_s = poll_s if poll_s is not None else config.queue_poll_s
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for i in range(self.size):
            worker = self._worker_factory()
            thread = threading.Thread(
                target=run_worker_loop,
                args=(worker, self._stop, self._poll_s),
                name=f"build-worker-{i}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info(f"worker_pool_started size={self.size}")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal workers to stop after their current job and wait for them."""
        self._stop.set()
        self._queue.wake_all()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("worker_pool_stopped")


def main() -> None:
    from app.core.artifact_store import artifact_store
    from app.core.logging import setup_logging
    from app.db.database import init_db

    config = get_config()
    setup_logging(config.log_level)
    init_db()
    artifact_store.run_startup_cleanup()

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"worker_shutdown signal={signum}")
        stop_event.set()
        build_queue.wake_all()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    pool = WorkerPool(size=config.workers)
    pool.start()
    while not stop_event.wait(1.0):
        pass
    pool.stop()


if __name__ == "__main__":
    main()
