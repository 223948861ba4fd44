"""
Per-build log aggregation and live fan-out.

Each build has a durable append-only file (<builds_dir>/<job_id>.log) and an
in-memory set of subscribers. A subscriber gets the full history first and then
exactly the chunks appended after it subscribed.

Subscribers have bounded buffers. A subscriber whose buffer is full is
disconnected (its stream ends after the buffered chunks), so a slow reader
never blocks append() for the worker or for other readers.

Chunks carry their byte offset in the durable file. A subscriber also follows
the file directly when it sees no live chunks, which covers workers running in
another process; the offsets keep the two sources free of gaps and duplicates.
"""
import codecs
import logging
import queue
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, Optional

from app.core.config import get_config
from app.core.errors import LogSealedError
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

# Sentinel pushed into subscriber buffers when the log is sealed
_END = object()


def _validate_job_id(job_id: str) -> str:
    if not JOB_ID_PATTERN.match(job_id or ""):
        raise ValueError(f"Invalid job id: {job_id!r}")
    return job_id


class Subscription:
    """A live reader attached to one build log."""

    def __init__(self, job_id: str, history: str, offset: int, path: Path, maxsize: int):
        self.job_id = job_id
        self.history = history
        self.overflowed = False
        self.closed = False
        self._offset = offset  # bytes of the durable log already delivered
        self._path = path
        self._chunks: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # Called by the broadcaster with the build lock held

    def _offer(self, offset: int, text: str) -> bool:
        try:
            self._chunks.put_nowait((offset, text))
            return True
        except queue.Full:
            self.overflowed = True
            return False

    def _finish(self) -> None:
        self.closed = True
        try:
            self._chunks.put_nowait(_END)
        except queue.Full:
            pass  # reader drains the buffer and then sees `closed`

    # Reader side

    def _accept(self, offset: int, text: str) -> Optional[str]:
        """Deliver a live chunk unless the file follower already did."""
        end = offset + len(text.encode("utf-8"))
        if end <= self._offset:
            return None
        if offset < self._offset:
            # Partially delivered through the file; keep the remainder
            skip = self._offset - offset
            text = text.encode("utf-8")[skip:].decode("utf-8", errors="replace")
        self._offset = end
        return text

    def _read_file_tail(self) -> str:
        try:
            with open(self._path, "rb") as f:
                f.seek(self._offset)
                data = f.read()
        except FileNotFoundError:
            return ""
        self._offset += len(data)
        return self._decoder.decode(data)

    def poll(
        self,
        timeout: float = 0.0,
        is_finished: Optional[Callable[[], bool]] = None,
    ) -> tuple[list[str], bool]:
        """
        Take the next increment, waiting at most timeout seconds (0 = never block).

        Returns (texts, done). done is True once the log is sealed, the buffer
        overflowed, or is_finished() reports the build terminal; the history is
        not included (see `history`).
        """
        try:
            if timeout > 0:
                item = self._chunks.get(timeout=timeout)
            else:
                item = self._chunks.get_nowait()
        except queue.Empty:
            if self.closed or self.overflowed:
                tail = self._read_file_tail() if self.closed else ""
                return ([tail] if tail else []), True
            # No live chunks: the writer may live in another process
            texts = [self._read_file_tail()]
            done = is_finished is not None and is_finished()
            if done:
                texts.append(self._read_file_tail())
            return [t for t in texts if t], done

        if item is _END:
            return [], True
        text = self._accept(*item)
        return ([text] if text else []), False

    def iter_text(
        self,
        poll_timeout: float = 1.0,
        is_finished: Optional[Callable[[], bool]] = None,
    ) -> Iterator[str]:
        """
        Yield history, then new chunks until the log is sealed, the buffer
        overflowed, or is_finished() reports the build terminal.
        """
        if self.history:
            yield self.history

        while True:
            texts, done = self.poll(poll_timeout, is_finished)
            yield from texts
            if done:
                return


@dataclass
class _BuildLog:
    lock: threading.Lock = field(default_factory=threading.Lock)
    subscribers: list = field(default_factory=list)
    sealed: bool = False


class LogBroadcaster:
    """Durable per-build logs with bounded, non-blocking fan-out."""

    def __init__(self, logs_dir: Optional[Path] = None, buffer_size: Optional[int] = None):
        config = get_config()
        self._logs_dir = Path(logs_dir) if logs_dir else config.builds_dir
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._buffer_size = buffer_size or config.log_buffer
        self._builds: dict[str, _BuildLog] = {}
        self._builds_lock = threading.Lock()

    @property
    def logs_dir(self) -> Path:
        return self._logs_dir

    def log_path(self, job_id: str) -> Path:
        return self._logs_dir / f"{_validate_job_id(job_id)}.log"

    def _state(self, job_id: str) -> _BuildLog:
        with self._builds_lock:
            state = self._builds.get(job_id)
            if state is None:
                state = _BuildLog()
                self._builds[job_id] = state
            return state

    def append(self, job_id: str, text: str) -> None:
        """Append to the durable log and forward to current subscribers."""
        if not text:
            return
        path = self.log_path(job_id)
        state = self._state(job_id)
        with state.lock:
            if state.sealed:
                raise LogSealedError(f"Log for {job_id} is sealed")

            data = text.encode("utf-8")
            with open(path, "ab") as f:
                offset = f.tell()
                f.write(data)

            for sub in list(state.subscribers):
                if not sub._offer(offset, text):
                    state.subscribers.remove(sub)
                    metrics.inc("log_subscribers_dropped_total")
                    logger.warning(f"log_subscriber_dropped job_id={job_id} reason=buffer_full")

    def subscribe(self, job_id: str) -> Subscription:
        """Return a subscription primed with the full history."""
        path = self.log_path(job_id)
        state = self._state(job_id)
        with state.lock:
            try:
                data = path.read_bytes()
            except FileNotFoundError:
                data = b""
            sub = Subscription(
                job_id=job_id,
                history=data.decode("utf-8", errors="replace"),
                offset=len(data),
                path=path,
                maxsize=self._buffer_size,
            )
            if state.sealed:
                sub._finish()
            else:
                state.subscribers.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        state = self._state(sub.job_id)
        with state.lock:
            if sub in state.subscribers:
                state.subscribers.remove(sub)
            sub.closed = True

    def subscriber_count(self, job_id: str) -> int:
        state = self._state(job_id)
        with state.lock:
            return len(state.subscribers)

    def read(self, job_id: str) -> str:
        """Full accumulated log ("" if nothing was written)."""
        try:
            return self.log_path(job_id).read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def seal(self, job_id: str) -> None:
        """Mark the log immutable and end every live stream."""
        state = self._state(job_id)
        with state.lock:
            state.sealed = True
            for sub in state.subscribers:
                sub._finish()
            state.subscribers.clear()

    def is_sealed(self, job_id: str) -> bool:
        return self._state(job_id).sealed

    def delete(self, job_id: str) -> None:
        """Drop the durable log (job retention)."""
        self.seal(job_id)
        self.log_path(job_id).unlink(missing_ok=True)
        with self._builds_lock:
            self._builds.pop(job_id, None)


# Global broadcaster instance
log_broadcaster = LogBroadcaster()
