"""
FlashLink Record Delivery
Bounded hand-off queue between the sampling loop and the slow collaborators
(storage, backend). Putting a record never blocks the receiver.
"""

import logging
import queue
import threading
from typing import Callable, List, Optional

from core.dispatch import DecodedRecord

logger = logging.getLogger(__name__)


class RecordQueue:
    """
    Drop-oldest bounded queue. A daemon worker can be started to feed
    records to a handler; otherwise consumers call drain().
    """

    def __init__(self, maxsize: int = 64):
        if maxsize < 1:
            raise ValueError("maxsize must be at least 1")
        self._queue: "queue.Queue[DecodedRecord]" = queue.Queue(maxsize=maxsize)
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self.enqueued = 0
        self.dropped = 0
        self.delivered = 0
        self.handler_errors = 0

    def __len__(self) -> int:
        return self._queue.qsize()

    def put(self, record: DecodedRecord):
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(record)
                    break
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self._queue.task_done()
                        self.dropped += 1
                        logger.warning("record queue full, dropped oldest record")
                    except queue.Empty:
                        pass
            self.enqueued += 1

    def drain(self) -> List[DecodedRecord]:
        records = []
        while True:
            try:
                records.append(self._queue.get_nowait())
                self._queue.task_done()
            except queue.Empty:
                return records

    def start(self, handler: Callable[[DecodedRecord], None]):
        """Deliver records to `handler` on a background thread."""
        if self._worker is not None and self._worker.is_alive():
            raise RuntimeError("delivery worker already running")
        self._stop.clear()
        self._worker = threading.Thread(target=self._run, args=(handler,),
                                        name='flashlink-delivery', daemon=True)
        self._worker.start()

    def _run(self, handler):
        while not self._stop.is_set():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                handler(record)
                self.delivered += 1
            except Exception:
                self.handler_errors += 1
                logger.exception("record handler failed")
            finally:
                self._queue.task_done()

    def join(self):
        """Block until every queued record has been handled."""
        self._queue.join()

    def stop(self, timeout: float = 1.0):
        self._stop.set()
        if self._worker is not None:
            self._worker.join(timeout)
            self._worker = None

    def get_stats(self) -> dict:
        return {
            'pending': self._queue.qsize(),
            'enqueued': self.enqueued,
            'dropped': self.dropped,
            'delivered': self.delivered,
            'handler_errors': self.handler_errors,
        }
