"""
The ReconcileThread is the heart of the controller loop. It serializes
reconciles per ManagedObject, runs independent objects concurrently on a
worker pool, and schedules backoff retries for failed reconciles.
"""
# Standard
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, Optional
import os
import queue
import time

# First Party
import alog

# Local
from .. import config
from ..constants import JOIN_THREAD_TIMEOUT, REQUEST_POLL_TIME
from ..types import ObjectId, ReconcileRequest, ReconcileRequestType, TimerEvent
from .base import ThreadBase
from .timer import TimerThread

log = alog.use_channel("RCLTHRD")

# The reconcile function is given the object to reconcile and the number of
# consecutive failed attempts so far
RECONCILE_FUNCTION = Callable[[ObjectId, int], Any]


def backoff_delay(attempt: int) -> float:
    """Get the delay in seconds before retry number `attempt` (starting at 1)"""
    base = float(config.reconcile.backoff_base_seconds)
    maximum = float(config.reconcile.backoff_max_seconds)
    exponent = max(attempt - 1, 0)
    # Avoid overflowing the float for very large attempt counts
    if base <= 0 or exponent > 64:
        return maximum if base > 0 else 0.0
    return min(base * 2**exponent, maximum)


class ReconcileThread(ThreadBase):  # pylint: disable=too-many-instance-attributes
    """This class dispatches reconcile requests to a pool of worker threads.
    At most one reconcile runs for a given ObjectId at a time. A request that
    arrives while its object is being reconciled is held as the single pending
    request for that object; later requests replace it.
    """

    def __init__(
        self,
        reconcile_function: RECONCILE_FUNCTION,
        max_concurrent_reconciles: Optional[int] = None,
        timer_thread: Optional[TimerThread] = None,
    ):
        """Initialize the queues, helper threads, and reconcile tracking

        Args:
            reconcile_function:  Callable[[ObjectId, int], Any]
                The function run for each request. Raising signals failure.
                Any result counts as success, including the terminal result
                for a deleted object.
            max_concurrent_reconciles:  Optional[int]
                Number of worker threads. Defaults to the configured value or
                the number of cpus
            timer_thread:  Optional[TimerThread]
                The timer used to schedule retries
        """
        super().__init__(name="reconcile_thread")
        self.reconcile_function = reconcile_function

        self.max_concurrent_reconciles = (
            max_concurrent_reconciles
            or config.reconcile.max_concurrent_reconciles
            or os.cpu_count()
            or 1
        )

        # Setup required queues and helper threads
        self.request_queue: "queue.Queue[ReconcileRequest]" = queue.Queue()
        self.timer_thread = timer_thread or TimerThread()
        self.executor: Optional[ThreadPoolExecutor] = None

        # Setup reconcile, request, and event mappings. These are shared with
        # the worker completion callbacks and guarded by the lock
        self.running_reconciles: Dict[ObjectId, ReconcileRequest] = {}
        self.pending_reconciles: Dict[ObjectId, ReconcileRequest] = {}
        self.retry_attempts: Dict[ObjectId, int] = {}
        self.event_map: Dict[ObjectId, TimerEvent] = {}
        self._lock = RLock()

        # Number of requests pushed but not yet handed to the pool or pending
        self._unhandled_requests = 0

    def run(self):
        """Wait for requests and start or queue a reconcile for each one"""
        while not self.should_stop():
            try:
                request = self.request_queue.get(timeout=REQUEST_POLL_TIME)
            except queue.Empty:
                continue

            if request.type == ReconcileRequestType.STOPPED:
                log.debug("Got stop request")
                return

            log.debug3("Got request %s from queue", request)
            with self._lock:
                self._unhandled_requests -= 1
                if request.object_id in self.running_reconciles:
                    self._push_to_pending_reconcile(request)
                elif not self._start_reconcile_for_request(request):
                    self._push_to_pending_reconcile(request)

    ## Class Interface #########################################################

    def start_thread(self):
        """Override start_thread to start the worker pool and timer"""
        if self.executor is None:
            self.executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent_reconciles,
                thread_name_prefix="reconcile_worker",
            )
        self.timer_thread.start_thread()
        super().start_thread()

    def stop_thread(self):
        """Override stop_thread to let running reconciles finish"""
        super().stop_thread()
        self.timer_thread.stop_thread()

        # Reawaken the thread so that it can exit
        self.request_queue.put(ReconcileRequest(None, ReconcileRequestType.STOPPED))
        if self.is_alive():
            self.join(JOIN_THREAD_TIMEOUT)

        with self._lock:
            self.pending_reconciles.clear()
            for event in self.event_map.values():
                event.cancel()
            self.event_map.clear()

        if self.executor is not None:
            log.info("Waiting for running reconciles to end")
            self.executor.shutdown(wait=True)

    ## Public Interface ########################################################

    def push_request(self, request: ReconcileRequest):
        """Push request to the reconcile queue

        Args:
            request:  ReconcileRequest
                the ReconcileRequest to add to the queue
        """
        log.debug(
            "Pushing request for %s (%s) to reconcile queue",
            request.object_id,
            getattr(request.type, "value", request.type),
        )
        with self._lock:
            self._unhandled_requests += 1
        self.request_queue.put(request)

    def attempts(self, object_id: ObjectId) -> int:
        """The number of consecutive failed reconciles of an object"""
        with self._lock:
            return self.retry_attempts.get(object_id, 0)

    def is_idle(self) -> bool:
        """True if no reconcile is queued, pending, or running"""
        with self._lock:
            return (
                self._unhandled_requests <= 0
                and not self.running_reconciles
                and not self.pending_reconciles
            )

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the thread is idle. Scheduled retries do not count as
        work in progress.

        Returns:
            idle:  bool
                False if the timeout expired first
        """
        end_time = time.time() + timeout if timeout is not None else None
        while not self.is_idle():
            if end_time is not None and time.time() >= end_time:
                return False
            time.sleep(REQUEST_POLL_TIME / 10)
        return True

    ## Implementation Details ##################################################

    def _push_to_pending_reconcile(self, request: ReconcileRequest):
        """Hold a request for an object that is being reconciled. Only the
        newest request is kept.
        """
        object_id = request.object_id
        current = self.pending_reconciles.get(object_id)
        if current is None or request.timestamp >= current.timestamp:
            log.debug3("Setting pending request for %s to %s", object_id, request)
            self.pending_reconciles[object_id] = request
        else:
            log.debug4("Pending request for %s is newer than %s", object_id, request)

    def _start_reconcile_for_request(self, request: ReconcileRequest) -> bool:
        """Submit a reconcile to the worker pool. Must be called with the lock
        held.
        """
        if self.should_stop() or self.executor is None:
            return False

        object_id = request.object_id

        # A fresh run supersedes any scheduled retry
        event = self.event_map.pop(object_id, None)
        if event is not None:
            log.debug2("Cancelling scheduled retry for %s", object_id)
            event.cancel()

        attempts = self.retry_attempts.get(object_id, 0)
        log.info(
            "Starting reconcile of %s for %s",
            object_id,
            getattr(request.type, "value", request.type),
        )
        self.running_reconciles[object_id] = request
        try:
            future = self.executor.submit(self.reconcile_function, object_id, attempts)
        except RuntimeError as err:
            # The pool was shut down underneath us
            log.debug("Unable to submit reconcile for %s: %s", object_id, err)
            self.running_reconciles.pop(object_id, None)
            return False
        future.add_done_callback(
            lambda fut, req=request: self._handle_reconcile_end(req, fut)
        )
        return True

    def _handle_reconcile_end(self, request: ReconcileRequest, future: Future):
        """Record the result of a finished reconcile, schedule a retry if it
        failed, and start the pending request for the object if there is one
        """
        object_id = request.object_id
        exception = future.exception()
        result = future.result() if exception is None else None

        with self._lock:
            self.running_reconciles.pop(object_id, None)

            if exception is not None:
                attempts = self.retry_attempts.get(object_id, 0) + 1
                self.retry_attempts[object_id] = attempts
                log.warning(
                    "Reconcile of %s failed (attempt %d): %s",
                    object_id,
                    attempts,
                    exception,
                )
                if object_id not in self.pending_reconciles:
                    self._schedule_retry(object_id, attempts)
            else:
                self.retry_attempts.pop(object_id, None)
                log.info(
                    "Reconcile of %s completed with result %s", object_id, result
                )

            pending = self.pending_reconciles.pop(object_id, None)
            if pending is not None:
                log.debug2("Starting pending request for %s", object_id)
                if not self._start_reconcile_for_request(pending):
                    self.pending_reconciles[object_id] = pending

    def _schedule_retry(self, object_id: ObjectId, attempts: int):
        """Push a retry request to the timer after the backoff delay"""
        if self.should_stop():
            return
        delay = backoff_delay(attempts)
        log.debug("Retrying %s in %ss", object_id, delay)
        event = self.timer_thread.put_event(
            datetime.now() + timedelta(seconds=delay),
            self.push_request,
            ReconcileRequest(object_id, ReconcileRequestType.RETRY),
        )
        if event is not None:
            self.event_map[object_id] = event
