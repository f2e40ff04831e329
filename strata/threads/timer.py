"""
The TimerThread is a helper class used to run scheduled events such as
backoff retries
"""

# Standard
from datetime import datetime
from heapq import heappop, heappush
from typing import Any, Callable, List, Optional
import threading

# First Party
import alog

# Local
from ..constants import MIN_SLEEP_TIME
from ..types import TimerEvent
from .base import ThreadBase

log = alog.use_channel("TMRTHRD")


class TimerThread(ThreadBase):
    """The TimerThread runs scheduled actions. This is very similar to the
    threading.Timer stdlib class except that it uses one shared thread for all
    events instead of a thread per event."""

    def __init__(self, name: Optional[str] = None):
        super().__init__(name=name or "timer_thread", daemon=True)

        # A plain heap is used since the condition already synchronizes access
        self.timer_heap: List[TimerEvent] = []
        self.notify_condition = threading.Condition()

    def run(self):
        """Sleep until the next scheduled event and execute all pending
        actions"""
        while not self.should_stop():
            with self.notify_condition:
                time_to_sleep = self._get_time_to_sleep()
                if time_to_sleep:
                    log.debug3("Timer waiting %ss until next event", time_to_sleep)
                else:
                    log.debug3("Timer waiting until event queued")
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            for event in self._get_all_current_events():
                log.debug2("Timer executing action for event: %s", event)
                try:
                    event.action(*event.args, **event.kwargs)
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    log.error("Timer event %s failed: %s", event, exc, exc_info=True)

    ## Class Interface #########################################################

    def stop_thread(self):
        """Override stop_thread to wake the control loop"""
        super().stop_thread()
        with self.notify_condition:
            self.notify_condition.notify_all()

    ## Public Interface ########################################################

    def put_event(
        self, time: datetime, action: Callable, *args: Any, **kwargs: Any
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            time:  datetime
                The datetime to execute the event at
            action:  Callable
                The action to execute
            *args:  Any
                Args to pass to the action
            **kwargs:  Any
                Kwargs to pass to the action

        Returns:
            event:  Optional[TimerEvent]
                TimerEvent describing the event, which can be cancelled
        """
        if self.should_stop():
            return None

        event = TimerEvent(time=time, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    @property
    def pending_events(self) -> int:
        """Number of scheduled events that have not been cancelled"""
        with self.notify_condition:
            return len([event for event in self.timer_heap if not event.stale])

    ## Implementation Details ##################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        """Time until the next event, or None if the heap is empty"""
        with self.notify_condition:
            if not self.timer_heap:
                return None
            time_to_sleep = (self.timer_heap[0].time - datetime.now()).total_seconds()
            return max(time_to_sleep, MIN_SLEEP_TIME)

    def _get_all_current_events(self) -> List[TimerEvent]:
        """Pop every event that is due, skipping cancelled ones"""
        event_list = []
        with self.notify_condition:
            while self.timer_heap and self.timer_heap[0].time <= datetime.now():
                event = heappop(self.timer_heap)
                if event.stale:
                    log.debug2("Skipping cancelled timer event %s", event)
                    continue
                event_list.append(event)
        return event_list
