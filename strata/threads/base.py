"""
Module for the ThreadBase Class
"""

# Standard
from typing import Optional
import threading

# First Party
import alog

# Local
from ..store import ObjectStoreBase

log = alog.use_channel("TRDUTLS")


class ThreadBase(threading.Thread):
    """Base class for all other thread classes. This class handles generic
    starting and stopping"""

    def __init__(
        self,
        name: Optional[str] = None,
        daemon: Optional[bool] = None,
        store: Optional[ObjectStoreBase] = None,
    ):
        """Initialize class and store required instance variables. This function
        is normally overridden by subclasses that pass in static name/daemon
        variables

        Args:
            name:  Optional[str]
                The name of the thread
            daemon:  Optional[bool]
                Whether python should wait for this thread to stop before exiting
            store:  Optional[ObjectStoreBase]
                The object store available to this thread
        """
        self.store = store
        self.shutdown = threading.Event()
        super().__init__(name=name, daemon=daemon)

    ## Abstract Interface ######################################################

    def run(self):
        """Control loop for the thread. Once this function exits the thread stops"""
        raise NotImplementedError()

    ## Base Class Interface ####################################################

    def start_thread(self):
        """If the thread is not already alive start it"""
        if not self.is_alive() and not self.should_stop():
            log.info("Starting %s: %s", self.__class__.__name__, self.name)
            self.start()

    def stop_thread(self):
        """Set the shutdown event"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()

    def should_stop(self) -> bool:
        """Helper to determine if a thread should shutdown"""
        return self.shutdown.is_set()

    def wait_on_shutdown(self, timeout: float) -> bool:
        """Wait for up to timeout seconds, only being interrupted by shutdown

        Returns:
            keep_running:  bool
                False if the thread should stop
        """
        self.shutdown.wait(timeout)
        return not self.should_stop()
