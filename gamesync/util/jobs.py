import sys
import threading
import traceback
from typing import Optional

from gamesync.util.log import logger


class AsyncCall(threading.Thread):
    def __init__(self, func, callback, *args, **kwargs):
        """Execute `function` in a new thread then call `callback` with
        (result, error) from that same thread once it returns.

        The function can watch `stop_request` to know it was asked to stop.
        An existing event can be passed as the `stop_request` keyword so the
        function and the caller share it.
        """
        self.stop_request = kwargs.pop("stop_request", None) or threading.Event()
        daemon = kwargs.pop("daemon", True)

        super().__init__(target=self.target, args=args, kwargs=kwargs)
        self.function = func
        self.callback = callback if callback else lambda r, e: None
        self.daemon = daemon
        self.result = None
        self.error: Optional[BaseException] = None
        self.start()

    def target(self, *a, **kw):
        result = None
        error = None

        try:
            result = self.function(*a, **kw)
        except Exception as ex:  # pylint: disable=broad-except
            logger.error("Error while completing task %s: %s %s", self.function, type(ex), ex)
            error = ex
            _ex_type, _ex_value, trace = sys.exc_info()
            traceback.print_tb(trace)

        self.result = result
        self.error = error
        self.callback(result, error)

    def stop(self) -> None:
        """Ask the running function to stop; it is up to it to notice."""
        self.stop_request.set()
