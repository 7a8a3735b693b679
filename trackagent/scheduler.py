"""Run a callable after the current call stack unwinds."""

import logging
import threading

from trackagent.callbacks import unwatched

logger = logging.getLogger(__name__)


class ThreadScheduler:
    """Runs deferred callables on short-lived daemon timer threads.

    Deferral only promises ordering (after the current turn), not timing.
    """

    def defer(self, fn, *args):
        with unwatched():
            timer = threading.Timer(0, self._run, args=(fn, args))
        timer.daemon = True
        timer.start()

    @staticmethod
    def _run(fn, args):
        try:
            fn(*args)
        except Exception:
            logger.debug("Deferred call %r failed", fn, exc_info=True)
