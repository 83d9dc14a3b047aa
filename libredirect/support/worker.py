# -*- coding: utf-8 -*-
#
# SPDX-FileCopyrightText: © 2021 The libredirect Authors
# SPDX-License-Identifier: MIT
"""Serial worker thread.

All the work submitted to a SerialWorker runs on the same thread, one item at a
time, in submission order. Callers on other threads can either enqueue work and
return right away, or block until their work has run.
"""

import concurrent.futures
import logging
import queue
import threading
from collections.abc import Callable
from typing import Any, Optional, TypeVar

from libredirect import exceptions

_T = TypeVar("_T")

_STOP = object()


class SerialWorker:
    def __init__(self, name: str = "libredirect-worker") -> None:
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return

            function, future = item
            if future is not None and not future.set_running_or_notify_cancel():
                continue

            try:
                result = function()
            except Exception as error:  # pylint: disable=broad-except
                if future is not None:
                    future.set_exception(error)
                else:
                    logging.exception("error in worker task %r", function)
            else:
                if future is not None:
                    future.set_result(result)

    def on_worker(self) -> bool:
        return threading.current_thread() is self._thread

    @property
    def stopped(self) -> bool:
        return self._stopped

    def submit(self, function: Callable[..., Any], *args: Any) -> None:
        """Enqueue the function, without waiting for it to run."""
        self._queue.put((lambda: function(*args), None))

    def run_sync(
        self, function: Callable[..., _T], *args: Any, timeout: Optional[float] = None
    ) -> _T:
        """Enqueue the function and wait for its result.

        When called from the worker itself, the function runs right away, as
        waiting for it would never complete.

        Raises:
          exceptions.Error: if the worker was stopped.
        """
        if self.on_worker():
            return function(*args)

        future: "concurrent.futures.Future[_T]" = concurrent.futures.Future()
        with self._stop_lock:
            # Nothing queued after the stop marker ever runs.
            if self._stopped or not self._thread.is_alive():
                raise exceptions.Error("Worker stopped.")
            self._queue.put((lambda: function(*args), future))
        return future.result(timeout)

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped or not self._thread.is_alive():
                return
            self._stopped = True
            self._queue.put(_STOP)

        if not self.on_worker():
            self._thread.join()
