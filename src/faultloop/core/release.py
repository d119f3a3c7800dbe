# SPDX-License-Identifier: Apache-2.0
"""Release signals: the single blocking point of a batch."""

import sys
import threading
from abc import ABC, abstractmethod
from typing import Optional, TextIO


class ReleaseSignal(ABC):
    """Synchronous barrier held between batch creation and teardown.

    ``wait()`` blocks until the operator releases the batch. There is no
    timeout and no polling.
    """

    @abstractmethod
    def wait(self) -> None:
        pass


class PromptRelease(ReleaseSignal):
    """Block until a line (or EOF) arrives on stdin."""

    def __init__(
        self,
        prompt: str = "Press Enter to tear down the devices...",
        stream: Optional[TextIO] = None,
    ):
        self._prompt = prompt
        self._stream = stream

    def wait(self) -> None:
        stream = self._stream or sys.stderr
        print(self._prompt, file=stream, flush=True)
        try:
            input()
        except EOFError:
            # stdin closed: nobody is left to press Enter
            pass


class ImmediateRelease(ReleaseSignal):
    """Already satisfied; teardown follows creation directly."""

    def wait(self) -> None:
        return None


class EventRelease(ReleaseSignal):
    """Released by another thread setting :attr:`event`."""

    def __init__(self, event: Optional[threading.Event] = None):
        self.event = event or threading.Event()

    def release(self) -> None:
        self.event.set()

    def wait(self) -> None:
        self.event.wait()
