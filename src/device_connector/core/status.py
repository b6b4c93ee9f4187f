"""
Agent Status for Device Connector.

Process-wide state (config snapshot, session handle, package list, in-flight
commands) owned by a single writer thread. Everyone else submits intents; the
owner applies them one at a time and publishes a fresh immutable StatusView.
Readers never lock: they just take the current view.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass(frozen=True, slots=True)
class StatusView:
    """Immutable snapshot of Agent Status handed to handlers."""

    config: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    session: Optional[Any] = None
    packages: Optional[tuple[Mapping[str, Any], ...]] = None
    in_flight: frozenset[str] = frozenset()
    version: int = 0

    @property
    def connected(self) -> bool:
        return bool(self.session is not None and self.session.is_connected())


class Intent:
    """A state change request. apply() returns the next view; it must not mutate."""

    def apply(self, view: StatusView) -> StatusView:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class UpdateConfig(Intent):
    values: Mapping[str, Any]

    def apply(self, view: StatusView) -> StatusView:
        merged = {**view.config, **self.values}
        return replace(view, config=MappingProxyType(merged))


@dataclass(frozen=True, slots=True)
class SetSession(Intent):
    session: Optional[Any]

    def apply(self, view: StatusView) -> StatusView:
        return replace(view, session=self.session)


@dataclass(frozen=True, slots=True)
class SetPackages(Intent):
    packages: tuple[Mapping[str, Any], ...]

    def apply(self, view: StatusView) -> StatusView:
        frozen = tuple(MappingProxyType(dict(p)) for p in self.packages)
        return replace(view, packages=frozen)


@dataclass(frozen=True, slots=True)
class CommandStarted(Intent):
    command_id: str

    def apply(self, view: StatusView) -> StatusView:
        return replace(view, in_flight=view.in_flight | {self.command_id})


@dataclass(frozen=True, slots=True)
class CommandFinished(Intent):
    command_id: str

    def apply(self, view: StatusView) -> StatusView:
        return replace(view, in_flight=view.in_flight - {self.command_id})


class AgentStatus:
    """
    Single-writer owner of the agent's shared state.

    submit() enqueues an intent and returns a Future resolved with the new view
    once it has been applied. Intents are applied strictly in submission order
    on the owner thread.
    """

    def __init__(self, initial: Optional[StatusView] = None) -> None:
        self._view = initial or StatusView()
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()

    @property
    def view(self) -> StatusView:
        return self._view

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._thread:
                return
            self._thread = threading.Thread(
                target=self._run,
                daemon=True,
                name="agent-status",
            )
            self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        with self._lifecycle_lock:
            thread = self._thread
            if not thread:
                return
            self._queue.put(_STOP)
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Agent status owner did not stop within timeout")
            self._thread = None

    def submit(self, intent: Intent) -> "Future[StatusView]":
        if not isinstance(intent, Intent):
            raise TypeError(f"not an Intent: {intent!r}")
        future: "Future[StatusView]" = Future()
        if self._thread is None:
            self.start()
        self._queue.put((intent, future))
        return future

    def apply_all(self, intents, timeout: Optional[float] = None) -> StatusView:
        """
        Apply intents one after another and return the view after the last.

        Stops at the first intent that fails and re-raises its error; the
        intents after it are not submitted.
        """
        view = self._view
        for intent in intents:
            view = self.submit(intent).result(timeout=timeout)
        return view

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            intent, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                new_view = intent.apply(self._view)
                if not isinstance(new_view, StatusView):
                    raise TypeError(f"{type(intent).__name__}.apply returned {type(new_view).__name__}")
                self._view = replace(new_view, version=self._view.version + 1)
            except Exception as exc:
                logger.exception("Failed to apply %s", type(intent).__name__)
                future.set_exception(exc)
                continue
            future.set_result(self._view)
