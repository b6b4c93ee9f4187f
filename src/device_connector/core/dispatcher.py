"""
Topic router / command dispatcher for Device Connector.

Each capability registers a device-relative base topic T. The dispatcher
subscribes T/post, runs the handler on a worker thread, and publishes the result
(or a structured error) on T:

    operator --> T/post --> handler(request, status view, emitter) --> T

Delivery is at-least-once. Handlers that are not naturally idempotent must
de-duplicate on request_id themselves; the dispatcher does not.
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

from device_connector.core.cmd_context import CommandResult, ResponseEmitter
from device_connector.core.status import AgentStatus, CommandFinished, CommandStarted, StatusView
from device_connector.errors import BindingConflict, DecodeError, HandlerError, ProtocolViolation
from device_connector.mqtt_topics import TopicSchema, validate_base_topic

logger = logging.getLogger(__name__)

Handler = Callable[[dict, StatusView, ResponseEmitter], Any]

INTENT_TIMEOUT_S = 5.0


@dataclass(frozen=True, slots=True)
class TopicBinding:
    base_topic: str
    inbound: str
    response: str
    handler: Handler
    retain: bool = False
    streaming: bool = False
    serialized: bool = False

    @property
    def name(self) -> str:
        return getattr(self.handler, "__name__", repr(self.handler))


def decode_request(payload: bytes) -> dict[str, Any]:
    """Decode an inbound payload into a JSON object. Empty payloads mean {}."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecodeError(f"payload is not UTF-8: {exc}") from exc
    if not text.strip():
        return {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise DecodeError(f"payload must be a JSON object, got {type(data).__name__}")
    return data


class Dispatcher:
    """
    Lookup table from inbound topic to TopicBinding, plus the workers that run
    handlers.

    Bindings are registered at startup and never change afterwards. Each
    delivery runs as its own task on a shared pool; serialized bindings get a
    private single-worker executor so their invocations keep delivery order.
    """

    def __init__(
        self,
        session: Any,
        topics: TopicSchema,
        status: AgentStatus,
        *,
        max_workers: int = 4,
    ) -> None:
        self.session = session
        self.topics = topics
        self.status = status

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="cmd")
        self._serial_executors: dict[str, ThreadPoolExecutor] = {}
        self._bindings: dict[str, TopicBinding] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    @property
    def bindings(self) -> list[TopicBinding]:
        with self._lock:
            return list(self._bindings.values())

    def binding_for(self, topic: str) -> Optional[TopicBinding]:
        with self._lock:
            return self._bindings.get(topic)

    def register_handler(
        self,
        base_topic: str,
        handler: Handler,
        retain: bool = False,
        *,
        streaming: bool = False,
        serialized: bool = False,
    ) -> TopicBinding:
        """
        Bind handler to base_topic: subscribe <base>/post, answer on <base>.

        Raises:
            BindingConflict: If the inbound or response topic collides with an
                existing binding's inbound topic
        """
        validate_base_topic(base_topic)
        binding = TopicBinding(
            base_topic=base_topic,
            inbound=self.topics.request(base_topic),
            response=self.topics.response(base_topic),
            handler=handler,
            retain=retain,
            streaming=streaming,
            serialized=serialized,
        )

        with self._lock:
            inbound = set(self._bindings)
            responses = {b.response for b in self._bindings.values()}
            if (
                binding.inbound in inbound
                or binding.response in inbound
                or binding.inbound in responses
            ):
                raise BindingConflict(
                    f"topic binding for {base_topic} collides with an existing binding"
                )
            self._bindings[binding.inbound] = binding
            executor: Executor = self._executor
            if serialized:
                executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=f"cmd{base_topic.replace('/', '-')}"
                )
                self._serial_executors[binding.inbound] = executor

        self.session.subscribe(binding.inbound, self._on_message, executor)
        logger.info(
            "Registered %s: %s -> %s (retain=%s streaming=%s serialized=%s)",
            binding.name,
            binding.inbound,
            binding.response,
            retain,
            streaming,
            serialized,
        )
        return binding

    def _response_topic(self, binding: TopicBinding, request: dict[str, Any]) -> str:
        override = request.get("response_topic")
        if override is None:
            return binding.response
        if (
            isinstance(override, str)
            and self.topics.owns(override)
            and "+" not in override
            and "#" not in override
            and self.binding_for(override) is None
        ):
            return override
        logger.warning(
            "Ignoring response_topic %r for %s: outside device namespace",
            override,
            binding.inbound,
        )
        return binding.response

    def _on_message(self, topic: str, payload: bytes) -> None:
        binding = self.binding_for(topic)
        if binding is None:
            logger.warning("%s", ProtocolViolation(f"no binding for topic {topic}"))
            return

        command_id = f"{binding.base_topic}#{next(self._seq)}"
        try:
            request = decode_request(payload)
        except DecodeError as exc:
            logger.warning("Bad request on %s: %s", topic, exc)
            ResponseEmitter(self.session, binding.response, retain=binding.retain).error(
                str(exc), DecodeError.kind
            )
            return

        request_id = request.get("request_id")
        if request_id is not None and not isinstance(request_id, str):
            request_id = str(request_id)

        emitter = ResponseEmitter(
            self.session,
            self._response_topic(binding, request),
            retain=binding.retain,
            request_id=request_id,
        )
        self.status.submit(CommandStarted(command_id))
        try:
            self._invoke(binding, request, emitter)
        finally:
            self.status.submit(CommandFinished(command_id))

    def _invoke(self, binding: TopicBinding, request: dict[str, Any], emitter: ResponseEmitter) -> None:
        try:
            result = binding.handler(request, self.status.view, emitter)
        except HandlerError as exc:
            logger.warning("Handler %s failed: %s", binding.name, exc)
            self._emit_error(binding, emitter, str(exc), HandlerError.kind)
            return
        except DecodeError as exc:
            logger.warning("Handler %s rejected request: %s", binding.name, exc)
            self._emit_error(binding, emitter, str(exc), DecodeError.kind)
            return
        except Exception as exc:
            logger.exception("Unhandled error in %s", binding.name)
            self._emit_error(binding, emitter, f"unhandled error: {exc}", "internal_error")
            return

        payload = result
        if isinstance(result, CommandResult):
            payload = result.payload
            if result.intents:
                try:
                    self.status.apply_all(result.intents, timeout=INTENT_TIMEOUT_S)
                except Exception as exc:
                    logger.exception("Failed to apply state changes from %s", binding.name)
                    self._emit_error(binding, emitter, f"state update failed: {exc}", "internal_error")
                    return

        try:
            if binding.streaming:
                if payload is not None:
                    emitter.emit(payload)
            elif emitter.count == 0:
                emitter.emit({} if payload is None else payload)
            elif payload is not None:
                logger.warning("%s already responded; dropping returned result", binding.name)
        except (TypeError, ValueError) as exc:
            self._emit_error(binding, emitter, f"result is not JSON-serializable: {exc}", "internal_error")

    @staticmethod
    def _emit_error(binding: TopicBinding, emitter: ResponseEmitter, message: str, kind: str) -> None:
        if not binding.streaming and emitter.count > 0:
            logger.error("%s failed after responding: %s", binding.name, message)
            return
        emitter.error(message, kind)

    def close(self) -> None:
        for binding in self.bindings:
            try:
                self.session.unsubscribe(binding.inbound)
            except Exception as exc:
                logger.warning("Failed to unsubscribe %s: %s", binding.inbound, exc)
        self._executor.shutdown(wait=False, cancel_futures=True)
        for executor in self._serial_executors.values():
            executor.shutdown(wait=False, cancel_futures=True)
