"""Fan-out of the workflow system's shared event stream.

The workflow system publishes every job result on one server-sent event
channel. A single reader task per hub consumes that channel and hands each
result to the one-shot waiter registered under its conversation id, so
concurrent workflow calls share one connection instead of each scanning the
raw stream.
"""

import asyncio
import json
import logging
from dataclasses import dataclass

import httpx

from completion_gateway.providers.base import ProviderError
from completion_gateway.providers.streaming import parse_sse_line

logger = logging.getLogger("cgw.providers.workflow")


@dataclass(frozen=True)
class WorkflowEvent:
    correlation_id: str
    content: str


def extract_workflow_event(payload: object) -> WorkflowEvent | None:
    """Pull ``cloud_event.data.data.{conversation_id, message.content}``."""
    node: object = payload
    for key in ("cloud_event", "data", "data"):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    if not isinstance(node, dict):
        return None

    correlation_id = node.get("conversation_id")
    message = node.get("message")
    if not isinstance(correlation_id, str) or not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, str):
        return None
    return WorkflowEvent(correlation_id=correlation_id, content=content)


class WorkflowEventHub:
    def __init__(
        self,
        base_url: str,
        workflow_name: str,
        connect_timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = f"{base_url.rstrip('/')}/admin/stream/events/{workflow_name}"
        # The channel is idle between jobs, so reads never time out.
        self._timeout = httpx.Timeout(connect_timeout_s, read=None)
        self._transport = transport
        self._waiters: dict[str, asyncio.Future[str]] = {}
        self._reader: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def subscribe(self, correlation_id: str) -> "asyncio.Future[str]":
        """Register a waiter and return once the shared stream is open.

        Raises the reader's error when the stream cannot be opened.
        """
        if correlation_id in self._waiters:
            raise ValueError(f"Correlation id already registered: {correlation_id}")
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._waiters[correlation_id] = future
        self._ensure_reader()
        await self._connected.wait()

        if future.done() and not future.cancelled() and future.exception() is not None:
            self._waiters.pop(correlation_id, None)
            future.result()
        return future

    def unsubscribe(self, correlation_id: str) -> None:
        future = self._waiters.pop(correlation_id, None)
        if future is not None and not future.done():
            future.cancel()
        if not self._waiters and self._reader is not None:
            self._reader.cancel()
            self._reader = None

    async def close(self) -> None:
        reader = self._reader
        self._reader = None
        self._fail_waiters(
            ProviderError(
                status_code=503,
                code="workflow_stream_closed",
                message="Workflow event stream was shut down",
            )
        )
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    def _ensure_reader(self) -> None:
        if self._reader is not None and not self._reader.done():
            return
        self._connected = asyncio.Event()
        self._reader = asyncio.create_task(self._read_events(self._connected))

    async def _read_events(self, connected: asyncio.Event) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        try:
            async with (
                httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client,
                client.stream("GET", self._url, headers=headers) as resp,
            ):
                if resp.status_code >= 400:
                    await resp.aread()
                    raise ProviderError(
                        status_code=502,
                        code="workflow_stream_unavailable",
                        message=f"Workflow event stream returned {resp.status_code}",
                        detail=resp.text[:2000] or None,
                    )
                connected.set()
                logger.info("workflow_stream_opened", extra={"provider": "workflow"})
                async for line in resp.aiter_lines():
                    if self._dispatch(line) and not self._waiters:
                        self._detach(None)
                        break
                else:
                    self._detach(
                        ProviderError(
                            status_code=502,
                            code="workflow_no_response",
                            message="No response received from workflow",
                        )
                    )
        except ProviderError as exc:
            self._detach(exc)
        except httpx.TransportError as exc:
            self._detach(
                ProviderError(
                    status_code=502,
                    code="workflow_stream_error",
                    message=f"Workflow event stream failed: {exc}",
                )
            )
        finally:
            connected.set()

    def _detach(self, error: ProviderError | None) -> None:
        """Retire the current reader so the next subscription opens a fresh stream."""
        if self._reader is not asyncio.current_task():
            return
        self._reader = None
        if error is not None:
            logger.warning(
                "workflow_stream_closed",
                extra={"provider": "workflow", "error": error.code},
            )
            self._fail_waiters(error)

    def _dispatch(self, line: str) -> bool:
        """Deliver one frame to its waiter; True when a waiter was resolved."""
        data = parse_sse_line(line)
        if not data:
            return False
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            return False
        event = extract_workflow_event(parsed)
        if event is None:
            return False
        future = self._waiters.pop(event.correlation_id, None)
        if future is None or future.done():
            return False
        future.set_result(event.content)
        logger.info(
            "workflow_event_matched",
            extra={"provider": "workflow", "correlation_id": event.correlation_id},
        )
        return True

    def _fail_waiters(self, error: ProviderError) -> None:
        waiters = self._waiters
        self._waiters = {}
        for future in waiters.values():
            if not future.done():
                future.set_exception(error)
