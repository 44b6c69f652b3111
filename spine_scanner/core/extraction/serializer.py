import asyncio
import inspect
import json

from collections               import deque
from spine_scanner             import ModuleLogger
from spine_scanner.core.errors import ExtractionError, InferenceFailedError, ModelUnavailableError
from spine_scanner.core.models import BookSpineInfo, ExtractionRequest
from typing                    import Any, Protocol

logger = ModuleLogger('serializer')()

DEFAULT_PROMPT_TEMPLATE = """Extract book metadata from this OCR text read off a book spine:

{text}

Common OCR errors: 0/O, 1/l/I and 5/S confusion, split words ("TH E"), merged words ("TheGreat").
Return title, author, coauthors, isbn, publisher and confidence (high, medium or low).
Return empty strings for fields that cannot be determined."""

class InferenceResource(Protocol):
    """
    A stateful model session that must never be entered concurrently.
    """
    async def respond(self, prompt: str) -> Any: ...

# -------------------- ExtractionSerializer Class --------------------

class ExtractionSerializer:
    """
    Owns the inference resource and feeds it one request at a time.

    Callers await submit() concurrently; requests wait in a FIFO queue and a
    single worker task drains it, awaiting each inference call before starting
    the next. Every request's future resolves exactly once. A failed turn only
    fails its own caller; the worker keeps draining.
    """

    def __init__(
        self,
        resource         : InferenceResource,
        prompt_template  : str | None = None,
        max_input_length : int        = 12000
    ):
        """
        Initializes the ExtractionSerializer.

        Args:
            resource         : Inference resource; only this serializer may call it
            prompt_template  : Template with a {text} field (defaults to the resource's own, then DEFAULT_PROMPT_TEMPLATE)
            max_input_length : Source text is truncated to this many characters
        """
        self._resource        = resource
        self._queue           = deque()
        self._worker          = None
        self._current         = None
        self.prompt_template  = prompt_template or getattr(resource, 'prompt_template', None) or DEFAULT_PROMPT_TEMPLATE
        self.max_input_length = max_input_length
        self.completed_turns  = 0

    @classmethod
    def from_config(cls, config: Any, resource: InferenceResource) -> 'ExtractionSerializer':
        section = config['extraction']
        return cls(
            resource         = resource,
            prompt_template  = section.get('prompt_template') or None,
            max_input_length = section['max_input_length']
        )

    @property
    def pending(self) -> int:
        """
        Number of requests waiting for their turn, excluding the one in flight.
        """
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    # -------------------- Submission --------------------

    async def submit(self, request: ExtractionRequest) -> BookSpineInfo:
        """
        Queues a request and waits for its turn to complete.

        Args:
            request : The extraction request; its result_sink is created if missing

        Returns:
            BookSpineInfo: The structured result of this request's turn

        Raises:
            ExtractionError: If this request's turn failed
            asyncio.CancelledError: If the caller was cancelled; a queued request is dropped unrun
        """
        loop = asyncio.get_running_loop()
        if request.result_sink is None:
            request.result_sink = loop.create_future()

        self._queue.append(request)
        logger.debug(f"Queued request {request.request_id} ({len(self._queue)} waiting).")

        if not self.is_processing:
            self._worker = loop.create_task(self._drain())

        try:
            return await request.result_sink
        except asyncio.CancelledError:
            if request in self._queue:
                self._queue.remove(request)
                logger.info(f"Request {request.request_id} cancelled before its turn.")
            raise

    async def extract(self, source_text: str, request_id: str | None = None) -> BookSpineInfo:
        """
        Convenience wrapper building the request from raw source text.
        """
        request = ExtractionRequest(source_text = source_text)
        if request_id is not None:
            request.request_id = request_id
        return await self.submit(request)

    # -------------------- Worker --------------------

    async def _drain(self):
        while self._queue:
            request = self._queue.popleft()
            sink    = request.result_sink

            if sink.done():
                continue

            self._current = request
            try:
                result = await self._perform(request)
            except ExtractionError as e:
                logger.warning(f"Request {request.request_id} failed: {e}")
                if not sink.done():
                    sink.set_exception(e)
            except Exception as e:
                logger.warning(f"Request {request.request_id} failed: {e}")
                if not sink.done():
                    sink.set_exception(InferenceFailedError(str(e) or type(e).__name__))
            else:
                if not sink.done():
                    sink.set_result(result)
            finally:
                self._current         = None
                self.completed_turns += 1

    async def _perform(self, request: ExtractionRequest) -> BookSpineInfo:
        """
        Runs one inference turn and converts the payload to a BookSpineInfo.
        """
        is_available = getattr(self._resource, 'is_available', None)
        if is_available is not None and not is_available():
            raise ModelUnavailableError()

        prompt  = self.build_prompt(request.source_text)
        payload = await self._resource.respond(prompt)
        logger.debug(f"Request {request.request_id} answered.")

        if isinstance(payload, BookSpineInfo):
            return payload
        if isinstance(payload, (str, bytes)):
            raw_payload = payload.decode('utf-8') if isinstance(payload, bytes) else payload
            try:
                payload = json.loads(raw_payload)
            except json.JSONDecodeError as e:
                raise InferenceFailedError(f"response is not valid JSON: {e}") from e
            return self._to_info(payload, raw_payload)
        return self._to_info(payload, None)

    @staticmethod
    def _to_info(payload: Any, raw_payload: str | None) -> BookSpineInfo:
        try:
            return BookSpineInfo.from_payload(payload, raw_payload = raw_payload)
        except TypeError as e:
            raise InferenceFailedError(str(e)) from e

    def build_prompt(self, source_text: str) -> str:
        return self.prompt_template.format(text = source_text[:self.max_input_length])

    # -------------------- Shutdown --------------------

    async def close(self):
        """
        Stops the worker, cancels every request still waiting and releases the resource.
        """
        while self._queue:
            request = self._queue.popleft()
            if request.result_sink is not None and not request.result_sink.done():
                request.result_sink.cancel()

        if self._current is not None and not self._current.result_sink.done():
            self._current.result_sink.cancel()

        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        close_resource = getattr(self._resource, 'close', None)
        if close_resource is not None:
            result = close_resource()
            if inspect.isawaitable(result):
                await result
