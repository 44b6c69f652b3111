import aiohttp
import asyncio
import inspect
import uuid

from contextlib                import aclosing
from spine_scanner             import ModuleLogger, __version__
from spine_scanner.core.errors import (
    InvalidResponseError,
    NetworkError,
    RateLimitedError,
    RemoteJobError,
    ServerError,
    StreamFormatError,
    TransportFailureError
)
from spine_scanner.core.models import ErrorEvent, Job, JobState, ResultEvent, StreamEvent, UploadTicket
from typing                    import Any, AsyncIterator, Awaitable, Callable
from urllib.parse              import urljoin

from .sse import SSEDecoder, parse_event

logger = ModuleLogger('client')()

EventSink = Callable[[StreamEvent], Awaitable[None] | None]

def parse_retry_after(value: str | None) -> float | None:
    """
    Parses a Retry-After header given in seconds; anything else yields None.
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return max(0.0, seconds)

class StreamingUploadClient:
    """
    Client for the remote extraction service.

    One job runs upload, then a server-sent event stream, then cleanup. A 429
    on upload is raised to the caller at once as RateLimitedError; retry
    policy belongs to the RateLimitGovernor. Once a job's stream reaches a
    terminal state, cleanup is attempted exactly once and its failures are
    only logged.
    """

    SUCCESS_UPLOAD  = {200, 201, 202}
    SUCCESS_CLEANUP = {200, 202, 204, 404}

    def __init__(
        self,
        base_url        : str,
        device_id       : str | None                   = None,
        session         : aiohttp.ClientSession | None = None,
        request_timeout : float                        = 30.0,
        stream_timeout  : float                        = 300.0,
        upload_path     : str                          = '/v3/jobs/scans',
        cleanup_path    : str                          = '/v3/jobs/scans/{job_id}/cleanup',
        cleanup_method  : str                          = 'DELETE',
        user_agent      : str | None                   = None
    ):
        """
        Initializes the StreamingUploadClient.

        Args:
            base_url        : Service root, e.g. https://api.example.net
            device_id       : Identifier sent with every request (defaults to a new UUID)
            session         : Shared aiohttp session; one is created lazily when None
            request_timeout : Total timeout for upload and cleanup requests, in seconds
            stream_timeout  : Total timeout for one event stream, in seconds
            upload_path     : Upload endpoint path
            cleanup_path    : Cleanup endpoint path with a {job_id} field
            cleanup_method  : HTTP method used for cleanup (DELETE or POST)
            user_agent      : User-Agent header value
        """
        self.base_url        = base_url.rstrip('/') + '/'
        self.device_id       = device_id or str(uuid.uuid4())
        self.request_timeout = request_timeout
        self.stream_timeout  = stream_timeout
        self.upload_path     = upload_path
        self.cleanup_path    = cleanup_path
        self.cleanup_method  = cleanup_method.upper()
        self.user_agent      = user_agent or f'SpineScanner/{__version__}'
        self._session        = session
        self._owns_session   = session is None

    @classmethod
    def from_config(cls, config: Any, device_id: str | None = None) -> 'StreamingUploadClient':
        section = config['remote']
        return cls(
            base_url        = section['base_url'],
            device_id       = device_id or section.get('device_id') or None,
            request_timeout = section['request_timeout'],
            stream_timeout  = section['stream_timeout'],
            upload_path     = section['upload_path'],
            cleanup_path    = section['cleanup_path'],
            cleanup_method  = section['cleanup_method'],
            user_agent      = section.get('user_agent') or None
        )

    # -------------------- Session --------------------

    def get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout = aiohttp.ClientTimeout(total = self.request_timeout),
                headers = {'User-Agent': self.user_agent}
            )
            self._owns_session = True
        return self._session

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> 'StreamingUploadClient':
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    def endpoint(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip('/'))

    # -------------------- Upload --------------------

    async def upload(self, image: bytes, device_id: str | None = None) -> UploadTicket:
        """
        Uploads one JPEG image and returns the job created for it.

        Args:
            image     : JPEG-encoded image bytes
            device_id : Overrides the client's device identifier

        Returns:
            UploadTicket: The job id and its absolute stream URL

        Raises:
            RateLimitedError: On a 429 response, carrying Retry-After in seconds
            ServerError: On any other unexpected status
            InvalidResponseError: If the success body cannot be understood
            TransportFailureError: On connection failures and timeouts
        """
        form = aiohttp.FormData()
        form.add_field('photos[]', image, filename = 'spine.jpg', content_type = 'image/jpeg')
        headers = {'X-Device-ID': device_id or self.device_id}

        try:
            async with self.get_session().post(self.endpoint(self.upload_path), data = form, headers = headers) as response:
                if response.status == 429:
                    retry_after = parse_retry_after(response.headers.get('Retry-After'))
                    logger.warning(f"Upload rate limited (Retry-After: {retry_after}).")
                    raise RateLimitedError(retry_after = retry_after)

                if response.status not in self.SUCCESS_UPLOAD:
                    logger.error(f"Upload failed with HTTP {response.status}.")
                    raise ServerError(response.status)

                body = await response.json(content_type = None)

        except NetworkError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportFailureError("upload timed out") from e
        except aiohttp.ClientError as e:
            raise TransportFailureError(str(e) or type(e).__name__) from e
        except ValueError as e:
            raise InvalidResponseError(f"upload body is not JSON: {e}") from e

        ticket = self.parse_upload_body(body)
        logger.info(f"Uploaded {len(image)} bytes as job {ticket.job_id}.")
        return ticket

    def parse_upload_body(self, body: Any) -> UploadTicket:
        """
        Accepts both {success, data: {jobId, sseUrl}} and a flat {jobId, sseUrl} body.
        """
        if not isinstance(body, dict):
            raise InvalidResponseError("upload body is not an object")
        if body.get('success') is False:
            raise InvalidResponseError("upload reported success=false")

        data       = body.get('data') if isinstance(body.get('data'), dict) else body
        job_id     = data.get('jobId')
        stream_url = data.get('sseUrl') or data.get('streamUrl')

        if not job_id or not stream_url:
            raise InvalidResponseError("upload body is missing jobId or sseUrl")
        return UploadTicket(job_id = str(job_id), stream_url = urljoin(self.base_url, str(stream_url)))

    # -------------------- Event Stream --------------------

    async def stream_events(self, stream_url: str) -> AsyncIterator[StreamEvent]:
        """
        Yields parsed events from a job's stream in receipt order, stopping after a terminal one.

        Malformed events are logged and skipped; keepalives and unknown event types are ignored.

        Raises:
            TransportFailureError: If the stream cannot be opened or breaks mid-way, including over-long lines
        """
        headers = {'Accept': 'text/event-stream', 'X-Device-ID': self.device_id}
        timeout = aiohttp.ClientTimeout(total = self.stream_timeout)
        decoder = SSEDecoder()

        try:
            async with self.get_session().get(stream_url, headers = headers, timeout = timeout) as response:
                if response.status != 200:
                    raise TransportFailureError(f"stream returned HTTP {response.status}")

                async for raw_line in response.content:
                    raw = decoder.feed(raw_line.decode('utf-8', errors = 'replace').rstrip('\r\n'))
                    if raw is None:
                        continue

                    try:
                        event = parse_event(raw.event, raw.data)
                    except StreamFormatError as e:
                        logger.warning(f"Skipping malformed '{raw.event}' event: {e}")
                        continue

                    if event is None:
                        continue

                    yield event
                    if event.is_terminal:
                        return

        except asyncio.TimeoutError as e:
            raise TransportFailureError("stream timed out") from e
        except aiohttp.ClientError as e:
            raise TransportFailureError(str(e) or type(e).__name__) from e
        except ValueError as e:
            raise TransportFailureError(f"stream line rejected: {e}") from e

    async def stream_job(self, ticket: UploadTicket, sink: EventSink | None = None, job: Job | None = None) -> Job:
        """
        Follows one uploaded job to a terminal state, then cleans it up.

        Args:
            ticket : Result of a successful upload
            sink   : Called with every event in receipt order (may be a coroutine function)
            job    : An UPLOADING job to continue; a new one is created when None

        Returns:
            Job: The finished job; outcome is COMPLETED with result set, or FAILED with error set
        """
        if job is None:
            job = Job.from_ticket(ticket)
        else:
            job.job_id, job.stream_url = ticket.job_id, ticket.stream_url
            job.transition(JobState.STREAMING)
        logger.info(f"Streaming job {job.job_id}.")

        try:
            async with aclosing(self.stream_events(ticket.stream_url)) as events:
                async for event in events:
                    job.events_seen += 1
                    await self.deliver(sink, event)

                    if isinstance(event, ResultEvent):
                        job.result = event.info
                        job.transition(JobState.COMPLETED)
                        break

                    if isinstance(event, ErrorEvent):
                        job.error = RemoteJobError(event.message, code = event.code, retryable = event.retryable)
                        job.transition(JobState.FAILED)
                        break

            if job.state is JobState.STREAMING:
                raise TransportFailureError("stream closed without a terminal event")

        except NetworkError as e:
            if job.state is JobState.STREAMING:
                logger.warning(f"Job {job.job_id} failed: {e}")
                job.error = e
                job.transition(JobState.FAILED)
                await self.deliver(sink, ErrorEvent(message = str(e), code = 'transport'))

        except (Exception, asyncio.CancelledError) as e:
            if job.state is JobState.STREAMING:
                job.error = e if isinstance(e, Exception) else TransportFailureError("stream cancelled")
                job.transition(JobState.FAILED)
            raise

        finally:
            await self.cleanup_job(job)

        logger.info(f"Job {job.job_id} finished as {job.outcome.value}.")
        return job

    async def run_job(self, image: bytes, sink: EventSink | None = None, device_id: str | None = None) -> Job:
        """
        Upload followed by stream_job, walking one Job through every state.

        Raises:
            NetworkError: If the upload fails, including RateLimitedError; nothing is cleaned up
        """
        job = Job()
        job.transition(JobState.UPLOADING)
        try:
            ticket = await self.upload(image, device_id = device_id)
        except NetworkError as e:
            job.error = e
            job.transition(JobState.FAILED)
            raise
        return await self.stream_job(ticket, sink = sink, job = job)

    @staticmethod
    async def deliver(sink: EventSink | None, event: StreamEvent):
        if sink is None:
            return
        result = sink(event)
        if inspect.isawaitable(result):
            await result

    # -------------------- Cleanup --------------------

    async def cleanup(self, job_id: str):
        """
        Asks the service to release a job's resources; already-removed jobs count as success.

        Raises:
            ServerError: On an unexpected status
            TransportFailureError: On connection failures and timeouts
        """
        url = self.endpoint(self.cleanup_path.format(job_id = job_id))
        try:
            async with self.get_session().request(self.cleanup_method, url, headers = {'X-Device-ID': self.device_id}) as response:
                if response.status not in self.SUCCESS_CLEANUP:
                    raise ServerError(response.status)
        except NetworkError:
            raise
        except asyncio.TimeoutError as e:
            raise TransportFailureError("cleanup timed out") from e
        except aiohttp.ClientError as e:
            raise TransportFailureError(str(e) or type(e).__name__) from e

    async def cleanup_job(self, job: Job) -> bool:
        """
        Cleans up a job that reached a terminal streaming state; a cleaned job is left as is.

        Returns:
            bool: True if the job is in the CLEANED state afterwards
        """
        if job.state is JobState.CLEANED:
            return True
        if job.job_id is None or job.state not in (JobState.COMPLETED, JobState.FAILED):
            return False

        try:
            await self.cleanup(job.job_id)
        except NetworkError as e:
            logger.warning(f"Cleanup failed for job {job.job_id}: {e}")
            return False

        job.transition(JobState.CLEANED)
        logger.info(f"Cleaned up job {job.job_id}.")
        return True
