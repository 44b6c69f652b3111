import asyncio
import bisect
import inspect
import itertools
import math
import time

from collections               import deque
from spine_scanner             import ModuleLogger
from spine_scanner.core.errors import RateLimitedError
from spine_scanner.core.models import PreservedPayload, RateLimitState, UploadTicket
from typing                    import Any, Awaitable, Callable, Protocol

logger = ModuleLogger('governor')()

ResubmitCallback = Callable[[PreservedPayload, UploadTicket], Awaitable[None] | None]
FailureCallback  = Callable[[PreservedPayload, Exception], Awaitable[None] | None]

class Uploader(Protocol):
    async def upload(self, image: bytes, device_id: str | None = None) -> UploadTicket: ...

async def call_back(callback: Callable | None, *args):
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error(f"Resubmission callback failed: {e!r}")

class RateLimitGovernor:
    """
    Gatekeeper in front of the upload endpoint, owning the cooldown state.

    A 429 starts a cooldown and the image that hit it is preserved. While
    cooling down, uploads are rejected locally and their images preserved too.
    Once the cooldown elapses, tick() clears it and resubmits every preserved
    image oldest first; new uploads wait until that resubmission is done.
    No image is dropped because of rate limiting.
    """

    def __init__(
        self,
        uploader            : Uploader,
        device_id           : str | None              = None,
        default_retry_after : float                   = 60.0,
        poll_interval       : float                   = 1.0,
        clock               : Callable[[], float]     = time.monotonic,
        on_resubmit         : ResubmitCallback | None = None,
        on_resubmit_failed  : FailureCallback | None  = None
    ):
        """
        Initializes the RateLimitGovernor.

        Args:
            uploader            : Object whose upload(image, device_id) raises RateLimitedError on 429
            device_id           : Device identifier passed to every upload
            default_retry_after : Cooldown used when the service gives no Retry-After, in seconds
            poll_interval       : Seconds between cooldown checks once started
            clock               : Monotonic time source, in seconds
            on_resubmit         : Called with (payload, ticket) after each successful resubmission
            on_resubmit_failed  : Called with (payload, error) when a resubmission fails for another reason
        """
        self.uploader            = uploader
        self.device_id           = device_id
        self.default_retry_after = default_retry_after
        self.poll_interval       = poll_interval
        self.clock               = clock
        self.on_resubmit         = on_resubmit
        self.on_resubmit_failed  = on_resubmit_failed
        self.state               = RateLimitState()
        self._sequence           = itertools.count(1)
        self._draining           = False
        self._drained            = asyncio.Event()
        self._poller             = None

        self._drained.set()

    @classmethod
    def from_config(cls, config: Any, uploader: Uploader, **callbacks) -> 'RateLimitGovernor':
        section = config['rate_limit']
        return cls(
            uploader            = uploader,
            device_id           = getattr(uploader, 'device_id', None),
            default_retry_after = section['default_retry_after'],
            poll_interval       = section['poll_interval'],
            **callbacks
        )

    # -------------------- State --------------------

    @property
    def is_cooling_down(self) -> bool:
        return self.state.is_cooling_down

    @property
    def resume_at(self) -> float | None:
        return self.state.resume_at

    @property
    def preserved_payloads(self) -> tuple[PreservedPayload, ...]:
        return tuple(self.state.preserved_payloads)

    @property
    def is_idle(self) -> bool:
        """
        True when nothing is cooling down, preserved, or being resubmitted.
        """
        return not (self.state.is_cooling_down or self.state.preserved_payloads or self._draining)

    def remaining_seconds(self) -> int:
        """
        Whole seconds left in the cooldown, rounded up; 0 when not cooling down.
        """
        if not self.state.is_cooling_down or self.state.resume_at is None:
            return 0
        return max(0, math.ceil(self.state.resume_at - self.clock()))

    def enter_cooldown(self, retry_after: float | None):
        """
        Starts or extends the cooldown window.
        """
        seconds   = self.default_retry_after if retry_after is None else retry_after
        resume_at = self.clock() + seconds

        if self.state.is_cooling_down and self.state.resume_at is not None:
            resume_at = max(resume_at, self.state.resume_at)

        self.state.is_cooling_down = True
        self.state.resume_at       = resume_at
        logger.warning(f"Rate limit set: retry after {math.ceil(seconds)}s.")

    def clear_cooldown(self):
        self.state.is_cooling_down = False
        self.state.resume_at       = None
        logger.info("Rate limit cleared.")

    def preserve(self, payload: PreservedPayload):
        """
        Holds a payload for resubmission, keeping capture order.
        """
        bisect.insort(self.state.preserved_payloads, payload, key = lambda p: p.sequence)
        logger.info(f"Preserved payload ({len(self.state.preserved_payloads)} waiting).")

    def reset(self):
        """
        Restores the initial state, dropping any cooldown and preserved payloads.
        """
        self.state     = RateLimitState()
        self._draining = False
        self._drained.set()

    # -------------------- Upload Gate --------------------

    async def upload(self, image: bytes, tag: Any = None) -> UploadTicket:
        """
        Uploads through the governor.

        Args:
            image : JPEG image bytes
            tag   : Caller data kept with the payload if it has to be preserved

        Returns:
            UploadTicket: Result of the upload

        Raises:
            RateLimitedError: If cooling down or the service answered 429; the image is preserved
            NetworkError: For any other upload failure; the image is not preserved
        """
        payload = PreservedPayload(data = image, tag = tag, sequence = next(self._sequence))

        # Older preserved payloads always go out first
        while True:
            if self._draining:
                await self._drained.wait()
            elif self.state.preserved_payloads and not self.state.is_cooling_down:
                await self.resubmit_preserved()
            else:
                break

        if self.state.is_cooling_down:
            self.preserve(payload)
            raise RateLimitedError(retry_after = self.remaining_seconds())

        try:
            return await self.uploader.upload(image, device_id = self.device_id)
        except RateLimitedError as e:
            self.enter_cooldown(e.retry_after)
            self.preserve(payload)
            raise

    # -------------------- Cooldown Expiry --------------------

    async def tick(self) -> int:
        """
        Time-driven check: ends an elapsed cooldown and resubmits preserved payloads.

        Returns:
            int: Number of payloads successfully resubmitted by this call
        """
        if self._draining:
            return 0
        if not self.state.is_cooling_down and not self.state.preserved_payloads:
            return 0
        if self.state.is_cooling_down:
            if self.state.resume_at is not None and self.clock() < self.state.resume_at:
                return 0
            self.clear_cooldown()

        return await self.resubmit_preserved()

    async def resubmit_preserved(self) -> int:
        """
        Uploads every preserved payload oldest first; a new 429 puts the rest back in front.
        """
        remaining = deque(self.state.preserved_payloads)
        self.state.preserved_payloads.clear()
        self._draining = True
        self._drained.clear()
        resubmitted = 0

        if remaining:
            logger.info(f"Resubmitting {len(remaining)} preserved payloads.")

        try:
            while remaining:
                payload = remaining[0]
                try:
                    ticket = await self.uploader.upload(payload.data, device_id = self.device_id)
                except RateLimitedError as e:
                    self.enter_cooldown(e.retry_after)
                    break
                except Exception as e:
                    remaining.popleft()
                    logger.error(f"Resubmission failed: {e!r}")
                    await call_back(self.on_resubmit_failed, payload, e)
                    continue

                remaining.popleft()
                resubmitted += 1
                await call_back(self.on_resubmit, payload, ticket)

        finally:
            for payload in remaining:
                self.preserve(payload)
            self._draining = False
            self._drained.set()

        logger.info(f"Resubmitted {resubmitted} payloads, {len(self.state.preserved_payloads)} still preserved.")
        return resubmitted

    # -------------------- Polling --------------------

    def start(self):
        """
        Starts the background cooldown check; requires a running event loop.
        """
        if self._poller is None or self._poller.done():
            self._poller = asyncio.get_running_loop().create_task(self._poll())

    async def stop(self):
        if self._poller is not None and not self._poller.done():
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
        self._poller = None

    async def _poll(self):
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Cooldown check failed: {e}")
            await asyncio.sleep(self.poll_interval)

    async def wait_until_clear(self, timeout: float | None = None):
        """
        Waits until no cooldown, preserved payload or resubmission remains.

        Raises:
            asyncio.TimeoutError: If timeout seconds pass first
        """
        async def wait():
            while not self.is_idle:
                await self.tick()
                if not self.is_idle:
                    await asyncio.sleep(self.poll_interval)

        await asyncio.wait_for(wait(), timeout = timeout)
