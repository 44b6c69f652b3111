import asyncio
import json
import numpy as np

from dataclasses                       import dataclass, field
from pathlib                           import Path
from spine_scanner                     import ModuleLogger
from spine_scanner.core.book_segmenter import InstanceMaskSegmenter, SegmentationCoordinator
from spine_scanner.core.errors         import InsufficientSourceError, RateLimitedError, ScannerError
from spine_scanner.core.extraction     import ExtractionSerializer
from spine_scanner.core.fuzzy_matcher  import ReferenceMatcher
from spine_scanner.core.models         import BookSpineInfo, DetectionSource, JobState, PreservedPayload, SegmentedBook, UploadTicket
from spine_scanner.core.rate_limit     import RateLimitGovernor
from spine_scanner.core.remote         import StreamingUploadClient
from spine_scanner.core.text_extractor import TextExtractor
from spine_scanner.core.validator      import ResultValidator
from typing                            import Any

logger = ModuleLogger('pipeline')()

# -------------------- Review Queue --------------------

class ReviewQueue:
    """
    Append-only, in-memory sink for accepted records awaiting user review.
    """

    def __init__(self):
        self._items = []

    def __len__(self) -> int:
        return len(self._items)

    @property
    def items(self) -> list[tuple[BookSpineInfo, str]]:
        return list(self._items)

    def append(self, info: BookSpineInfo, raw_payload: str):
        self._items.append((info, raw_payload))
        logger.info(f"Queued for review: '{info.title}' by {info.author or 'unknown'}.")

    def save_to_json(self, output_file: Path) -> Path:
        """
        Saves every queued record with its raw payload.

        Args:
            output_file : Destination JSON file; parent directories are created

        Returns:
            Path: The written file
        """
        output_file = Path(output_file)
        output_file.parent.mkdir(parents = True, exist_ok = True)
        records = [
            {**info.to_dict(), 'raw_payload': raw_payload}
            for info, raw_payload in self._items
        ]

        with output_file.open('w', encoding = 'utf-8') as f:
            json.dump(records, f, ensure_ascii = False, indent = 4)

        logger.info(f"Review queue saved to {output_file}")
        return output_file

# -------------------- Scan Report --------------------

@dataclass
class ScanReport:
    """
    Per-book outcome of one scan, keyed by book index.
    """
    source    : DetectionSource | None = None
    books     : int                    = 0
    delivered : list[int]              = field(default_factory = list)
    rejected  : dict[int, str]         = field(default_factory = dict)
    failed    : dict[int, str]         = field(default_factory = dict)
    deferred  : list[int]              = field(default_factory = list)

    def to_dict(self) -> dict[str, Any]:
        return {
            'source'    : self.source.value if self.source else None,
            'books'     : self.books,
            'delivered' : sorted(self.delivered),
            'rejected'  : dict(sorted(self.rejected.items())),
            'failed'    : dict(sorted(self.failed.items())),
            'deferred'  : sorted(self.deferred)
        }

    def summary(self) -> str:
        return (
            f"{self.books} books ({self.source.value if self.source else 'none'}): "
            f"{len(self.delivered)} delivered, {len(self.rejected)} rejected, "
            f"{len(self.failed)} failed, {len(self.deferred)} deferred"
        )

# -------------------- ScanPipeline Class --------------------

class ScanPipeline:
    """
    Runs one photo through segmentation and per-book extraction.

    Every detected book gets its own task. On-device, OCR text goes through the
    ExtractionSerializer; remotely, the cropped JPEG is uploaded through the
    RateLimitGovernor and its job streamed to completion. Accepted records are
    appended to the review queue. One book failing never affects its siblings.
    """

    ON_DEVICE = 'on-device'
    REMOTE    = 'remote'
    MODES     = (ON_DEVICE, REMOTE)

    def __init__(
        self,
        coordinator    : SegmentationCoordinator,
        mode           : str                          = ON_DEVICE,
        review_queue   : ReviewQueue | None           = None,
        text_extractor : TextExtractor | None         = None,
        serializer     : ExtractionSerializer | None  = None,
        validator      : ResultValidator | None       = None,
        client         : StreamingUploadClient | None = None,
        governor       : RateLimitGovernor | None     = None,
        jpeg_quality   : int                          = 90
    ):
        """
        Initializes the ScanPipeline.

        Args:
            coordinator    : Segmentation coordinator
            mode           : 'on-device' or 'remote'
            review_queue   : Sink for accepted records (anything with append(info, raw_payload))
            text_extractor : OCR source of text for the on-device path
            serializer     : Sole owner of the inference resource (on-device)
            validator      : Rejects records without enough support in the source
            client         : Upload/stream client (remote)
            governor       : Rate-limit governor wrapping client uploads (remote; created if missing)
            jpeg_quality   : JPEG quality of uploaded crops

        Raises:
            ValueError: If mode is unknown or its components are missing
        """
        if mode not in self.MODES:
            raise ValueError(f"Unknown mode '{mode}', expected one of {self.MODES}")
        if mode == self.ON_DEVICE and (text_extractor is None or serializer is None):
            raise ValueError("On-device mode needs a text extractor and an extraction serializer")
        if mode == self.REMOTE and client is None:
            raise ValueError("Remote mode needs an upload client")

        self.coordinator    = coordinator
        self.mode           = mode
        self.review_queue   = review_queue if review_queue is not None else ReviewQueue()
        self.text_extractor = text_extractor
        self.serializer     = serializer
        self.validator      = validator or ResultValidator()
        self.client         = client
        self.governor       = governor
        self.jpeg_quality   = jpeg_quality
        self.resubmitted    = ScanReport()
        self._ocr_lock      = asyncio.Lock()
        self._background    = set()

        if mode == self.REMOTE:
            if self.governor is None:
                self.governor = RateLimitGovernor(client, device_id = client.device_id)
            if self.governor.on_resubmit is None:
                self.governor.on_resubmit = self.resume_job
            if self.governor.on_resubmit_failed is None:
                self.governor.on_resubmit_failed = self.resubmission_failed

    @classmethod
    def from_config(
        cls,
        config    : Any,
        mode      : str        = ON_DEVICE,
        device_id : str | None = None
    ) -> 'ScanPipeline':
        """
        Builds a pipeline and all of its components from a loaded configuration.
        """
        try:
            instance_segmenter = InstanceMaskSegmenter.from_config(config)
        except FileNotFoundError as e:
            logger.warning(f"Instance-mask model unavailable, using geometric detection only: {e}")
            instance_segmenter = None

        coordinator = SegmentationCoordinator.from_config(config, instance_segmenter = instance_segmenter)
        validator   = ResultValidator.from_config(config)

        if mode == cls.REMOTE:
            client   = StreamingUploadClient.from_config(config, device_id = device_id)
            governor = RateLimitGovernor.from_config(config, client)
            return cls(coordinator, mode = mode, validator = validator, client = client, governor = governor)

        resource   = ReferenceMatcher.from_config(config)
        serializer = ExtractionSerializer.from_config(config, resource)
        extractor  = TextExtractor.from_config(config)
        return cls(coordinator, mode = mode, validator = validator, text_extractor = extractor, serializer = serializer)

    # -------------------- Scanning --------------------

    async def scan(self, image: np.ndarray) -> ScanReport:
        """
        Segments one image and processes every detected book concurrently.

        Args:
            image : Input BGR image

        Returns:
            ScanReport: Outcome of every book

        Raises:
            SegmentationError: If no book was detected
        """
        if self.mode == self.REMOTE:
            self.governor.start()

        books  = await asyncio.to_thread(self.coordinator.segment, image)
        report = ScanReport(source = books[0].source, books = len(books))
        logger.info(f"Processing {len(books)} books ({report.source.value}) in {self.mode} mode.")

        results = await asyncio.gather(
            *(self.process_book(book, report) for book in books),
            return_exceptions = True
        )
        for book, result in zip(books, results):
            if isinstance(result, BaseException):
                logger.error(f"Book {book.index} crashed: {result!r}")
                report.failed[book.index] = str(result) or type(result).__name__

        logger.info(report.summary())
        return report

    async def process_book(self, book: SegmentedBook, report: ScanReport):
        """
        Extracts, validates and delivers one book, recording the outcome in report.
        """
        try:
            if self.mode == self.ON_DEVICE:
                info = await self.extract_on_device(book)
            else:
                info = await self.extract_remote(book)
        except RateLimitedError as e:
            logger.info(f"Book {book.index} deferred: {e}")
            report.deferred.append(book.index)
            return
        except InsufficientSourceError as e:
            report.rejected[book.index] = str(e)
            return
        except ScannerError as e:
            logger.warning(f"Book {book.index} failed: {e}")
            report.failed[book.index] = str(e)
            return

        self.deliver(info)
        report.delivered.append(book.index)

    async def extract_on_device(self, book: SegmentedBook) -> BookSpineInfo:
        # The OCR reader is shared, so reads are taken one at a time
        async with self._ocr_lock:
            text, ocr_confidence = await asyncio.to_thread(self.text_extractor.read_text, book.cropped_image)

        logger.debug(f"Book {book.index} OCR ({ocr_confidence:.2f}): {text[:60]}")
        info = await self.serializer.extract(text)
        return self.validator.validate(info, len(text))

    async def extract_remote(self, book: SegmentedBook) -> BookSpineInfo:
        image  = await asyncio.to_thread(book.encode_jpeg, self.jpeg_quality)
        ticket = await self.governor.upload(image, tag = book.index)
        return await self.follow_job(ticket)

    async def follow_job(self, ticket: UploadTicket) -> BookSpineInfo:
        """
        Streams an uploaded job and validates its result.

        Raises:
            NetworkError: If the job failed or its stream broke
            InsufficientSourceError: If the result has neither title nor author
        """
        job = await self.client.stream_job(ticket)
        if job.outcome is JobState.FAILED:
            raise job.error
        return self.validator.validate(job.result, None)

    def deliver(self, info: BookSpineInfo):
        self.review_queue.append(info, info.raw_payload)

    # -------------------- Resubmitted Payloads --------------------

    def resume_job(self, payload: PreservedPayload, ticket: UploadTicket):
        """
        Follows a job the governor resubmitted after a cooldown, in the background.
        """
        task = asyncio.get_running_loop().create_task(self._resume(payload, ticket))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _resume(self, payload: PreservedPayload, ticket: UploadTicket):
        try:
            info = await self.follow_job(ticket)
        except InsufficientSourceError as e:
            self.resubmitted.rejected[payload.tag] = str(e)
            return
        except ScannerError as e:
            logger.warning(f"Resubmitted book {payload.tag} failed: {e}")
            self.resubmitted.failed[payload.tag] = str(e)
            return
        except Exception as e:
            logger.error(f"Resubmitted book {payload.tag} crashed: {e!r}")
            self.resubmitted.failed[payload.tag] = str(e) or type(e).__name__
            return

        self.deliver(info)
        self.resubmitted.delivered.append(payload.tag)

    def resubmission_failed(self, payload: PreservedPayload, error: Exception):
        self.resubmitted.failed[payload.tag] = str(error) or type(error).__name__

    async def drain(self, timeout: float | None = None):
        """
        Waits for deferred books to be resubmitted and their jobs to finish.

        Deferred books are released by the background cooldown check on their
        own; this only blocks until that has happened.
        """
        if self.governor is not None:
            await self.governor.wait_until_clear(timeout = timeout)
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions = True)

    async def close(self):
        if self.governor is not None:
            await self.governor.stop()
        if self.serializer is not None:
            await self.serializer.close()
        if self.client is not None:
            await self.client.close()
