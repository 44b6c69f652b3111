import asyncio
import cv2
import json
import numpy as np
import time
import uuid

from dataclasses import dataclass, field
from enum        import Enum
from typing      import Any, Union

# -------------------- Geometry --------------------

@dataclass(frozen = True)
class Rect:
    """
    Axis-aligned rectangle in pixel coordinates, origin at the top-left.
    """
    x      : float
    y      : float
    width  : float
    height : float

    @property
    def min_x(self) -> float:
        return self.x

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def min_y(self) -> float:
        return self.y

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @property
    def aspect_ratio(self) -> float:
        """
        Width over height; zero for degenerate rectangles.
        """
        return self.width / self.height if self.height > 0 else 0.0

    @classmethod
    def from_bbox(cls, bbox: list[float]) -> 'Rect':
        """
        Builds a Rect from an [x1, y1, x2, y2] box.
        """
        x1, y1, x2, y2 = bbox[:4]
        return cls(x = x1, y = y1, width = x2 - x1, height = y2 - y1)

    def to_bbox(self, image_width: int | None = None, image_height: int | None = None) -> list[int]:
        """
        Returns the integer [x1, y1, x2, y2] box, clipped to the image when its size is given.

        Args:
            image_width  : Optional width to clip against
            image_height : Optional height to clip against

        Returns:
            list: Integer box corners
        """
        x1, y1 = int(round(self.min_x)), int(round(self.min_y))
        x2, y2 = int(round(self.max_x)), int(round(self.max_y))

        if image_width is not None:
            x1, x2 = max(0, min(x1, image_width)), max(0, min(x2, image_width))
        if image_height is not None:
            y1, y2 = max(0, min(y1, image_height)), max(0, min(y2, image_height))
        return [x1, y1, x2, y2]

@dataclass
class EdgeLine:
    """
    A vertical boundary candidate taken from one edge of a detected rectangle.
    """
    x_position : float
    y_top      : float
    y_bottom   : float
    confidence : float = 1.0

    @property
    def span(self) -> float:
        return self.y_bottom - self.y_top

# -------------------- Segmentation --------------------

class DetectionSource(Enum):
    """
    Which detector produced a segmented book.
    """
    INSTANCE_MASK      = 'instance_mask'
    GEOMETRIC_FALLBACK = 'geometric_fallback'

@dataclass
class SegmentedBook:
    """
    One detected spine: its box in the source image and a cropped copy of the pixels.
    """
    index         : int
    bounding_box  : Rect
    cropped_image : np.ndarray = field(repr = False)
    source        : DetectionSource
    confidence    : float = 1.0

    @property
    def image_size(self) -> tuple[int, int]:
        """
        (width, height) of the cropped image in pixels.
        """
        height, width = self.cropped_image.shape[:2]
        return width, height

    def encode_jpeg(self, quality: int = 90) -> bytes:
        """
        Encodes the cropped spine as JPEG bytes for upload.

        Args:
            quality : JPEG quality (0-100)

        Returns:
            bytes: Encoded image

        Raises:
            ValueError: If OpenCV cannot encode the crop
        """
        success, buffer = cv2.imencode('.jpg', self.cropped_image, [cv2.IMWRITE_JPEG_QUALITY, quality])
        if not success:
            raise ValueError(f"Could not encode book {self.index} as JPEG")
        return buffer.tobytes()

# -------------------- Extraction --------------------

CONFIDENCE_SCORES = {
    'high'   : 0.9,
    'medium' : 0.7,
    'low'    : 0.5
}

def confidence_level(value: Any) -> str:
    """
    Normalizes a confidence label or numeric score to high, medium or low.
    """
    if isinstance(value, str):
        label = value.strip().lower()
        return label if label in CONFIDENCE_SCORES else 'low'

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value >= 0.85:
            return 'high'
        if value >= 0.65:
            return 'medium'
    return 'low'

@dataclass
class BookSpineInfo:
    """
    Bibliographic record read from one spine.
    """
    title       : str
    author      : str
    raw_payload : str       = ''
    coauthors   : list[str] = field(default_factory = list)
    isbn        : str | None = None
    publisher   : str | None = None
    confidence  : str       = 'low'

    @property
    def confidence_score(self) -> float:
        return CONFIDENCE_SCORES.get(self.confidence, CONFIDENCE_SCORES['low'])

    @classmethod
    def from_payload(cls, payload: dict[str, Any], raw_payload: str | None = None) -> 'BookSpineInfo':
        """
        Builds a record from a structured payload produced by a model or the remote service.

        Args:
            payload     : Mapping with at least 'title' and 'author' keys
            raw_payload : Original serialized payload (defaults to the JSON of payload)

        Returns:
            BookSpineInfo: The parsed record.

        Raises:
            TypeError: If payload is not a mapping
        """
        if not isinstance(payload, dict):
            raise TypeError(f"Expected a mapping payload, got {type(payload).__name__}")

        coauthors = payload.get('coauthors') or []
        if isinstance(coauthors, str):
            coauthors = [coauthors]

        return cls(
            title       = str(payload.get('title') or '').strip(),
            author      = str(payload.get('author') or '').strip(),
            raw_payload = raw_payload if raw_payload is not None else json.dumps(payload, ensure_ascii = False),
            coauthors   = [str(name).strip() for name in coauthors if str(name).strip()],
            isbn        = payload.get('isbn') or None,
            publisher   = payload.get('publisher') or None,
            confidence  = confidence_level(payload.get('confidence'))
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'title'      : self.title,
            'author'     : self.author,
            'coauthors'  : self.coauthors,
            'isbn'       : self.isbn,
            'publisher'  : self.publisher,
            'confidence' : self.confidence
        }

@dataclass(eq = False)
class ExtractionRequest:
    """
    One queued extraction; result_sink resolves exactly once.
    """
    source_text : str
    request_id  : str                   = field(default_factory = lambda: uuid.uuid4().hex)
    result_sink : asyncio.Future | None = field(default = None, repr = False)

# -------------------- Remote Jobs --------------------

class JobState(Enum):
    IDLE      = 'idle'
    UPLOADING = 'uploading'
    STREAMING = 'streaming'
    COMPLETED = 'completed'
    FAILED    = 'failed'
    CLEANED   = 'cleaned'

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CLEANED)

JOB_TRANSITIONS = {
    JobState.IDLE      : {JobState.UPLOADING},
    JobState.UPLOADING : {JobState.STREAMING, JobState.FAILED},
    JobState.STREAMING : {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED : {JobState.CLEANED},
    JobState.FAILED    : {JobState.CLEANED},
    JobState.CLEANED   : set()
}

@dataclass(frozen = True)
class UploadTicket:
    """
    What a successful upload hands back: the job and where to stream it from.
    """
    job_id     : str
    stream_url : str

@dataclass
class Job:
    """
    Lifecycle record of one remote extraction job.
    """
    job_id      : str | None       = None
    stream_url  : str | None       = None
    state       : JobState         = JobState.IDLE
    outcome     : JobState | None  = None
    result      : Any              = None
    error       : Exception | None = None
    events_seen : int              = 0

    @classmethod
    def from_ticket(cls, ticket: UploadTicket) -> 'Job':
        return cls(job_id = ticket.job_id, stream_url = ticket.stream_url, state = JobState.STREAMING)

    def transition(self, new_state: JobState):
        """
        Moves the job to new_state, recording the streaming outcome.

        Raises:
            RuntimeError: If the transition is not allowed from the current state
        """
        if new_state not in JOB_TRANSITIONS[self.state]:
            raise RuntimeError(f"Job {self.job_id}: illegal transition {self.state.value} -> {new_state.value}")

        if new_state in (JobState.COMPLETED, JobState.FAILED):
            self.outcome = new_state
        self.state = new_state

# -------------------- Stream Events --------------------

@dataclass(frozen = True)
class ProgressEvent:
    percent : float | None = None
    message : str | None   = None

    is_terminal = False

@dataclass(frozen = True)
class ResultEvent:
    info        : BookSpineInfo
    raw_payload : str

    is_terminal = True

@dataclass(frozen = True)
class ErrorEvent:
    message   : str
    code      : str | None  = None
    retryable : bool | None = None

    is_terminal = True

StreamEvent = Union[ProgressEvent, ResultEvent, ErrorEvent]

# -------------------- Rate Limiting --------------------

@dataclass
class PreservedPayload:
    """
    An image payload held back by a cooldown, in capture order.
    """
    data        : bytes = field(repr = False)
    tag         : Any   = None
    sequence    : int   = 0
    captured_at : float = field(default_factory = time.time)

@dataclass
class RateLimitState:
    is_cooling_down    : bool                   = False
    resume_at          : float | None           = None
    preserved_payloads : list[PreservedPayload] = field(default_factory = list)
