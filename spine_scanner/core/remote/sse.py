import json

from dataclasses               import dataclass
from spine_scanner             import ModuleLogger
from spine_scanner.core.errors import StreamFormatError
from spine_scanner.core.models import BookSpineInfo, ErrorEvent, ProgressEvent, ResultEvent, StreamEvent
from typing                    import Any

logger = ModuleLogger('sse')()

@dataclass(frozen = True)
class RawEvent:
    event : str
    data  : str

class SSEDecoder:
    """
    Incremental server-sent event decoder, fed one line at a time.
    """

    def __init__(self):
        self.event_type = None
        self.data_lines = []

    def feed(self, line: str) -> RawEvent | None:
        """
        Consumes one line (without its terminator).

        Args:
            line : A single line from the stream

        Returns:
            RawEvent: When the line completes an event, otherwise None
        """
        if not line:
            return self.dispatch()

        if line.startswith(':'):
            return None

        name, _, value = line.partition(':')
        if value.startswith(' '):
            value = value[1:]

        if name == 'event':
            self.event_type = value.strip()
        elif name == 'data':
            self.data_lines.append(value)
        return None

    def dispatch(self) -> RawEvent | None:
        if not self.data_lines and self.event_type is None:
            return None

        event = RawEvent(event = self.event_type or 'message', data = '\n'.join(self.data_lines))
        self.event_type = None
        self.data_lines = []
        return event

# -------------------- Event Parsing --------------------

def load_object(data: str, event: str) -> dict[str, Any]:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamFormatError(f"'{event}' event data is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise StreamFormatError(f"'{event}' event data is not an object")
    return payload

def parse_progress(data: str) -> ProgressEvent:
    payload = load_object(data, 'progress')
    percent = payload.get('percent', payload.get('progress'))
    message = payload.get('message')

    if percent is None and message is None:
        raise StreamFormatError("'progress' event has neither percent nor message")
    try:
        percent = float(percent) if percent is not None else None
    except (TypeError, ValueError) as e:
        raise StreamFormatError(f"'progress' percent is not a number: {percent!r}") from e

    return ProgressEvent(percent = percent, message = message)

def parse_result(data: str) -> ResultEvent:
    payload = load_object(data, 'result')
    return ResultEvent(info = BookSpineInfo.from_payload(payload, raw_payload = data), raw_payload = data)

def parse_error(data: str) -> ErrorEvent:
    try:
        payload = json.loads(data) if data else {}
    except json.JSONDecodeError:
        return ErrorEvent(message = data.strip() or 'Unknown error')

    if not isinstance(payload, dict):
        return ErrorEvent(message = 'Unknown error')

    return ErrorEvent(
        message   = str(payload.get('message') or 'Unknown error'),
        code      = payload.get('code'),
        retryable = payload.get('retryable')
    )

def parse_event(event: str, data: str) -> StreamEvent | None:
    """
    Translates one raw server-sent event into a stream event.

    Args:
        event : Event type from the 'event:' field
        data  : Joined 'data:' payload

    Returns:
        StreamEvent: progress, result or error; None for keepalives and unknown types

    Raises:
        StreamFormatError: If a known event carries a malformed payload
    """
    if event == 'progress':
        return parse_progress(data)
    if event == 'result':
        return parse_result(data)
    if event == 'error':
        return parse_error(data)
    if event in ('canceled', 'cancelled'):
        return ErrorEvent(message = 'Job canceled', code = 'canceled', retryable = False)
    if event == 'ping':
        return None

    logger.debug(f"Ignoring unknown event type '{event}'")
    return None
