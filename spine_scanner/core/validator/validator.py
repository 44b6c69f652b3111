from spine_scanner             import ModuleLogger
from spine_scanner.core.errors import InsufficientSourceError
from spine_scanner.core.models import BookSpineInfo
from typing                    import Any, Iterable

logger = ModuleLogger('validator')()

class ResultValidator:
    """
    Rejects extraction results that could not have come from the source text.

    Near-empty source text cannot support a real title or author, so any
    result produced from it is treated as fabricated. Results with neither a
    title nor an author are rejected too. Nothing is ever repaired.
    """

    DEFAULT_PLACEHOLDERS = (
        'unknown', 'unknown title', 'unknown author', 'n/a', 'none', 'null',
        'not found', 'not visible', '-', '?'
    )

    def __init__(
        self,
        min_source_length  : int                  = 4,
        placeholder_values : Iterable[str] | None = None
    ):
        """
        Initializes the ResultValidator.

        Args:
            min_source_length  : Minimum number of characters of source text
            placeholder_values : Values treated as empty (case-insensitive)
        """
        self.min_source_length  = min_source_length
        self.placeholder_values = {
            value.strip().lower()
            for value in (placeholder_values if placeholder_values is not None else self.DEFAULT_PLACEHOLDERS)
        }

    @classmethod
    def from_config(cls, config: Any) -> 'ResultValidator':
        section = config['validation']
        return cls(
            min_source_length  = section['min_source_length'],
            placeholder_values = list(section['placeholder_values'])
        )

    def is_blank(self, value: str | None) -> bool:
        if value is None:
            return True
        normalized = value.strip().lower()
        return not normalized or normalized in self.placeholder_values

    def validate(self, info: BookSpineInfo, source_text_length: int | None) -> BookSpineInfo:
        """
        Passes info through unchanged, or rejects it.

        Args:
            info               : Extracted record
            source_text_length : Length of the text the record was extracted from;
                                 None when the text was read elsewhere (remote path)

        Returns:
            BookSpineInfo: The same record

        Raises:
            InsufficientSourceError: If the source is too short or both title and author are empty
        """
        if source_text_length is not None and source_text_length < self.min_source_length:
            logger.info(f"Rejected '{info.title}': source text has {source_text_length} characters.")
            raise InsufficientSourceError(
                f"source text has {source_text_length} characters, need at least {self.min_source_length}"
            )

        if self.is_blank(info.title) and self.is_blank(info.author):
            logger.info("Rejected result with neither title nor author.")
            raise InsufficientSourceError("result has neither title nor author")

        return info

    def validate_text(self, info: BookSpineInfo, source_text: str) -> BookSpineInfo:
        """
        Validates against the source text itself, ignoring surrounding whitespace.
        """
        return self.validate(info, len(source_text.strip()))
