import asyncio
import duckdb

from pathlib                   import Path
from rapidfuzz                 import fuzz, process, utils as fuzz_utils
from spine_scanner             import ModuleLogger, Utils
from spine_scanner.core.errors import ResourceBusyError
from typing                    import Any, NamedTuple

logger = ModuleLogger('matcher')()

class BookRecord(NamedTuple):
    """
    Represents a book record from the reference database.
    """
    title  : str
    author : str

class ReferenceMatcher:
    """
    Matches OCR-extracted spine text against a reference database of books.

    Works as an inference resource for the extraction serializer: respond()
    takes the spine text and answers with a structured record. The DuckDB
    session and candidate index are loaded once and reused; a second call
    entering while one is running raises ResourceBusyError.
    """
    CANDIDATES_PER_RECORD = 4
    prompt_template       = '{text}'

    def __init__(
        self,
        reference_db_path : Path | None             = None,
        records           : list[BookRecord] | None = None,
        table_name        : str                     = 'books',
        max_matches       : int                     = 5,
        min_match_score   : float                   = 0.7
    ):
        """
        Initializes the ReferenceMatcher instance.

        Args:
            reference_db_path : Path to a DuckDB file with a table of (title, author)
            records           : Records to match against instead of loading the database
            table_name        : Name of the reference table
            max_matches       : Maximum number of alternative matches reported
            min_match_score   : Minimum score threshold for fuzzy matches (0.0 to 1.0)
        """
        self.reference_db_path = reference_db_path
        self.table_name        = table_name
        self.max_matches       = max_matches
        self.min_match_score   = min_match_score
        self.book_records      = list(records) if records is not None else []
        self.candidate_strings = []
        self.connection        = None
        self._busy             = False

        if self.book_records:
            self.build_candidates()

    @classmethod
    def from_config(cls, config: Any) -> 'ReferenceMatcher':
        section = config['matcher']
        return cls(
            reference_db_path = Utils.resolve_path(section['reference_db_path']),
            table_name        = section['table_name'],
            max_matches       = section['max_matches'],
            min_match_score   = section['min_match_score']
        )

    # -------------------- Session --------------------

    def is_available(self) -> bool:
        """
        True once records are loaded or the reference database exists.
        """
        if self.book_records:
            return True
        return self.reference_db_path is not None and Path(self.reference_db_path).is_file()

    def load_book_records(self) -> None:
        """
        Opens the DuckDB session and loads every reference record into memory.
        """
        if self.connection is None:
            self.connection = duckdb.connect(str(self.reference_db_path), read_only = True)

        records = self.connection.execute(
            f"SELECT title, author FROM {self.table_name} WHERE title IS NOT NULL"
        ).fetchall()

        self.book_records = [BookRecord(title = title, author = author or '') for title, author in records]
        self.build_candidates()
        logger.info(f"Loaded {len(self.book_records)} reference books from {self.reference_db_path}")

    def build_candidates(self) -> None:
        """
        Prepares normalized candidate strings, CANDIDATES_PER_RECORD per record.
        """
        self.candidate_strings = [
            self.preprocess_text(s)
            for record in self.book_records
            for s in [
                f"{record.title} {record.author}",
                f"{record.author} {record.title}",
                record.title,
                record.author
            ]
        ]

    def close(self) -> None:
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    # -------------------- Matching --------------------

    @staticmethod
    def preprocess_text(text: str) -> str:
        """
        Normalizes whitespace, removes punctuation and lowercases text for matching.
        """
        return fuzz_utils.default_process(text)

    @staticmethod
    def confidence_for(score: float) -> str:
        if score >= 0.9:
            return 'high'
        if score >= 0.8:
            return 'medium'
        return 'low'

    def match_text(self, text: str) -> dict[str, Any]:
        """
        Matches spine text against the reference records.

        Args:
            text : OCR text read from one spine

        Returns:
            dict: Best match as {title, author, confidence, score, matches}; empty
                  title and author when nothing reaches min_match_score
        """
        if not self.book_records and self.reference_db_path is not None:
            self.load_book_records()

        search_string = self.preprocess_text(text)
        results       = {}

        if search_string and self.candidate_strings:
            matches = process.extract(
                query   = search_string,
                choices = self.candidate_strings,
                scorer  = fuzz.token_sort_ratio,
                limit   = self.max_matches * self.CANDIDATES_PER_RECORD
            )
            for _, score, idx in matches:
                match_score = score / 100.0
                record      = self.book_records[idx // self.CANDIDATES_PER_RECORD]
                if match_score >= self.min_match_score and match_score > results.get(record, 0.0):
                    results[record] = match_score

        ranked = sorted(results.items(), key = lambda item: item[1], reverse = True)[:self.max_matches]
        if not ranked:
            logger.info(f"No reference match for '{text[:60]}'")
            return {'title': '', 'author': '', 'confidence': 'low', 'score': 0.0, 'matches': []}

        (best, best_score) = ranked[0]
        logger.info(f"Matched '{text[:60]}' to {best.title} by {best.author} (Score: {best_score:.2f})")
        return {
            'title'      : best.title,
            'author'     : best.author,
            'confidence' : self.confidence_for(best_score),
            'score'      : best_score,
            'matches'    : [
                {'title': record.title, 'author': record.author, 'score': score}
                for record, score in ranked
            ]
        }

    async def respond(self, prompt: str) -> dict[str, Any]:
        """
        Single-flight entry point used by the extraction serializer.

        Raises:
            ResourceBusyError: If another call is still in progress
        """
        if self._busy:
            raise ResourceBusyError("ReferenceMatcher is already handling a request")

        self._busy = True
        try:
            return await asyncio.to_thread(self.match_text, prompt)
        finally:
            self._busy = False
