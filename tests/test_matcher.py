import asyncio
import duckdb
import tempfile
import unittest

from pathlib                          import Path
from spine_scanner.core.errors        import ResourceBusyError
from spine_scanner.core.extraction    import ExtractionSerializer
from spine_scanner.core.fuzzy_matcher import BookRecord, ReferenceMatcher

RECORDS = [
    BookRecord(title = 'Dune',                 author = 'Frank Herbert'),
    BookRecord(title = 'The Name of the Rose', author = 'Umberto Eco'),
    BookRecord(title = 'Beloved',              author = 'Toni Morrison')
]

class TestReferenceMatcher(unittest.TestCase):

    def setUp(self):
        self.matcher = ReferenceMatcher(records = RECORDS)

    def test_exact_spine_text_matches_with_high_confidence(self):
        result = self.matcher.match_text('DUNE  Frank Herbert')

        self.assertEqual((result['title'], result['author']), ('Dune', 'Frank Herbert'))
        self.assertEqual(result['confidence'], 'high')
        self.assertEqual(result['matches'][0]['title'], 'Dune')

    def test_author_first_spine_text_matches(self):
        result = self.matcher.match_text('UMBERTO ECO THE NAME OF THE ROSE')
        self.assertEqual(result['title'], 'The Name of the Rose')

    def test_unmatched_text_returns_empty_record(self):
        result = self.matcher.match_text('qqq zzz')

        self.assertEqual((result['title'], result['author'], result['matches']), ('', '', []))
        self.assertEqual(result['confidence'], 'low')

    def test_empty_text_returns_empty_record(self):
        self.assertEqual(self.matcher.match_text('')['title'], '')

    def test_confidence_bands(self):
        self.assertEqual(ReferenceMatcher.confidence_for(0.95), 'high')
        self.assertEqual(ReferenceMatcher.confidence_for(0.85), 'medium')
        self.assertEqual(ReferenceMatcher.confidence_for(0.75), 'low')

    def test_records_load_from_duckdb(self):
        with tempfile.TemporaryDirectory() as tmp:
            db_path    = Path(tmp) / 'books.duckdb'
            connection = duckdb.connect(str(db_path))
            connection.execute("CREATE TABLE books (title VARCHAR, author VARCHAR)")
            connection.executemany("INSERT INTO books VALUES (?, ?)", [tuple(record) for record in RECORDS] + [(None, 'Nobody')])
            connection.close()

            matcher = ReferenceMatcher(reference_db_path = db_path)
            self.assertTrue(matcher.is_available())

            result = matcher.match_text('BELOVED MORRISON')
            matcher.close()

        self.assertEqual(result['title'], 'Beloved')
        self.assertEqual(len(matcher.book_records), 3)

    def test_missing_database_is_unavailable(self):
        matcher = ReferenceMatcher(reference_db_path = Path('/nonexistent/books.duckdb'))
        self.assertFalse(matcher.is_available())

class TestReferenceMatcherAsResource(unittest.IsolatedAsyncioTestCase):

    async def test_concurrent_entry_is_refused(self):
        matcher = ReferenceMatcher(records = RECORDS)

        results = await asyncio.gather(
            matcher.respond('DUNE HERBERT'),
            matcher.respond('BELOVED MORRISON'),
            return_exceptions = True
        )

        self.assertEqual(results[0]['title'], 'Dune')
        self.assertIsInstance(results[1], ResourceBusyError)

    async def test_serializer_makes_concurrent_use_safe(self):
        serializer = ExtractionSerializer(ReferenceMatcher(records = RECORDS))

        results = await asyncio.gather(
            serializer.extract('DUNE HERBERT'),
            serializer.extract('BELOVED MORRISON'),
            serializer.extract('NAME OF THE ROSE ECO')
        )

        self.assertEqual([info.title for info in results], ['Dune', 'Beloved', 'The Name of the Rose'])
        await serializer.close()

if __name__ == '__main__':
    unittest.main()
