import unittest

from spine_scanner                import Utils
from spine_scanner.core.errors    import InsufficientSourceError, ValidationError
from spine_scanner.core.models    import BookSpineInfo
from spine_scanner.core.validator import ResultValidator

class TestResultValidator(unittest.TestCase):

    def setUp(self):
        self.validator = ResultValidator()
        self.info      = BookSpineInfo(title = 'The Left Hand of Darkness', author = 'Ursula K. Le Guin')

    def test_empty_source_with_a_title_is_rejected(self):
        with self.assertRaises(InsufficientSourceError):
            self.validator.validate(self.info, 0)

    def test_short_source_is_rejected(self):
        with self.assertRaises(InsufficientSourceError):
            self.validator.validate(self.info, 3)

    def test_supported_result_passes_through_unchanged(self):
        self.assertIs(self.validator.validate(self.info, 40), self.info)

    def test_unknown_source_length_skips_the_length_check(self):
        self.assertIs(self.validator.validate(self.info, None), self.info)

    def test_result_without_title_or_author_is_rejected(self):
        for title, author in (('', ''), ('Unknown', ' n/a '), ('  ', 'UNKNOWN AUTHOR')):
            with self.subTest(title = title, author = author):
                with self.assertRaises(InsufficientSourceError):
                    self.validator.validate(BookSpineInfo(title = title, author = author), 50)

    def test_one_word_titles_are_not_placeholders(self):
        for validator in (self.validator, ResultValidator.from_config(Utils.load_config())):
            for title in ('Book', 'Title', 'Untitled', 'Author'):
                with self.subTest(title = title):
                    info = BookSpineInfo(title = title, author = 'Unknown')
                    self.assertIs(validator.validate(info, 20), info)

    def test_title_alone_is_enough(self):
        info = BookSpineInfo(title = 'Beloved', author = '')
        self.assertIs(self.validator.validate(info, 20), info)

    def test_validate_text_ignores_surrounding_whitespace(self):
        with self.assertRaises(ValidationError):
            self.validator.validate_text(self.info, '   \n ')
        self.assertIs(self.validator.validate_text(self.info, '  LE GUIN DARKNESS  '), self.info)

    def test_from_config(self):
        validator = ResultValidator.from_config(Utils.load_config(overrides = {'validation': {'min_source_length': 10}}))

        self.assertEqual(validator.min_source_length, 10)
        self.assertTrue(validator.is_blank('Not Found'))

if __name__ == '__main__':
    unittest.main()
