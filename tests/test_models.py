import cv2
import numpy as np
import unittest

from spine_scanner.core.models import (
    BookSpineInfo,
    DetectionSource,
    Job,
    JobState,
    Rect,
    SegmentedBook,
    UploadTicket,
    confidence_level
)

class TestRect(unittest.TestCase):

    def test_bbox_round_trip_and_clipping(self):
        rect = Rect.from_bbox([-5, 10, 60, 250])

        self.assertEqual((rect.width, rect.height), (65, 240))
        self.assertEqual(rect.to_bbox(image_width = 50, image_height = 200), [0, 10, 50, 200])

    def test_aspect_ratio_of_flat_rect_is_zero(self):
        self.assertEqual(Rect(x = 0, y = 0, width = 10, height = 0).aspect_ratio, 0.0)

class TestBookSpineInfo(unittest.TestCase):

    def test_from_payload_normalizes_fields(self):
        info = BookSpineInfo.from_payload({
            'title'      : '  Kindred ',
            'author'     : 'Octavia E. Butler',
            'coauthors'  : ['', 'Editor'],
            'isbn'       : '',
            'confidence' : 0.7
        })

        self.assertEqual(info.title, 'Kindred')
        self.assertEqual(info.coauthors, ['Editor'])
        self.assertIsNone(info.isbn)
        self.assertEqual(info.confidence, 'medium')
        self.assertIn('Kindred', info.raw_payload)

    def test_non_mapping_payload_is_rejected(self):
        with self.assertRaises(TypeError):
            BookSpineInfo.from_payload(['Kindred'])

    def test_confidence_levels(self):
        self.assertEqual(confidence_level('HIGH'), 'high')
        self.assertEqual(confidence_level('certain'), 'low')
        self.assertEqual(confidence_level(0.9), 'high')
        self.assertEqual(confidence_level(True), 'low')
        self.assertEqual(confidence_level(None), 'low')

class TestJob(unittest.TestCase):

    def test_full_lifecycle(self):
        job = Job()
        for state in (JobState.UPLOADING, JobState.STREAMING, JobState.COMPLETED, JobState.CLEANED):
            job.transition(state)

        self.assertIs(job.state, JobState.CLEANED)
        self.assertIs(job.outcome, JobState.COMPLETED)
        self.assertTrue(job.state.is_terminal)

    def test_illegal_transitions_raise(self):
        job = Job.from_ticket(UploadTicket(job_id = 'job-1', stream_url = 'http://service/stream/job-1'))

        with self.assertRaises(RuntimeError):
            job.transition(JobState.CLEANED)

        job.transition(JobState.FAILED)
        with self.assertRaises(RuntimeError):
            job.transition(JobState.COMPLETED)

class TestSegmentedBook(unittest.TestCase):

    def test_encode_jpeg(self):
        book = SegmentedBook(
            index         = 1,
            bounding_box  = Rect(x = 0, y = 0, width = 20, height = 60),
            cropped_image = np.full((60, 20, 3), 180, dtype = np.uint8),
            source        = DetectionSource.GEOMETRIC_FALLBACK
        )

        data    = book.encode_jpeg()
        decoded = cv2.imdecode(np.frombuffer(data, dtype = np.uint8), cv2.IMREAD_COLOR)

        self.assertEqual(data[:2], b'\xff\xd8')
        self.assertEqual(decoded.shape, (60, 20, 3))
        self.assertEqual(book.image_size, (20, 60))

if __name__ == '__main__':
    unittest.main()
