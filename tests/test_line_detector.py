import cv2
import numpy as np
import unittest

from spine_scanner                    import Utils
from spine_scanner.core.line_detector import GeometricLineDetector, RectangleDetector
from spine_scanner.core.models        import EdgeLine, Rect

def adjacent_spines(count: int, left: float = 10, width: float = 40, height: float = 180) -> list[Rect]:
    return [Rect(x = left + i * width, y = 10, width = width, height = height) for i in range(count)]

class TestGeometricLineDetector(unittest.TestCase):

    def setUp(self):
        self.detector = GeometricLineDetector()

    def test_rectangles_outside_aspect_range_contribute_no_lines(self):
        rectangles = [
            Rect(x = 0,   y = 0, width = 100, height = 100),
            Rect(x = 200, y = 0, width = 5,   height = 100),
            Rect(x = 300, y = 0, width = 31,  height = 100),
            Rect(x = 400, y = 0, width = 50,  height = 0)
        ]
        self.assertEqual(self.detector.candidate_lines(rectangles), [])
        self.assertEqual(self.detector.detect(rectangles, image_width = 1000), [])

    def test_aspect_range_bounds_are_inclusive(self):
        rectangles = [
            Rect(x = 0,   y = 0, width = 10, height = 100),
            Rect(x = 500, y = 0, width = 30, height = 100)
        ]
        lines = self.detector.candidate_lines(rectangles)
        self.assertEqual(sorted(line.x_position for line in lines), [0, 10, 500, 530])

    def test_merge_keeps_first_line_and_extends_span(self):
        lines = [
            EdgeLine(x_position = 100, y_top = 20, y_bottom = 150),
            EdgeLine(x_position = 110, y_top = 5,  y_bottom = 120, confidence = 0.5),
            EdgeLine(x_position = 200, y_top = 0,  y_bottom = 100)
        ]
        merged = self.detector.merge_lines(lines, threshold = 50)

        self.assertEqual([line.x_position for line in merged], [100, 200])
        self.assertEqual((merged[0].y_top, merged[0].y_bottom), (5, 150))
        self.assertEqual(merged[0].confidence, 1.0)

    def test_threshold_scales_with_image_width(self):
        rectangles = [
            Rect(x = 0,  y = 0, width = 20, height = 100),
            Rect(x = 60, y = 0, width = 20, height = 100)
        ]
        wide   = self.detector.detect(rectangles, image_width = 1000)
        narrow = self.detector.detect(rectangles, image_width = 100)

        self.assertEqual([line.x_position for line in wide], [0, 60])
        self.assertEqual([line.x_position for line in narrow], [0, 20, 60, 80])

        self.assertEqual(len(self.detector.detect(rectangles, image_width = 500)), 2)
        self.assertEqual(len(self.detector.detect(rectangles, image_width = 300)), 4)

    def test_fewer_than_two_lines_yields_nothing(self):
        rectangles = [Rect(x = 100, y = 0, width = 20, height = 100)]
        self.assertEqual(self.detector.detect(rectangles, image_width = 1000), [])
        self.assertEqual(self.detector.detect_regions(rectangles, image_width = 1000), [])

    def test_lines_are_sorted_left_to_right(self):
        rectangles = list(reversed(adjacent_spines(3)))
        lines      = self.detector.detect(rectangles, image_width = 500)
        positions  = [line.x_position for line in lines]
        self.assertEqual(positions, sorted(positions))

    def test_adjacent_spines_pair_into_one_region_each(self):
        regions = self.detector.detect_regions(adjacent_spines(5), image_width = 500)

        self.assertEqual(len(regions), 5)
        self.assertEqual([region.x for region in regions], [10, 50, 90, 130, 170])
        for region in regions:
            self.assertEqual(region.width, 40)
            self.assertEqual(region.height, 180)

    def test_pairing_drops_implausible_regions(self):
        lines = [
            EdgeLine(x_position = 0,   y_top = 0, y_bottom = 100),
            EdgeLine(x_position = 30,  y_top = 0, y_bottom = 100),
            EdgeLine(x_position = 200, y_top = 0, y_bottom = 100),
            EdgeLine(x_position = 202, y_top = 0, y_bottom = 100)
        ]
        regions = self.detector.pair_regions(lines, image_width = 500)

        self.assertEqual(len(regions), 1)
        self.assertEqual((regions[0].x, regions[0].width), (0, 30))

    def test_from_config_reads_packaged_defaults(self):
        detector = GeometricLineDetector.from_config(Utils.load_config())

        self.assertEqual(detector.dedup_threshold, 0.05)
        self.assertEqual(detector.rect_aspect_range, (0.1, 0.3))
        self.assertEqual(detector.region_aspect_range, (0.05, 0.5))

class TestRectangleDetector(unittest.TestCase):

    def test_detects_tall_rectangles_tallest_first(self):
        image = np.zeros((200, 300, 3), dtype = np.uint8)
        cv2.rectangle(image, (20,  20), (45,  180), (255, 255, 255), -1)
        cv2.rectangle(image, (100, 30), (125, 170), (200, 200, 200), -1)
        cv2.rectangle(image, (200, 40), (225, 160), (150, 150, 150), -1)
        cv2.rectangle(image, (260, 90), (280, 92),  (255, 255, 255), -1)

        rectangles = RectangleDetector().detect_rectangles(image)
        heights    = [rect.height for rect in rectangles]

        self.assertEqual(len(rectangles), 3)
        self.assertEqual(heights, sorted(heights, reverse = True))
        for rect, expected in zip(rectangles, (160, 140, 120)):
            self.assertAlmostEqual(rect.height, expected, delta = 8)

    def test_blank_image_has_no_rectangles(self):
        image = np.zeros((120, 120, 3), dtype = np.uint8)
        self.assertEqual(RectangleDetector().detect_rectangles(image), [])

if __name__ == '__main__':
    unittest.main()
