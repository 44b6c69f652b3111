import cv2
import numpy as np

from spine_scanner             import ModuleLogger
from spine_scanner.core.models import EdgeLine, Rect
from typing                    import Any, Iterable

logger = ModuleLogger('line_detector')()

# -------------------- RectangleDetector Class --------------------

class RectangleDetector:
    """
    Finds rectangular outlines in a shelf image with OpenCV edge and contour detection.
    These rectangles are the raw input to the geometric line detector.
    """

    def __init__(
        self,
        blur_kernel      : int   = 5,
        canny_low        : int   = 50,
        canny_high       : int   = 150,
        dilate_kernel    : int   = 3,
        min_height       : float = 0.05,
        max_observations : int   = 40
    ):
        """
        Initializes the RectangleDetector.

        Args:
            blur_kernel      : Gaussian blur kernel size (forced odd)
            canny_low        : Lower hysteresis threshold for Canny
            canny_high       : Upper hysteresis threshold for Canny
            dilate_kernel    : Kernel size used to close gaps in the edge map
            min_height       : Minimum rectangle height as a fraction of image height
            max_observations : Maximum number of rectangles returned, tallest first
        """
        self.blur_kernel      = int(blur_kernel) | 1
        self.canny_low        = canny_low
        self.canny_high       = canny_high
        self.dilate_kernel    = dilate_kernel
        self.min_height       = min_height
        self.max_observations = max_observations

    @classmethod
    def from_config(cls, config: Any) -> 'RectangleDetector':
        section = config['rectangles']
        return cls(
            blur_kernel      = section['blur_kernel'],
            canny_low        = section['canny_low'],
            canny_high       = section['canny_high'],
            dilate_kernel    = section['dilate_kernel'],
            min_height       = section['min_height'],
            max_observations = section['max_observations']
        )

    def edge_map(self, image: np.ndarray) -> np.ndarray:
        """
        Produces a dilated binary edge map of the image.
        """
        gray    = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        blurred = cv2.GaussianBlur(gray, (self.blur_kernel, self.blur_kernel), 0)
        edges   = cv2.Canny(blurred, self.canny_low, self.canny_high)
        kernel  = cv2.getStructuringElement(cv2.MORPH_RECT, (self.dilate_kernel, self.dilate_kernel))
        return cv2.dilate(edges, kernel, iterations = 1)

    def detect_rectangles(self, image: np.ndarray) -> list[Rect]:
        """
        Detects bounding rectangles of outer contours in the image.

        Args:
            image : Input image (BGR or grayscale)

        Returns:
            list: Rectangles tall enough to be spines, tallest first
        """
        image_height = image.shape[0]
        edges        = self.edge_map(image)
        contours, _  = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

        rectangles = [
            Rect(x = float(x), y = float(y), width = float(w), height = float(h))
            for x, y, w, h in (cv2.boundingRect(contour) for contour in contours)
            if h >= self.min_height * image_height
        ]
        rectangles.sort(key = lambda rect: rect.height, reverse = True)
        rectangles = rectangles[:self.max_observations]

        logger.debug(f"Found {len(rectangles)} rectangles from {len(contours)} contours.")
        return rectangles

# -------------------- GeometricLineDetector Class --------------------

class GeometricLineDetector:
    """
    Derives vertical spine boundaries from spine-shaped rectangles and pairs
    neighbouring boundaries into candidate spine regions.

    Lines closer together than dedup_threshold * image_width are merged. The
    threshold is a fraction of image width (default 5%) so the same setting
    holds across capture resolutions.
    """

    def __init__(
        self,
        dedup_threshold     : float               = 0.05,
        rect_aspect_range   : tuple[float, float] = (0.1, 0.3),
        region_aspect_range : tuple[float, float] = (0.05, 0.5),
        min_region_width    : float               = 0.02
    ):
        """
        Initializes the GeometricLineDetector.

        Args:
            dedup_threshold     : Merge distance as a fraction of image width
            rect_aspect_range   : Inclusive width/height range of rectangles that count as spines
            region_aspect_range : Inclusive width/height range of paired regions that are kept
            min_region_width    : Minimum region width as a fraction of image width
        """
        self.dedup_threshold     = dedup_threshold
        self.rect_aspect_range   = tuple(rect_aspect_range)
        self.region_aspect_range = tuple(region_aspect_range)
        self.min_region_width    = min_region_width

    @classmethod
    def from_config(cls, config: Any) -> 'GeometricLineDetector':
        section = config['line_detector']
        return cls(
            dedup_threshold     = section['dedup_threshold'],
            rect_aspect_range   = (section['rect_aspect_min'],   section['rect_aspect_max']),
            region_aspect_range = (section['region_aspect_min'], section['region_aspect_max']),
            min_region_width    = section['min_region_width']
        )

    # -------------------- Line Detection --------------------

    def is_spine_shaped(self, rect: Rect) -> bool:
        low, high = self.rect_aspect_range
        return rect.height > 0 and low <= rect.aspect_ratio <= high

    def candidate_lines(self, rectangles: Iterable[Rect]) -> list[EdgeLine]:
        """
        Emits the left and right edges of every spine-shaped rectangle.

        Args:
            rectangles : Detected rectangles in pixel coordinates

        Returns:
            list: Unsorted, undeduplicated edge lines
        """
        lines = []
        for rect in rectangles:
            if not self.is_spine_shaped(rect):
                continue
            for x_position in (rect.min_x, rect.max_x):
                lines.append(EdgeLine(
                    x_position = float(x_position),
                    y_top      = float(rect.min_y),
                    y_bottom   = float(rect.max_y)
                ))
        return lines

    def merge_lines(self, lines: list[EdgeLine], threshold: float) -> list[EdgeLine]:
        """
        Merges lines closer than threshold pixels to the last kept line.
        Input must be sorted by x; the kept line keeps its x and absorbs the vertical span.
        """
        merged: list[EdgeLine] = []
        for line in lines:
            if merged and abs(line.x_position - merged[-1].x_position) < threshold:
                kept            = merged[-1]
                kept.y_top      = min(kept.y_top, line.y_top)
                kept.y_bottom   = max(kept.y_bottom, line.y_bottom)
                kept.confidence = max(kept.confidence, line.confidence)
                continue
            merged.append(EdgeLine(line.x_position, line.y_top, line.y_bottom, line.confidence))
        return merged

    def detect(self, rectangles: Iterable[Rect], image_width: float) -> list[EdgeLine]:
        """
        Produces deduplicated vertical boundary lines ordered left to right.

        Args:
            rectangles  : Detected rectangles in pixel coordinates
            image_width : Width of the source image in pixels

        Returns:
            list: Edge lines sorted by x, or an empty list when fewer than two remain
        """
        candidates = sorted(
            self.candidate_lines(rectangles),
            key = lambda line: (line.x_position, line.y_top, line.y_bottom)
        )
        lines = self.merge_lines(candidates, threshold = self.dedup_threshold * image_width)

        if len(lines) < 2:
            logger.debug(f"Only {len(lines)} usable lines from {len(candidates)} candidates.")
            return []

        logger.debug(f"Kept {len(lines)} lines from {len(candidates)} candidates.")
        return lines

    # -------------------- Region Pairing --------------------

    def pair_regions(self, lines: list[EdgeLine], image_width: float) -> list[Rect]:
        """
        Pairs each line with its right-hand neighbour into a spine region.

        Args:
            lines       : Edge lines sorted by x
            image_width : Width of the source image in pixels

        Returns:
            list: Regions whose shape is plausible for a single spine
        """
        low, high = self.region_aspect_range
        min_width = self.min_region_width * image_width
        regions   = []

        for left, right in zip(lines, lines[1:]):
            top    = min(left.y_top, right.y_top)
            bottom = max(left.y_bottom, right.y_bottom)
            region = Rect(
                x      = left.x_position,
                y      = top,
                width  = right.x_position - left.x_position,
                height = bottom - top
            )

            if region.height <= 0 or region.width < min_width:
                continue
            if low <= region.aspect_ratio <= high:
                regions.append(region)

        return regions

    def detect_regions(self, rectangles: Iterable[Rect], image_width: float) -> list[Rect]:
        """
        Full fallback: rectangles to lines to paired regions.
        """
        lines = self.detect(rectangles, image_width = image_width)
        return self.pair_regions(lines, image_width = image_width) if lines else []
