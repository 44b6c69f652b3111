import cv2
import json
import numpy       as np
import onnxruntime as ort

from dataclasses                      import dataclass
from pathlib                          import Path
from spine_scanner                    import ModuleLogger, Utils
from spine_scanner.core.errors        import SegmentationError
from spine_scanner.core.line_detector import GeometricLineDetector, RectangleDetector
from spine_scanner.core.models        import DetectionSource, Rect, SegmentedBook
from typing                           import Any, Protocol

logger = ModuleLogger('segmenter')()

# -------------------- Utility Functions --------------------

def sigmoid(x: np.ndarray) -> np.ndarray:
    """
    Applies the sigmoid function element-wise to the input array.
    """
    return 1 / (1 + np.exp(-x))

def crop_masks_to_boxes(masks: np.ndarray, bboxes: list[list[int]]) -> np.ndarray:
    """
    Zeroes every mask outside its own bounding box.

    Args:
        masks  : Mask stack of shape [n, h, w]
        bboxes : Boxes [x1, y1, x2, y2], one per mask

    Returns:
        np.ndarray: Masks of the same shape, cropped to their boxes
    """
    cropped = np.zeros_like(masks)
    for i, (x1, y1, x2, y2) in enumerate(bboxes):
        cropped[i, y1:y2, x1:x2] = masks[i, y1:y2, x1:x2]
    return cropped

def crop_region(image: np.ndarray, region: Rect, mask: np.ndarray | None = None) -> np.ndarray:
    """
    Copies a region out of an image, blacking out pixels outside the mask if one is given.

    Args:
        image  : Source image
        region : Region to copy, in pixel coordinates
        mask   : Optional full-image boolean mask for this region

    Returns:
        np.ndarray: Cropped copy of the region
    """
    height, width  = image.shape[:2]
    x1, y1, x2, y2 = region.to_bbox(image_width = width, image_height = height)
    segment        = image[y1:y2, x1:x2].copy()

    if mask is not None and segment.size:
        region_mask = mask[y1:y2, x1:x2].astype(np.uint8)
        segment     = cv2.bitwise_and(segment, segment, mask = region_mask)
    return segment

# -------------------- Data Classes --------------------

@dataclass
class MaskDetection:
    """
    One instance predicted by the segmentation model.
    """
    bbox       : list[int]
    confidence : float
    mask       : np.ndarray | None

class InstanceSegmenter(Protocol):
    def instance_segment(self, image: np.ndarray) -> list[SegmentedBook]: ...

class RectanglePrimitive(Protocol):
    def detect_rectangles(self, image: np.ndarray) -> list[Rect]: ...

# -------------------- YOLOModel Class --------------------

class YOLOModel:
    """
    YOLOv8-seg model running on ONNX Runtime, trained on a single 'book' class.
    """
    INPUT_SIZE = 640

    def __init__(
        self,
        model_path           : Path,
        confidence_threshold : float = 0.3,
        iou_threshold        : float = 0.5
    ):
        """
        Initializes the YOLO model.

        Args:
            model_path           : Path to the ONNX model file
            confidence_threshold : Confidence threshold for detections
            iou_threshold        : IOU threshold for NMS
        """
        self.model_path           = Path(model_path)
        self.confidence_threshold = confidence_threshold
        self.iou_threshold        = iou_threshold
        self.image_width          = 0
        self.image_height         = 0

        if not self.model_path.is_file():
            raise FileNotFoundError(f"Segmentation model not found: {self.model_path}")

        self.ort_session = ort.InferenceSession(str(self.model_path))
        self.input_name  = self.ort_session.get_inputs()[0].name
        logger.debug(f"YOLO model loaded from: {self.model_path}")

    def preprocess(self, image: np.ndarray) -> np.ndarray:
        """
        Converts a BGR image into the normalized NCHW tensor the model expects.
        """
        self.image_height, self.image_width = image.shape[:2]
        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        resized   = cv2.resize(image_rgb, (self.INPUT_SIZE, self.INPUT_SIZE))
        tensor    = np.transpose(resized.astype(np.float32) / 255.0, (2, 0, 1))
        return np.expand_dims(tensor, axis = 0)

    def post_process(
        self,
        output0 : np.ndarray,
        output1 : np.ndarray
    ) -> list[MaskDetection]:
        """
        Decodes boxes, scores and prototype masks into per-instance detections.

        Args:
            output0 : Boxes, class scores and mask coefficients
            output1 : Prototype masks

        Returns:
            list: Detections surviving the confidence threshold and NMS
        """
        predictions = np.squeeze(output0).T
        prototypes  = np.squeeze(output1)
        num_classes = predictions.shape[1] - 4 - prototypes.shape[0]

        if num_classes != 1:
            raise SegmentationError(f"Expected a single-class model, got {num_classes} classes")

        scores       = predictions[:, 4]
        boxes        = predictions[:, :4]
        coefficients = predictions[:, 5:]

        corner_boxes = np.column_stack([
            boxes[:, 0] - boxes[:, 2] / 2,
            boxes[:, 1] - boxes[:, 3] / 2,
            boxes[:, 2],
            boxes[:, 3]
        ])
        indices = cv2.dnn.NMSBoxes(
            bboxes          = corner_boxes.tolist(),
            scores          = scores.tolist(),
            score_threshold = self.confidence_threshold,
            nms_threshold   = self.iou_threshold
        )
        indices = np.array(indices).flatten()
        if indices.size == 0:
            return []

        x_factor = self.image_width  / self.INPUT_SIZE
        y_factor = self.image_height / self.INPUT_SIZE
        bboxes   = []

        for i in indices:
            cx, cy, w, h = boxes[i]
            bboxes.append([
                max(0, int((cx - w / 2) * x_factor)),
                max(0, int((cy - h / 2) * y_factor)),
                min(self.image_width,  int((cx + w / 2) * x_factor)),
                min(self.image_height, int((cy + h / 2) * y_factor))
            ])

        masks = self.upsample_masks(prototypes, coefficients[indices], bboxes)
        return [
            MaskDetection(bbox = bbox, confidence = float(scores[i]), mask = masks[n])
            for n, (i, bbox) in enumerate(zip(indices, bboxes))
        ]

    def upsample_masks(
        self,
        prototypes   : np.ndarray,
        coefficients : np.ndarray,
        bboxes       : list[list[int]]
    ) -> np.ndarray:
        """
        Combines prototypes with per-instance coefficients and scales masks to the image.

        Returns:
            np.ndarray: Boolean masks [n, image_height, image_width]
        """
        c, mh, mw = prototypes.shape
        masks     = sigmoid(coefficients @ prototypes.reshape(c, -1)).reshape(-1, mh, mw)
        resized   = np.stack([
            cv2.resize(mask, (self.image_width, self.image_height), interpolation = cv2.INTER_LINEAR)
            for mask in masks
        ])
        return crop_masks_to_boxes(resized, bboxes) > 0.5

    def detect_books(self, image: np.ndarray) -> list[MaskDetection]:
        """
        Runs the full preprocess, inference and decode cycle on one image.
        """
        input_tensor     = self.preprocess(image)
        output0, output1 = self.ort_session.run(None, {self.input_name: input_tensor})[:2]
        detections       = self.post_process(output0, output1)
        logger.debug(f"Detected {len(detections)} books.")
        return detections

# -------------------- InstanceMaskSegmenter Class --------------------

class InstanceMaskSegmenter:
    """
    Primary segmentation: one masked crop per instance found by the model, left to right.
    """

    def __init__(
        self,
        model     : YOLOModel,
        use_masks : bool = True,
        max_books : int  = 20
    ):
        self.model     = model
        self.use_masks = use_masks
        self.max_books = max_books

    @classmethod
    def from_config(cls, config: Any) -> 'InstanceMaskSegmenter':
        section = config['segmentation']
        model   = YOLOModel(
            model_path           = Utils.resolve_path(section['model_path']),
            confidence_threshold = section['confidence_threshold'],
            iou_threshold        = section['iou_threshold']
        )
        return cls(model = model, use_masks = section['use_masks'], max_books = section['max_books'])

    def instance_segment(self, image: np.ndarray) -> list[SegmentedBook]:
        """
        Segments the image into masked book crops.

        Args:
            image : Input BGR image

        Returns:
            list: Books ordered left to right

        Raises:
            SegmentationError: If more than max_books instances were found
        """
        detections = sorted(self.model.detect_books(image), key = lambda d: d.bbox[0])

        if len(detections) > self.max_books:
            raise SegmentationError(
                f"Too many objects detected ({len(detections)}). Maximum is {self.max_books} books per photo."
            )

        books = []
        for detection in detections:
            region = Rect.from_bbox(detection.bbox)
            mask   = detection.mask if self.use_masks else None
            crop   = crop_region(image, region, mask)
            if crop.size == 0:
                continue

            books.append(SegmentedBook(
                index         = len(books) + 1,
                bounding_box  = region,
                cropped_image = crop,
                source        = DetectionSource.INSTANCE_MASK,
                confidence    = detection.confidence
            ))
        return books

# -------------------- SegmentationCoordinator Class --------------------

class SegmentationCoordinator:
    """
    Runs the instance-mask primitive and falls back to geometric line detection
    when it under-counts.

    The primary result is trusted only with at least min_primary_regions books,
    since adjacent spines of similar colour tend to merge into one instance.
    The fallback is trusted with a single region.
    """

    def __init__(
        self,
        instance_segmenter  : InstanceSegmenter | None,
        rectangle_detector  : RectanglePrimitive | None = None,
        line_detector       : GeometricLineDetector | None = None,
        min_primary_regions : int = 2
    ):
        """
        Initializes the SegmentationCoordinator.

        Args:
            instance_segmenter  : Primary instance-mask primitive (None skips straight to the fallback)
            rectangle_detector  : Rectangle primitive feeding the fallback
            line_detector       : Geometric line detector used by the fallback
            min_primary_regions : Number of primary regions needed to skip the fallback
        """
        self.instance_segmenter  = instance_segmenter
        self.rectangle_detector  = rectangle_detector or RectangleDetector()
        self.line_detector       = line_detector or GeometricLineDetector()
        self.min_primary_regions = min_primary_regions

    @classmethod
    def from_config(cls, config: Any, instance_segmenter: InstanceSegmenter | None = None) -> 'SegmentationCoordinator':
        return cls(
            instance_segmenter  = instance_segmenter,
            rectangle_detector  = RectangleDetector.from_config(config),
            line_detector       = GeometricLineDetector.from_config(config),
            min_primary_regions = config['segmentation']['min_primary_regions']
        )

    # -------------------- Segmentation --------------------

    def segment(self, image: np.ndarray) -> list[SegmentedBook]:
        """
        Segments a shelf image into book spines.

        Args:
            image : Input BGR image

        Returns:
            list: Segmented books, all tagged with the path that produced them

        Raises:
            SegmentationError: If neither path found a single region
        """
        primary = self.run_primary(image)
        if len(primary) >= self.min_primary_regions:
            logger.info(f"Instance masks: {len(primary)} books.")
            return primary

        logger.info(f"Instance masks found {len(primary)} books, running geometric fallback.")
        fallback = self.run_fallback(image)
        if fallback:
            logger.info(f"Geometric fallback: {len(fallback)} books.")
            return fallback

        if primary:
            logger.info(f"Fallback found nothing, keeping {len(primary)} instance-mask books.")
            return primary

        logger.warning("No books detected by either segmentation path.")
        raise SegmentationError("No books detected in image")

    def run_primary(self, image: np.ndarray) -> list[SegmentedBook]:
        """
        Runs the instance-mask primitive; any failure counts as zero regions.
        """
        if self.instance_segmenter is None:
            return []

        try:
            books = list(self.instance_segmenter.instance_segment(image))
        except Exception as e:
            logger.warning(f"Instance segmentation failed: {e}")
            return []

        for book in books:
            book.source = DetectionSource.INSTANCE_MASK
        return books

    def run_fallback(self, image: np.ndarray) -> list[SegmentedBook]:
        """
        Crops the regions found by the geometric line detector.
        """
        height, width = image.shape[:2]
        rectangles    = self.rectangle_detector.detect_rectangles(image)
        regions       = self.line_detector.detect_regions(rectangles, image_width = width)

        books = []
        for region in regions:
            crop = crop_region(image, region)
            if crop.size == 0:
                continue
            books.append(SegmentedBook(
                index         = len(books) + 1,
                bounding_box  = region,
                cropped_image = crop,
                source        = DetectionSource.GEOMETRIC_FALLBACK
            ))
        return books

    # -------------------- Output --------------------

    @staticmethod
    def save_segments(
        books      : list[SegmentedBook],
        image_stem : str,
        output_dir : Path
    ) -> Path:
        """
        Writes each crop to output_dir and a segmenter.json summary beside them.

        Args:
            books      : Segmented books to save
            image_stem : Base name used for crop file names
            output_dir : Destination directory

        Returns:
            Path: Location of the JSON summary
        """
        output_dir.mkdir(parents = True, exist_ok = True)
        summary = []

        for book in books:
            file_name = f"{image_stem}_{book.index:03d}.jpg"
            cv2.imwrite(str(output_dir / file_name), book.cropped_image)
            summary.append({
                'file_name'  : file_name,
                'source'     : book.source.value,
                'confidence' : book.confidence,
                'bbox'       : book.bounding_box.to_bbox()
            })

        output_file = output_dir / 'segmenter.json'
        with output_file.open('w', encoding = 'utf-8') as f:
            json.dump({'books': summary}, f, ensure_ascii = False, indent = 4)

        logger.info(f"Saved {len(books)} segmented books to {output_dir}")
        return output_file
