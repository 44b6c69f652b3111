import cv2
import numpy as np

from dataclasses   import dataclass
from easyocr       import Reader
from omegaconf     import OmegaConf
from spine_scanner import ModuleLogger
from typing        import Any

logger = ModuleLogger('extractor')()

# -------------------- Data Classes --------------------

@dataclass
class OCRLine:
    """
    A single piece of text recognized on a spine.
    """
    bbox       : list[list[float]]
    text       : str
    confidence : float

    @property
    def reading_key(self) -> tuple[float, float]:
        """
        Sort key placing lines top to bottom, then left to right.
        """
        xs = [point[0] for point in self.bbox]
        ys = [point[1] for point in self.bbox]
        return (min(ys), min(xs))

# -------------------- Processing Functions --------------------

def upright_spine(input_image: np.ndarray, parameters: dict) -> np.ndarray:
    """
    Turns a standing spine on its side so its title runs left to right.

    English spines are printed top to bottom, so one clockwise quarter turn
    is the usual fix. With only_if_tall, crops that are already wider than
    tall are left alone.
    """
    turns         = int(parameters.get('clockwise_turns', 1)) % 4
    only_if_tall  = parameters.get('only_if_tall', True)
    height, width = input_image.shape[:2]

    if turns == 0 or (only_if_tall and height <= width):
        return input_image
    return np.ascontiguousarray(np.rot90(input_image, -turns % 4))

def flatten_glare(input_image: np.ndarray, parameters: dict) -> np.ndarray:
    """
    Evens out lighting along the spine by dividing lightness by its closed background.
    """
    kernel_size = int(parameters.get('kernel_size', 15)) | 1
    kernel      = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (kernel_size, kernel_size))
    lab_image   = cv2.cvtColor(input_image, cv2.COLOR_BGR2LAB)
    lightness   = lab_image[:, :, 0]
    background  = cv2.morphologyEx(lightness, cv2.MORPH_CLOSE, kernel)

    lab_image[:, :, 0] = cv2.divide(lightness, background, scale = 255)
    return cv2.cvtColor(lab_image, cv2.COLOR_LAB2BGR)

def equalize_lightness(input_image: np.ndarray, parameters: dict) -> np.ndarray:
    # CLAHE on the L channel only, so cover colours survive
    tiles     = int(parameters.get('tile_grid', 8))
    clahe     = cv2.createCLAHE(clipLimit = parameters.get('clip_limit', 2.0), tileGridSize = (tiles, tiles))
    lab_image = cv2.cvtColor(input_image, cv2.COLOR_BGR2LAB)

    lab_image[:, :, 0] = clahe.apply(lab_image[:, :, 0])
    return cv2.cvtColor(lab_image, cv2.COLOR_LAB2BGR)

def adjust_tone(input_image: np.ndarray, parameters: dict) -> np.ndarray:
    """
    Linear tone change, pixel * gain + offset, saturated to 0-255.
    """
    return cv2.convertScaleAbs(input_image, alpha = parameters.get('gain', 1.0), beta = parameters.get('offset', 0))

PROCESSING_FUNCTIONS = {
    'spine_rotation'   : upright_spine,
    'glare_flattening' : flatten_glare,
    'local_contrast'   : equalize_lightness,
    'tone_adjustment'  : adjust_tone
}

# -------------------- TextExtractor Class --------------------

class TextExtractor:
    """
    Reads the text printed on a cropped spine image using EasyOCR.
    """

    DEFAULT_STEPS = {
        'spine_rotation'   : {'enabled': False, 'parameters': {'clockwise_turns': 1, 'only_if_tall': True}},
        'glare_flattening' : {'enabled': False, 'parameters': {'kernel_size': 15}},
        'local_contrast'   : {'enabled': True,  'parameters': {'clip_limit': 2.0, 'tile_grid': 8}},
        'tone_adjustment'  : {'enabled': False, 'parameters': {'gain': 1.0, 'offset': 0}}
    }

    # -------------------- Initialization --------------------

    def __init__(
        self,
        steps              : dict[str, Any] | None = None,
        language_list      : list[str] | None      = None,
        gpu_enabled        : bool                  = False,
        decoder            : str                   = 'greedy',
        rotation_info      : list[int] | None      = None,
        min_ocr_confidence : float                 = 0.3,
        reader             : Any                   = None
    ):
        """
        Initializes the TextExtractor instance.

        Args:
            steps              : Preprocessing steps, {name: {enabled, parameters}}, applied in order
            language_list      : EasyOCR languages
            gpu_enabled        : Whether EasyOCR may use the GPU
            decoder            : EasyOCR decoder ('greedy' or 'beamsearch')
            rotation_info      : Extra rotations EasyOCR tries for vertical text
            min_ocr_confidence : Recognized text below this confidence is discarded
            reader             : Pre-built reader exposing readtext(); created lazily when None
        """
        self.steps              = steps if steps is not None else self.DEFAULT_STEPS
        self.language_list      = language_list or ['en']
        self.gpu_enabled        = gpu_enabled
        self.decoder            = decoder
        self.rotation_info      = rotation_info if rotation_info is not None else [90, 270]
        self.min_ocr_confidence = min_ocr_confidence
        self.reader             = reader

    @classmethod
    def from_config(cls, config: Any, reader: Any = None) -> 'TextExtractor':
        easyocr = config['easyocr']
        return cls(
            steps              = OmegaConf.to_container(config['steps'], resolve = True),
            language_list      = list(easyocr['language_list']),
            gpu_enabled        = easyocr['gpu_enabled'],
            decoder            = easyocr['decoder'],
            rotation_info      = list(easyocr['rotation_info']),
            min_ocr_confidence = easyocr['min_ocr_confidence'],
            reader             = reader
        )

    def get_reader(self) -> Any:
        """
        Returns the EasyOCR reader, loading it on first use.
        """
        if self.reader is None:
            logger.info(f"Loading EasyOCR reader for {self.language_list} (gpu={self.gpu_enabled}).")
            self.reader = Reader(lang_list = self.language_list, gpu = self.gpu_enabled)
        return self.reader

    # -------------------- Image Processing --------------------

    def process_image(self, image: np.ndarray) -> np.ndarray:
        """
        Applies the enabled preprocessing steps in configuration order.

        Args:
            image : Cropped BGR spine image

        Returns:
            np.ndarray: Processed image
        """
        processed_image = image.copy()
        if processed_image.ndim == 2:
            processed_image = cv2.cvtColor(processed_image, cv2.COLOR_GRAY2BGR)

        for step_name, step_definition in self.steps.items():
            if not step_definition.get('enabled', False):
                continue

            processing_function = PROCESSING_FUNCTIONS.get(step_name)
            if processing_function is None:
                logger.warning(f"No processing function defined for step '{step_name}'")
                continue

            processed_image = processing_function(processed_image, step_definition.get('parameters') or {})
            logger.debug(f"Applied '{step_name}' step.")

        return processed_image

    # -------------------- OCR Operations --------------------

    def perform_ocr(self, image: np.ndarray) -> list[OCRLine]:
        """
        Runs EasyOCR on a processed copy of the image.

        Args:
            image : Cropped BGR spine image

        Returns:
            list: Recognized lines at or above min_ocr_confidence, in reading order
        """
        processed_image = self.process_image(image)
        raw_results     = self.get_reader().readtext(
            processed_image[..., ::-1],
            decoder       = self.decoder,
            rotation_info = self.rotation_info
        )

        lines = [
            OCRLine(bbox = [list(map(float, point)) for point in bbox], text = text.strip(), confidence = float(confidence))
            for bbox, text, confidence in raw_results
            if text.strip() and confidence >= self.min_ocr_confidence
        ]
        lines.sort(key = lambda line: line.reading_key)

        logger.debug(f"OCR kept {len(lines)} of {len(raw_results)} text regions.")
        return lines

    def read_text(self, image: np.ndarray) -> tuple[str, float]:
        """
        Reads a spine into a single source string.

        Args:
            image : Cropped BGR spine image

        Returns:
            tuple: (joined text, mean confidence); ('', 0.0) when nothing was read
        """
        lines = self.perform_ocr(image)
        if not lines:
            return '', 0.0

        text       = ' '.join(line.text for line in lines)
        confidence = sum(line.confidence for line in lines) / len(lines)
        return text, confidence
