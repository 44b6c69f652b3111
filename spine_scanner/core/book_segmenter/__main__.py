"""
Entry point for running the SegmentationCoordinator as a module.
"""

import argparse
import cv2

from spine_scanner import InstanceMaskSegmenter, SegmentationCoordinator, SegmentationError, Utils
from pathlib       import Path

def main():

    parser = argparse.ArgumentParser(description = "Segment a shelf photo into book spine crops.")
    parser.add_argument("--image-path", type = str, required = True, help = "Photo to segment.")
    parser.add_argument("--output-dir", type = str, default = None,  help = "Directory for crops and segmenter.json.")
    args = parser.parse_args()

    config     = Utils.load_config()
    image_path = Path(args.image_path).resolve()
    output_dir = Path(args.output_dir) if args.output_dir else Utils.PACKAGE_ROOT / 'data' / 'results' / 'books'

    try:
        instance_segmenter = InstanceMaskSegmenter.from_config(config)
    except FileNotFoundError as e:
        print(f"Instance-mask model unavailable, using geometric detection only: {e}")
        instance_segmenter = None

    image = cv2.imread(str(image_path))
    if image is None:
        print(f"Error: Could not read image: {image_path}")
        return

    coordinator = SegmentationCoordinator.from_config(config, instance_segmenter = instance_segmenter)
    try:
        books = coordinator.segment(image)
    except SegmentationError as e:
        print(f"Error: {e}")
        return

    summary = coordinator.save_segments(books, image_path.stem, output_dir)
    print(f"{len(books)} books ({books[0].source.value}) saved to {summary}")

if __name__ == "__main__":
    main()
