import argparse
import asyncio
import cv2
import json

from spine_scanner import ModuleLogger, ScanPipeline, ScannerError, Utils
from pathlib       import Path

logger = ModuleLogger('main')()

async def run_scan(
    image_path  : Path,
    mode        : str,
    config_file : Path | None,
    device_id   : str | None,
    output_json : bool
) -> int:
    config   = Utils.load_config(config_file)
    pipeline = ScanPipeline.from_config(config, mode = mode, device_id = device_id)

    image = cv2.imread(str(image_path))
    if image is None:
        print(f"Error: Could not read image: {image_path}")
        return 1

    try:
        report = await pipeline.scan(image)
        print(report.summary())

        if report.deferred:
            print(f"Rate limited, waiting to resubmit {len(report.deferred)} books...")
            await pipeline.drain()
            print(pipeline.resubmitted.summary())

        for info, _ in pipeline.review_queue.items:
            print(json.dumps(info.to_dict(), ensure_ascii = False))

        if output_json:
            output_file = Utils.resolve_path(config.output.review_json)
            pipeline.review_queue.save_to_json(output_file)
            print(f"Saved review queue to {output_file}")

    except ScannerError as e:
        logger.error(f"Scan failed: {e}")
        print(f"Error: {e}")
        return 1

    finally:
        await pipeline.close()

    return 0

def main():

    parser = argparse.ArgumentParser(
        description = "Scan a bookshelf photo and extract a record for every spine."
    )

    parser.add_argument(
        "--image-path",
        type     = str,
        required = True,
        help     = "Full path to the shelf or book photo to scan."
    )
    parser.add_argument(
        "--mode",
        choices = ScanPipeline.MODES,
        default = ScanPipeline.ON_DEVICE,
        help    = "Extract on-device or through the remote extraction service."
    )
    parser.add_argument(
        "--config",
        type    = str,
        default = None,
        help    = "YAML config file (defaults to the packaged scanner.yml)."
    )
    parser.add_argument(
        "--device-id",
        type    = str,
        default = None,
        help    = "Device identifier sent with remote uploads."
    )
    parser.add_argument(
        "--output-json",
        action = "store_true",
        help   = "Save the review queue to the configured JSON file."
    )

    args = parser.parse_args()

    image_path = Path(args.image_path).resolve()
    if not image_path.exists() or not image_path.is_file():
        print(f"Error: The specified image does not exist or is not a file: {image_path}")
        raise SystemExit(1)

    config_file = Path(args.config).resolve() if args.config else None
    raise SystemExit(asyncio.run(run_scan(
        image_path  = image_path,
        mode        = args.mode,
        config_file = config_file,
        device_id   = args.device_id,
        output_json = args.output_json
    )))

if __name__ == "__main__":
    main()
