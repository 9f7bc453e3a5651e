import argparse
import logging
import os
import sys
from typing import List, Optional

from batch_converter import BatchConverter
from cascades import load_default_models
from errors import CascadeLoadError
from face_locator import FaceLocator
from portrait_framer import DEFAULT_PORTRAIT_CONFIG, PortraitConfig, PortraitFramer

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

logger = logging.getLogger(__name__)


def _parse_level(value: str) -> int:
    """Map a level name (any case) to a ``logging`` level."""

    name = value.strip().upper()
    if name == "WARN":
        name = "WARNING"
    if name not in LOG_LEVELS:
        raise argparse.ArgumentTypeError(
            f"invalid level {value!r} (choose from {', '.join(LOG_LEVELS)})"
        )
    return getattr(logging, name)


def build_parser() -> argparse.ArgumentParser:
    """Configure command-line options for the portrait converter."""

    parser = argparse.ArgumentParser(
        prog="portrait-convert",
        description=(
            "Detect a single face in each image, level the eyes, crop and brighten it, "
            "and write the result to the output directory. Multiple inputs are "
            "processed in parallel."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "inputs",
        nargs="+",
        metavar="INPUT",
        help="Image files to convert",
    )
    parser.add_argument(
        "--out",
        "-o",
        dest="out",
        required=True,
        help="Directory where converted portraits will be written",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=os.cpu_count() or 1,
        help="Number of concurrent workers",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing output files",
    )
    parser.add_argument(
        "--use-exif",
        dest="use_exif",
        action="store_true",
        default=True,
        help="Rotate photos according to their EXIF orientation",
    )
    parser.add_argument(
        "--no-exif",
        dest="use_exif",
        action="store_false",
        help="Ignore EXIF orientation",
    )
    parser.add_argument(
        "--level",
        type=_parse_level,
        default="INFO",
        help=f"Logging level ({', '.join(LOG_LEVELS)})",
    )
    parser.add_argument(
        "--aspect-ratio",
        dest="aspect_ratio",
        type=float,
        default=DEFAULT_PORTRAIT_CONFIG.aspect_ratio,
        help="Width / height aspect ratio of the portraits",
    )
    parser.add_argument(
        "--max-width-ratio",
        dest="max_width_ratio",
        type=float,
        default=DEFAULT_PORTRAIT_CONFIG.max_width_ratio,
        help="Maximum portrait width / detected face width",
    )
    parser.add_argument(
        "--brightness",
        type=float,
        default=DEFAULT_PORTRAIT_CONFIG.brightness,
        help="Brightness adjustment in percent (-100 to 100)",
    )
    parser.add_argument(
        "--contrast",
        type=float,
        default=DEFAULT_PORTRAIT_CONFIG.contrast,
        help="Contrast adjustment in percent (-100 to 100)",
    )
    parser.add_argument(
        "--gamma",
        type=float,
        default=DEFAULT_PORTRAIT_CONFIG.gamma,
        help="Gamma adjustment (1.0 leaves gamma unchanged)",
    )
    return parser


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        args.portrait_config = PortraitConfig(
            aspect_ratio=args.aspect_ratio,
            max_width_ratio=args.max_width_ratio,
            brightness=args.brightness,
            contrast=args.contrast,
            gamma=args.gamma,
        )
    except ValueError as exc:
        parser.error(str(exc))
    return args


def main(args: argparse.Namespace) -> int:
    logging.basicConfig(level=args.level, format=LOG_FORMAT, stream=sys.stderr)

    try:
        models = load_default_models()
    except CascadeLoadError as exc:
        logger.error("could not load face models: %s", exc)
        return 1

    framer = PortraitFramer(locator=FaceLocator(models), config=args.portrait_config)
    converter = BatchConverter(
        framer,
        workers=args.workers,
        overwrite=args.overwrite,
        use_exif=args.use_exif,
    )

    try:
        report = converter.convert(args.inputs, args.out)
    except OSError as exc:
        logger.error("could not create output directory path=%s error=%s", args.out, exc)
        return 1

    counts = report.counts()
    print(
        f"[Done] {counts['succeeded']} converted, {counts['skipped']} skipped, "
        f"{counts['failed']} failed -> {args.out}"
    )
    return 0


def run() -> None:
    sys.exit(main(parse_args()))


if __name__ == "__main__":
    run()
