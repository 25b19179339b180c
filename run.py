from __future__ import annotations

import argparse
import time
from pathlib import Path

from dotenv import load_dotenv
from tqdm import tqdm

from cutout.composite import Backdrop
from cutout.config import DILATION_ITERATIONS, DILATION_STRATEGY, FEATHER_OPACITY, FEATHER_RADIUS, model_spec_for
from cutout.errors import CutoutError
from cutout.io import load_backdrop_image
from cutout.logs import configure_logging
from cutout.model import ModelHandle
from cutout.pipeline import RenderOptions, process_file
from cutout.postprocess import DILATION_STRATEGIES


def _iter_images(input_dir: Path):
    exts = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}
    for p in sorted(input_dir.rglob("*")):
        if p.is_file() and p.suffix.lower() in exts:
            yield p


def _threshold(value: str) -> float:
    v = float(value)
    if not 0 <= v <= 100:
        raise argparse.ArgumentTypeError("thresholds are percentages in [0, 100]")
    return v


def _non_negative(value: str) -> float:
    v = float(value)
    if v < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return v


def _opacity(value: str) -> float:
    v = float(value)
    if not 0 <= v <= 1:
        raise argparse.ArgumentTypeError("opacity must be in [0, 1]")
    return v


def main() -> int:
    load_dotenv()
    configure_logging()

    parser = argparse.ArgumentParser(description="Batch background removal with configurable backdrop.")
    parser.add_argument("--input", required=True, type=str, help="Input directory containing images.")
    parser.add_argument("--output", required=True, type=str, help="Output directory for composites.")
    parser.add_argument(
        "--model",
        default=None,
        type=str,
        help="Model spec: 'hf:<repo>' or a TorchScript path. Defaults to CUTOUT_MODEL / BiRefNet.",
    )
    parser.add_argument("--foreground-threshold", default=50.0, type=_threshold, help="0-100 (default 50).")
    parser.add_argument("--background-threshold", default=50.0, type=_threshold, help="0-100, alpha matting only.")
    parser.add_argument("--alpha-matting", action="store_true", help="Soft edges from the model's confidence.")
    parser.add_argument("--dilation", default=DILATION_ITERATIONS, type=_non_negative, help="Iterations or blur radius.")
    parser.add_argument("--dilation-strategy", default=DILATION_STRATEGY, choices=DILATION_STRATEGIES)
    parser.add_argument("--feather", default=FEATHER_RADIUS, type=_non_negative, help="Edge feather radius (0 = off).")
    parser.add_argument("--feather-opacity", default=FEATHER_OPACITY, type=_opacity)
    parser.add_argument("--backdrop", default="transparent", choices=("transparent", "color", "image"))
    parser.add_argument("--color", default="#ffffff", help="Backdrop color for --backdrop color.")
    parser.add_argument("--backdrop-image", default="", help="Path, URL or data URL for --backdrop image.")
    parser.add_argument("--format", default="png", choices=("png", "jpg"))
    parser.add_argument("--quality", default="high", choices=("high", "medium", "low"))
    args = parser.parse_args()

    input_dir = Path(args.input)
    output_dir = Path(args.output)
    if not input_dir.exists():
        raise FileNotFoundError(f"Input dir not found: {input_dir}")

    if args.backdrop == "image":
        backdrop = Backdrop(kind="image", image=load_backdrop_image(args.backdrop_image))
    else:
        backdrop = Backdrop(kind=args.backdrop, color=args.color)
    if args.format == "jpg" and not backdrop.opaque:
        parser.error("--format jpg needs an opaque backdrop (color or opaque image)")

    options = RenderOptions(
        foreground_threshold=args.foreground_threshold / 100.0,
        background_threshold=args.background_threshold / 100.0,
        alpha_matting=args.alpha_matting,
        dilation=args.dilation,
        dilation_strategy=args.dilation_strategy,
        feather_radius=args.feather,
        feather_opacity=args.feather_opacity,
        backdrop=backdrop,
    )
    spec = args.model or model_spec_for("u2net")
    handle = ModelHandle.from_spec(spec)

    images = list(_iter_images(input_dir))
    if not images:
        print(f"No images found under {input_dir}")
        return 0

    failed = 0
    total0 = time.perf_counter()
    for img_path in tqdm(images, desc="Processing", unit="img"):
        rel = img_path.relative_to(input_dir)
        out_path = (output_dir / rel).with_suffix(f".{args.format}")
        try:
            timings = process_file(
                str(img_path), str(out_path), handle, options, fmt=args.format, quality=args.quality
            )
        except CutoutError as e:
            failed += 1
            print(f"{img_path.name}: FAILED ({e.message})")
            continue

        print(
            f"{img_path.name}: total={timings.total_s:.3f}s "
            f"(seg={timings.segment_s:.3f}s mask={timings.mask_s:.3f}s comp={timings.composite_s:.3f}s)"
        )

    total1 = time.perf_counter()
    print(f"Done. {len(images) - failed}/{len(images)} images in {total1-total0:.2f}s")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
