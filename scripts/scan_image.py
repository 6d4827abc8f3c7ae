#!/usr/bin/env python3
"""Scan a sail photo for sail numbers using the cloud OCR service.

Credentials come from the environment:
    SAILCAM_OCR_ENDPOINT   e.g. https://<resource>.cognitiveservices.azure.com
    SAILCAM_OCR_KEY        subscription key

Any other ScanConfig field can be set as SAILCAM_<FIELD>, e.g.
SAILCAM_MIN_CONFIDENCE=0.7.

Usage:
    python scripts/scan_image.py photo.jpg
    python scripts/scan_image.py photo.jpg --variants original,balanced
    python scripts/scan_image.py photo.jpg --competitors fleet.csv --log detections.csv
    python scripts/scan_image.py photo.jpg --trace trace.json --verbose
    python scripts/scan_image.py photo.jpg --repeat 10 --interval 5
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from sailcam.config import ScanConfig
from sailcam.errors import SailScanError
from sailcam.pipeline import DetectionPipeline, ScanSession, ScanTrace
from sailcam.registry import CompetitorRegistry, DetectionLog
from sailcam.variants import ImageVariantGenerator


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Detect sail numbers in a photo")
    parser.add_argument("image", type=Path, help="Image file (JPEG, PNG, ...)")
    parser.add_argument(
        "--variants",
        default=None,
        help="Comma-separated variant names (default: all)",
    )
    parser.add_argument("--jitter-seed", type=int, default=None, help="Add seeded threshold-jitter variants")
    parser.add_argument("--min-confidence", type=float, default=None)
    parser.add_argument("--workers", type=int, default=None, help="Variants processed in parallel")
    parser.add_argument("--competitors", type=Path, default=None, help="CSV: sail_number,skipper,boat,club")
    parser.add_argument("--log", type=Path, default=None, help="Append detections to this CSV")
    parser.add_argument("--trace", type=Path, default=None, help="Write the last scan's debug trace as JSON")
    parser.add_argument("--repeat", type=int, default=1, help="Number of scans")
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between repeated scans")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def print_report(report, scan_no):
    if not report.found:
        print(f"[{scan_no}] No sail number detected")
        return

    outcome = report.outcome
    print(
        f"[{scan_no}] Variant '{outcome.variant_name}' "
        f"(mean confidence {outcome.mean_confidence:.2f}):"
    )
    for result in outcome.results:
        line = f"    {result.value:>7}  {result.confidence:.0%}"
        competitor = report.competitors.get(result.value)
        if competitor is not None:
            details = [d for d in (competitor.boat_name, competitor.skipper_name, competitor.club) if d]
            line += "  " + " / ".join(details)
        elif report.competitors:
            line += "  (not registered)"
        print(line)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    overrides = {}
    if args.min_confidence is not None:
        overrides["min_confidence"] = args.min_confidence
    if args.workers is not None:
        overrides["max_workers"] = args.workers
    config = ScanConfig.from_env(**overrides)

    if not config.ocr_endpoint or not config.ocr_key:
        print("Missing SAILCAM_OCR_ENDPOINT or SAILCAM_OCR_KEY")
        return 2

    if not args.image.exists():
        print(f"Image not found: {args.image}")
        return 2

    if args.variants:
        names = [n.strip() for n in args.variants.split(",") if n.strip()]
        generator = ImageVariantGenerator.from_names(names, jitter_seed=args.jitter_seed)
    else:
        generator = ImageVariantGenerator(jitter_seed=args.jitter_seed)

    registry = CompetitorRegistry.from_file(args.competitors) if args.competitors else None
    sink = DetectionLog(args.log) if args.log else None

    pipeline = DetectionPipeline.from_config(config, generator=generator)
    session = ScanSession(pipeline, registry=registry, sink=sink)

    payload = args.image.read_bytes()
    exit_code = 0
    trace = None
    try:
        for scan_no in range(1, args.repeat + 1):
            trace = ScanTrace() if args.trace else None
            try:
                report = session.scan(payload, trace=trace)
            except SailScanError as e:
                print(f"[{scan_no}] Scan failed: {type(e).__name__}: {e}")
                exit_code = 1
            else:
                print_report(report, scan_no)

            if scan_no < args.repeat:
                time.sleep(args.interval)
    except KeyboardInterrupt:
        session.stop()
        print("Stopped")
    finally:
        if sink is not None:
            sink.close()

    if args.trace and trace is not None:
        args.trace.write_text(json.dumps(trace.to_dict(), indent=2))
        print(f"Trace written to {args.trace}")

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
