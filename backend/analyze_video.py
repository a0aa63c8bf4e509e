"""
Analyze a single test video from the command line.

    python analyze_video.py jump.mp4 --test vertical_jump --height-cm 172
    python analyze_video.py sprint.mp4 --test sprint_30m --backend fallback
    python analyze_video.py --list-tests

Prints the JSON payload the worker would return. Exit status is 0 for a
completed analysis (even if low-confidence or flagged) and 1 otherwise.
"""

import argparse
import json
import logging
import sys

from assessment.catalog import video_tests
from assessment.config import get_settings
from assessment.cv.pipeline import AnalysisContext
from assessment.cv.pose_estimator import list_estimators
from assessment.errors import AnalysisError
from assessment.worker import build_calibration, failure_payload, run_analysis


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fitness test video analysis")
    parser.add_argument("video", nargs="?", help="Recorded test video")
    parser.add_argument("--test", "-t", dest="test_id", help="Test id, e.g. vertical_jump")
    parser.add_argument("--height-cm", type=float, help="Subject height for distance calibration")
    parser.add_argument("--cm-per-unit", type=float, help="Explicit calibration factor")
    parser.add_argument("--backend", choices=list_estimators(), help="Pose backend override")
    parser.add_argument("--no-cheat-detection", action="store_true",
                        help="Skip integrity checks (reported as checker_unavailable)")
    parser.add_argument("--list-tests", action="store_true", help="List analyzable tests and exit")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,  # Worker import configures logging first
    )

    if args.list_tests:
        for test in video_tests():
            print(f"{test.test_number:>2}. {test.id:<22} {test.name} ({test.unit})")
        return 0

    if not args.video or not args.test_id:
        print("video and --test are required", file=sys.stderr)
        return 2

    overrides = {}
    if args.backend:
        overrides["pose_backend"] = args.backend
    if args.no_cheat_detection:
        overrides["enable_cheat_detection"] = False
    settings = get_settings().model_copy(update=overrides)

    try:
        context = AnalysisContext(settings)
    except AnalysisError as e:
        payload = failure_payload(args.test_id, e)
    else:
        with context:
            payload = run_analysis(
                context,
                args.video,
                args.test_id,
                calibration=build_calibration(args.height_cm, args.cm_per_unit),
            )

    print(json.dumps(payload, indent=2))
    return 0 if payload["status"] == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
