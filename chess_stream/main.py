"""
Chess Stream – Main Entry Point
===============================

Commands:

  1. **Recognize** – Run the pipeline once on a still image and print the
                     FEN result.
  2. **Watch**     – Sample a video every ``--interval`` seconds, feed the
                     frames through the pipeline and print every update.

Usage examples
--------------

**Still image**::

    python chess_stream.py recognize \\
        --image board.png \\
        --model models/tile_classifier.pt

**Video**::

    python chess_stream.py watch \\
        --video stream.mp4 \\
        --interval 1.5 \\
        --json \\
        --save-last last_update.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import cv2

from chess_stream.capture import Frame, VideoFrameSource
from chess_stream.config import PipelineSettings, load_settings, merge_settings
from chess_stream.inference.pipeline import PipelineError, PipelineUpdate, VisionPipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
log = logging.getLogger("chess_stream")


def _settings_from_args(args: argparse.Namespace) -> PipelineSettings:
    base = load_settings(args.settings) if args.settings else PipelineSettings()
    return merge_settings(
        base,
        capture_interval=getattr(args, "interval", None),
        low_confidence_threshold=args.confidence_threshold,
        force_flip=True if args.flip else None,
        model_path=args.model,
        device=args.device,
        test_time_augmentation=True if args.tta else None,
    )


def _print_update(update: PipelineUpdate, as_json: bool) -> None:
    if as_json:
        print(json.dumps(update.as_dict()), flush=True)
        return

    p = update.performance
    r = update.region
    print(
        f"[{update.timestamp:8.2f}s] {update.change.value:<9} {update.fen}  "
        f"board=({r.x},{r.y},{r.width}x{r.height})  "
        f"conf={p.avg_confidence:.2%}  low={p.low_confidence_count}  "
        f"detect={p.detect_ms:.0f}ms classify={p.classify_ms:.0f}ms",
        flush=True,
    )


def _save_last(path: Optional[str], update: PipelineUpdate) -> None:
    if path:
        Path(path).write_text(json.dumps(update.as_dict(), indent=2), encoding="utf-8")


# ═══════════════════════════════════════════════════════════════════════
# Still image
# ═══════════════════════════════════════════════════════════════════════

def cmd_recognize(args: argparse.Namespace) -> None:
    """Run the pipeline once on an image."""
    image = cv2.imread(args.image)
    if image is None:
        log.error("Could not read image: %s", args.image)
        sys.exit(1)

    with VisionPipeline(settings=_settings_from_args(args)) as pipeline:
        update = pipeline.process_frame(Frame.from_bgr(image))

    if update is None:
        log.error("No chessboard found in %s", args.image)
        sys.exit(1)

    print("\n" + "=" * 60)
    print("  CHESS STREAM RESULT")
    print("=" * 60)
    print(f"  FEN            : {update.fen}")
    print(f"  Board region   : {update.region.as_dict()}")
    print(f"  Confidence     : {update.performance.avg_confidence:.2%}")
    print(f"  Flipped        : {update.was_flipped}")
    if update.violations:
        print(f"  Violations     : {update.violations}")
    print("=" * 60 + "\n")

    _save_last(args.save_last, update)


# ═══════════════════════════════════════════════════════════════════════
# Video
# ═══════════════════════════════════════════════════════════════════════

def cmd_watch(args: argparse.Namespace) -> None:
    """Feed a video through the pipeline at the capture interval."""
    settings = _settings_from_args(args)
    last: list[PipelineUpdate] = []

    def on_update(update: PipelineUpdate) -> None:
        last[:] = [update]
        _print_update(update, args.json)

    def on_error(error: PipelineError) -> None:
        log.error("Request %d failed: %s", error.request_id, error.message)

    source = VideoFrameSource(args.video, interval=settings.capture_interval)
    try:
        with VisionPipeline(settings=settings, on_update=on_update, on_error=on_error) as pipeline:
            for frame in source.frames():
                pipeline.submit(frame)
                if args.realtime:
                    # Frames keep their cadence; overrunning work gets superseded
                    time.sleep(settings.capture_interval)
                else:
                    pipeline.wait()
    except IOError as exc:
        log.error("%s", exc)
        sys.exit(1)

    if last:
        _save_last(args.save_last, last[0])


# ═══════════════════════════════════════════════════════════════════════
# CLI
# ═══════════════════════════════════════════════════════════════════════

def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--settings", default=None,
                   help="JSON settings file")
    p.add_argument("--model", default=None,
                   help="Path to tile classifier .pt checkpoint (optional)")
    p.add_argument("--device", default=None, choices=["cpu", "cuda"])
    p.add_argument("--confidence-threshold", type=float, default=None,
                   help="Squares below this confidence keep their previous label")
    p.add_argument("--flip", action="store_true",
                   help="Force a 180° board rotation")
    p.add_argument("--tta", action="store_true",
                   help="Average model scores with horizontally flipped tiles")
    p.add_argument("--save-last", default=None,
                   help="Write the last update to this JSON file")
    p.add_argument("--verbose", action="store_true",
                   help="Log per-frame timings")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chess_stream",
        description="Video-to-FEN chess position tracker.",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # ── recognize ──
    p_rec = sub.add_parser("recognize", help="Recognize a still image")
    p_rec.add_argument("--image", required=True, help="Path to image")
    _add_common(p_rec)

    # ── watch ──
    p_watch = sub.add_parser("watch", help="Track positions in a video")
    p_watch.add_argument("--video", required=True, help="Path or URL of the video")
    p_watch.add_argument("--interval", type=float, default=None,
                         help="Seconds between captured frames (0.5–3)")
    p_watch.add_argument("--realtime", action="store_true",
                         help="Submit frames at wall-clock pace")
    p_watch.add_argument("--json", action="store_true",
                         help="Print updates as JSON lines")
    _add_common(p_watch)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.verbose:
        logging.getLogger("chess_stream").setLevel(logging.DEBUG)

    dispatch = {
        "recognize": cmd_recognize,
        "watch": cmd_watch,
    }

    dispatch[args.command](args)


if __name__ == "__main__":
    main()
