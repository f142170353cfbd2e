#!/usr/bin/env python3
"""
PPG Vitals – headless command-line driver.

Usage
-----
    ppg-vitals --source recording.mp4 [OPTIONS]
    ppg-vitals --source 0             # OpenCV camera index

Options
-------
    --source PATH|INDEX  Video file or OpenCV device index (default: 0)
    --fps FLOAT          Frame rate; defaults to the rate reported by the source
    --window FLOAT       Analysis window in seconds (default: 15)
    --roi X,Y,W,H        Region of interest (default: centre quarter of the frame)
    --experimental       Also log the experimental glucose / lipid / hemoglobin estimates
    --log-level LEVEL    Logging level (default: INFO)
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Tuple

import cv2

from ppg_vitals.exceptions import VitalsError
from ppg_vitals.frames import FingerDetector, frame_to_sample
from ppg_vitals.pipeline import VitalsPipeline

logger = logging.getLogger("ppg_vitals")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip camera PPG vital-sign estimator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--source", default="0",
                        help="Video file path or OpenCV camera index")
    parser.add_argument("--fps", type=float, default=None,
                        help="Frame rate (defaults to the source's reported rate)")
    parser.add_argument("--window", type=float, default=15.0,
                        help="Analysis window in seconds")
    parser.add_argument("--roi", default=None,
                        help="Region of interest as X,Y,W,H")
    parser.add_argument("--experimental", action="store_true",
                        help="Log experimental glucose / lipid / hemoglobin estimates")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level")
    return parser.parse_args(argv)


def parse_roi(text: Optional[str], width: int, height: int) -> Tuple[int, int, int, int]:
    """Parse ``X,Y,W,H``; default to the centre quarter of the frame."""
    if not text:
        return width // 4, height // 4, width // 2, height // 2
    x, y, w, h = (int(v) for v in text.split(","))
    return x, y, w, h


def open_source(source: str) -> cv2.VideoCapture:
    return cv2.VideoCapture(int(source) if source.isdigit() else source)


# ---------------------------------------------------------------------------
# Main loop
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    cap = open_source(args.source)
    if not cap.isOpened():
        logger.error("Cannot open video source %r", args.source)
        return 1

    fps = args.fps or cap.get(cv2.CAP_PROP_FPS) or 30.0
    pipeline = VitalsPipeline(fps=float(fps), window_seconds=args.window,
                              include_experimental=args.experimental)
    detector = FingerDetector()
    log_interval = max(1, int(round(fps)))  # log every ~1 second

    logger.info("Reading %s at %.1f fps, window %.0f s", args.source, fps, args.window)

    roi = None
    frame_idx = 0
    beats = 0
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            if roi is None:
                try:
                    roi = parse_roi(args.roi, frame.shape[1], frame.shape[0])
                except ValueError:
                    logger.error("Invalid --roi format.  Use X,Y,W,H, e.g. 100,100,200,200.")
                    return 1

            timestamp_ms = int(round(frame_idx * 1000.0 / fps))
            sample = frame_to_sample(frame, timestamp_ms, detector=detector, roi=roi)

            if sample.upstream.finger_confidence < detector.min_confidence:
                if pipeline.buffer_fill_ratio > 0:
                    logger.info("Finger removed; resetting.")
                    pipeline.reset()
                frame_idx += 1
                continue

            event = pipeline.push_frame(sample)
            if event.is_beat:
                beats += 1
                logger.debug("Beat at %.0f ms, BPM=%.0f", event.timestamp_ms, event.bpm)

            if frame_idx % log_interval == 0:
                try:
                    result = pipeline.compute()
                except VitalsError as e:
                    logger.warning("Vitals computation failed: %s", e.to_dict())
                    result = None
                if result is None:
                    logger.info("Waiting for signal…  buffer=%.0f%%",
                                100.0 * pipeline.buffer_fill_ratio)
                else:
                    logger.info(
                        "HR=%.1f (live %.0f)  SpO2=%.0f%%  BP=%.0f/%.0f  RR=%.0f/min  conf=%.2f",
                        result.heart_rate.bpm, event.bpm, result.spo2.value,
                        result.blood_pressure.systolic, result.blood_pressure.diastolic,
                        result.respiration.rate, result.heart_rate.confidence,
                    )
                    if result.glucose is not None and result.lipids is not None:
                        logger.info("EXPERIMENTAL glucose=%.0f mg/dL  cholesterol=%.0f  "
                                    "triglycerides=%.0f", result.glucose.value,
                                    result.lipids.total_cholesterol, result.lipids.triglycerides)
                    if result.hemoglobin is not None:
                        logger.info("EXPERIMENTAL hemoglobin=%.1f g/dL", result.hemoglobin.value)

            frame_idx += 1

    except KeyboardInterrupt:
        logger.info("Interrupted.")
    finally:
        cap.release()

    logger.info("Processed %d frames, %d beats, final BPM %.0f",
                frame_idx, beats, pipeline.detector.get_final_bpm())
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
