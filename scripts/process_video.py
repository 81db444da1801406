import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from shorts_agent import PipelineConfig, ShortsPipeline
from shorts_agent.config import MediaConfig, TranscriptionConfig
from shorts_agent.errors import ShortsAgentError


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Split a long video into captioned vertical clips.")
    parser.add_argument("video", type=Path, help="Path to the source video file.")
    parser.add_argument("--run-name", type=str, help="Optional name for this run's scratch directory.")
    parser.add_argument("--output-dir", type=Path, default=Path("artifacts"), help="Directory to store processed clips.")
    parser.add_argument("--single", action="store_true", help="Process the whole video as one clip, without splitting.")
    parser.add_argument("--overlay", type=Path, default=Path("assets/ss.mp4"), help="Secondary clip shown at the bottom.")
    parser.add_argument("--font", type=Path, default=Path("fonts/Roboto-Regular.ttf"), help="Font file for captions.")
    parser.add_argument("--ffmpeg", type=str, help="ffmpeg binary to use (defaults to the imageio-ffmpeg build).")
    parser.add_argument("--segment-seconds", type=int, default=60, help="Target segment duration in seconds.")
    parser.add_argument("--workers", type=int, default=1, help="Segments processed in parallel (1 = sequential).")
    parser.add_argument("--api-base", type=str, default="https://api.assemblyai.com", help="Transcription API base URL.")
    parser.add_argument("--api-key-env", type=str, default="ASSEMBLYAI_API_KEY", help="Environment variable containing the API key.")
    parser.add_argument("--poll-interval", type=float, default=5.0, help="Seconds between transcription status polls.")
    parser.add_argument("--max-wait", type=float, default=1800.0, help="Give up on a transcription job after this many seconds (0 = never).")
    parser.add_argument("--keep-upload", action="store_true", help="Do not delete the source video when the run ends.")
    parser.add_argument("--keep-segments", action="store_true", help="Keep raw segments next to their processed clips.")
    parser.add_argument("--cleanup-on-failure", action="store_true", help="Delete the scratch directory if the run fails.")
    parser.add_argument("--overwrite", action="store_true", help="Replace an existing run directory with the same name.")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, WARNING, ERROR).")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    transcription = TranscriptionConfig(
        api_base=args.api_base,
        api_key_env=args.api_key_env,
        poll_interval=args.poll_interval,
        max_wait_seconds=args.max_wait if args.max_wait > 0 else None,
    )
    media = MediaConfig(
        overlay_path=args.overlay,
        font_path=args.font,
        segment_seconds=args.segment_seconds,
    )
    if args.ffmpeg:
        media.ffmpeg_binary = args.ffmpeg

    return PipelineConfig(
        transcription=transcription,
        media=media,
        output_root=args.output_dir,
        max_workers=args.workers,
        remove_upload=not args.keep_upload,
        keep_segments=args.keep_segments,
        cleanup_on_failure=args.cleanup_on_failure,
        overwrite=args.overwrite,
    )


def main(argv=None) -> int:
    args = parse_args(argv)
    load_dotenv()
    logging.basicConfig(level=getattr(logging, args.log_level.upper(), logging.INFO))

    pipeline = ShortsPipeline(config=build_config(args))
    try:
        if args.single:
            processed = pipeline.run_single(args.video)
            output = [str(processed.output_path)]
        else:
            result = pipeline.run(args.video, run_name=args.run_name)
            logging.info("Processed clips in %s", result.run_dir)
            output = result.identifiers
    except ShortsAgentError as exc:
        print(json.dumps({"error": str(exc), "type": type(exc).__name__}))
        return 1

    print(json.dumps(output))
    return 0


if __name__ == "__main__":
    sys.exit(main())
