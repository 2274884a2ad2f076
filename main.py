"""Command line entrypoint."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
import time
from pathlib import Path

from audio_feed import MicrophoneFeed, WavFileFeed
from config import JsonConfigStore
from errors import PersistenceFailure
from logging_utils import setup_logging
from models import Notice, Segment, SessionRecord, SessionState, Summary
from rate_limiter import RateLimiter
from recognizer import DashscopeSpeechSource
from session_controller import SessionController, format_duration
from storage import JsonSessionStore
from summarizer import DashscopeSummarizer


def _print_summary(summary: Summary | None) -> None:
    if summary is None:
        print("(no summary)")
        return
    print(summary.content)
    sections = (
        ("Key points", summary.key_points),
        ("Decisions", summary.decisions),
        ("Action items", summary.action_items),
        ("Quotes", summary.quotes),
    )
    for title, items in sections:
        if not items:
            continue
        print(f"\n{title}:")
        for item in items:
            print(f"  - {item}")


def _print_record(record: SessionRecord) -> None:
    print(f"{record.id}  {record.date}  {format_duration(record.duration_sec)}")
    print(f"{len(record.segments)} segments")
    print()
    print(" ".join(seg.text for seg in record.segments))
    print()
    _print_summary(record.summary)


def _on_interim(segment: Segment) -> None:
    print(f"\r... {segment.text[-100:]}", end="", flush=True)


def _on_notice(notice: Notice) -> None:
    print(f"\n[{notice.severity.value}] {notice.code}: {notice.message}", file=sys.stderr)


def _on_summary(summary: Summary) -> None:
    print(f"\n--- summary update ({summary.covers_up_to_segment_index} segments) ---")
    print(summary.content)


def _wait_while_recording(
    controller: SessionController, duration: float | None, refresh_every: float | None
) -> None:
    """Block until ``duration`` elapses, asking for a summary every ``refresh_every`` seconds."""
    deadline = None if duration is None else time.monotonic() + duration
    idle = threading.Event()
    while True:
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            return
        if not refresh_every:
            idle.wait(remaining)
            return
        step = refresh_every if remaining is None else min(refresh_every, remaining)
        idle.wait(step)
        if remaining is None or step < remaining:
            controller.request_summary()


def _cmd_record(args: argparse.Namespace, config_store: JsonConfigStore) -> int:
    api_key = config_store.get_api_key()
    limits = config_store.get_rate_limits()
    if args.wav:
        feed = WavFileFeed(args.wav, realtime=not args.fast)
    else:
        feed = MicrophoneFeed(device=args.device)

    controller = SessionController(
        speech_source=DashscopeSpeechSource(feed, api_key=api_key, utterance_ms=args.utterance_ms),
        summarizer=DashscopeSummarizer(
            api_key,
            model=config_store.get_summary_model(),
            request_timeout_s=limits.per_call_timeout_ms / 1000.0,
        ),
        store=JsonSessionStore(config_store.get_sessions_dir()),
        rate_limiter=RateLimiter(limits.requests_per_minute, limits.tokens_per_month),
        auto_summary=config_store.get_auto_summary(),
        limits=limits,
        on_interim=_on_interim,
        on_notice=_on_notice,
        on_summary=_on_summary,
    )
    if not controller.start():
        return 1

    print("Listening, press Ctrl+C to stop.")
    try:
        _wait_while_recording(controller, args.duration, args.refresh_every)
    except KeyboardInterrupt:
        pass

    print("\nStopping...")
    result = controller.stop()
    if result is None or result.state != SessionState.STOPPED or result.record is None:
        return 1
    print()
    _print_record(result.record)
    if not result.saved:
        print("\nSession was NOT saved.", file=sys.stderr)
        return 2
    return 0


def _cmd_show(args: argparse.Namespace, config_store: JsonConfigStore) -> int:
    store = JsonSessionStore(config_store.get_sessions_dir())
    try:
        record = store.load(args.session_id)
    except PersistenceFailure as exc:
        print(exc, file=sys.stderr)
        return 1
    if record is None:
        print(f"session {args.session_id} not found", file=sys.stderr)
        return 1
    _print_record(record)
    return 0


def _cmd_sessions(args: argparse.Namespace, config_store: JsonConfigStore) -> int:
    store = JsonSessionStore(config_store.get_sessions_dir())
    for session_id in store.list_sessions():
        print(session_id)
    return 0


def _cmd_config(args: argparse.Namespace, config_store: JsonConfigStore) -> int:
    if args.api_key is not None:
        config_store.set_api_key(args.api_key)
    if args.model is not None:
        config_store.set_summary_model(args.model)
    if args.sessions_dir is not None:
        config_store.set_sessions_dir(args.sessions_dir)
    print(f"config: {config_store.path}")
    print(f"summary model: {config_store.get_summary_model()}")
    print(f"sessions dir: {config_store.get_sessions_dir()}")
    print(f"auto summary: {config_store.get_auto_summary()}")
    print(f"rate limits: {config_store.get_rate_limits()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="talknotes")
    parser.add_argument("--config", help="Path to config.json.")
    parser.add_argument("--log-dir", default="logs", help="Log directory.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    sub = parser.add_subparsers(dest="command")

    record_cmd = sub.add_parser("record")
    record_cmd.add_argument("--wav", help="Replay a 16-bit WAV file instead of the microphone.")
    record_cmd.add_argument("--fast", action="store_true", help="Replay WAV without pacing.")
    record_cmd.add_argument("--device", help="Input device name or index.")
    record_cmd.add_argument("--duration", type=float, help="Seconds. Omit for manual stop.")
    record_cmd.add_argument(
        "--utterance-ms", type=int, default=5000, help="Audio per recognition request."
    )
    record_cmd.add_argument(
        "--refresh-every", type=float, help="Seconds between on-demand summary refreshes."
    )

    show_cmd = sub.add_parser("show")
    show_cmd.add_argument("session_id", help="Stored session id.")

    sub.add_parser("sessions")

    config_cmd = sub.add_parser("config")
    config_cmd.add_argument("--api-key", help="DashScope API key.")
    config_cmd.add_argument("--model", help="Summary model name.")
    config_cmd.add_argument("--sessions-dir", help="Directory for saved sessions.")
    return parser


COMMANDS = {
    "record": _cmd_record,
    "show": _cmd_show,
    "sessions": _cmd_sessions,
    "config": _cmd_config,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command not in COMMANDS:
        parser.print_help()
        return 1
    setup_logging(args.log_dir, logging.DEBUG if args.verbose else logging.INFO, console=True)
    config_store = JsonConfigStore(Path(args.config) if args.config else None)
    return COMMANDS[args.command](args, config_store)


if __name__ == "__main__":
    raise SystemExit(main())
