# 18.10.26

import os
import sys
import shutil
import signal
import logging
import argparse
import threading
from typing import Dict, List, Optional


# External library
from rich.console import Console
from rich.text import Text
from rich.progress import Progress, ProgressColumn, TextColumn


# Internal utilities
from MediaStitch.utils import Logger
from MediaStitch.version import __title__, __version__
from MediaStitch.source import StreamAssembler
from MediaStitch.source.wrapper import MIME_EXTENSIONS
from MediaStitch.source.utils.file_size import format_size, format_time
from MediaStitch.source.utils.object import Phase, ProgressEvent, Track, TrackResult


# Variable
logger = logging.getLogger(__name__)
console = Console()


class CustomBarColumn(ProgressColumn):
    def __init__(self, bar_width=40):
        super().__init__()
        self.bar_width = bar_width

    def render(self, task):
        total = task.total or 100
        if task.fields.get("indeterminate"):
            return Text("░" * self.bar_width, style="dim white")

        filled = min(int((task.completed / total) * self.bar_width), self.bar_width)
        text = Text()
        if filled > 0:
            text.append("█" * filled, style="bright_magenta")
        if filled < self.bar_width:
            text.append("░" * (self.bar_width - filled), style="dim white")
        return text


class ColoredSpeedColumn(ProgressColumn):
    """Speed column with green color"""
    def render(self, task):
        return Text(task.fields.get("speed", "0 B/s"), style="green")


class CompactTimeColumn(ProgressColumn):
    """Elapsed time column"""
    def render(self, task):
        elapsed = task.finished_time if task.finished else task.elapsed
        if elapsed is None:
            return Text("--:--", style="yellow")
        return Text(format_time(elapsed), style="yellow")


def parse_headers(values: Optional[List[str]]) -> Dict[str, str]:
    headers = {}
    for value in values or []:
        name, sep, content = value.partition(":")
        if not sep:
            raise argparse.ArgumentTypeError(f"Header must look like 'Name: value', got {value!r}")
        headers[name.strip()] = content.strip()
    return headers


def output_path(base: str, result: TrackResult, detached_audio: bool) -> str:
    root, ext = os.path.splitext(base)
    ext = ext or MIME_EXTENSIONS.get(result.mime_type, ".bin")
    if detached_audio and result.track == Track.AUDIO:
        return f"{root}.audio{MIME_EXTENSIONS.get(result.mime_type, '.bin')}"
    return root + ext


def save(result: TrackResult, destination: str) -> None:
    if result.path:
        shutil.move(result.path, destination)
    else:
        with open(destination, "wb") as f:
            f.write(result.data)
    console.print(f"[green]Saved {result.track.value} track ({format_size(result.size)}, {result.mime_type}) to [cyan]{destination}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=__title__, description="Download an HLS or DASH stream into local media files.")
    parser.add_argument("url", help="Manifest URL (.m3u8 or .mpd, detected by content)")
    parser.add_argument("-o", "--output", default="output", help="Output file (extension picked from content if omitted)")
    parser.add_argument("-H", "--header", action="append", help="Extra request header, 'Name: value' (repeatable)")
    parser.add_argument("--key", help="Pre-resolved AES-128 key as hex")
    parser.add_argument("--threads", type=int, default=None, help="Concurrent segment downloads")
    parser.add_argument("--retries", type=int, default=None, help="Attempts per segment")
    parser.add_argument("--spill", choices=["memory", "disk"], default=None, help="Force the storage strategy")
    parser.add_argument("--no-ad-filter", action="store_true", help="Keep segments flagged as ads")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--version", action="version", version=f"{__title__} {__version__}")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    Logger(debug=args.debug or None)

    options = {}
    if args.threads:
        options["concurrency"] = args.threads
    if args.retries:
        options["max_retries"] = args.retries
    if args.no_ad_filter:
        options["filter_ads"] = False

    progress = Progress(
        TextColumn("{task.description}"),
        CustomBarColumn(bar_width=40),
        TextColumn("{task.percentage:>5.1f}%"),
        TextColumn("│"),
        ColoredSpeedColumn(),
        TextColumn("│"),
        CompactTimeColumn(),
        console=console,
        refresh_per_second=10.0,
    )
    task = progress.add_task("[cyan]Parsing", total=100, speed="0 B/s", indeterminate=True)
    progress_lock = threading.Lock()

    def on_progress(event: ProgressEvent) -> None:
        with progress_lock:
            progress.update(
                task,
                description=f"[cyan]{event.phase.value.replace('_', ' ').capitalize()}",
                completed=max(event.percent, 0),
                speed=f"{format_size(event.throughput)}/s",
                indeterminate=event.indeterminate,
            )

    assembler = StreamAssembler(
        args.url,
        headers=parse_headers(args.header) or None,
        key=args.key,
        on_progress=on_progress,
        spill=args.spill,
        **options,
    )

    def _signal_handler(signum, frame):
        console.print("[yellow]Stopping download...")
        assembler.cancel()

    signal.signal(signal.SIGINT, _signal_handler)

    with progress:
        result = assembler.start()

    if result.status == Phase.CANCELLED:
        console.print("[yellow]Download cancelled.")
        sys.exit(130)

    if result.status != Phase.DONE:
        console.print(f"[red]Download failed: {result.error}")
        sys.exit(1)

    detached_audio = result.track_count > 1
    for track in result.tracks:
        save(track, output_path(args.output, track, detached_audio))

    if result.skipped_segment_count:
        console.print(f"[yellow]Warning: {result.skipped_segment_count} segments were missing; playback may glitch at those points.")
