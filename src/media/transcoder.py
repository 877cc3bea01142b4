import json
import logging
import re
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from src.core.errors import PackagingError, ProbeError
from src.database.schemas.metadata import AudioStreamInfo, MediaInfo, VideoStreamInfo

logger = logging.getLogger(__name__)

MANIFEST_NAME = "playlist.m3u8"
SEGMENT_PATTERN = "segment_%03d.ts"
SEGMENT_RE = re.compile(r"^segment_(\d{3,})\.ts$")

# ffmpeg -progress pipe:1 reports out_time_ms in microseconds
_RE_OUT_TIME_MS = re.compile(r"out_time_ms=(\d+)")

ProgressCallback = Callable[[float, Optional[float]], None]


@dataclass(frozen=True)
class PackageDescriptor:
    manifest_path: Path
    files: List[Path]           # manifest first, then segments by index
    segment_paths: List[Path]

    @property
    def segment_count(self) -> int:
        return len(self.segment_paths)


def _trim_tail(s: str, limit: int = 2000) -> str:
    if not s:
        return ""
    return s[-limit:] if len(s) > limit else s


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def is_segment_file(name: str) -> bool:
    return SEGMENT_RE.match(name) is not None


def _segment_index(path: Path) -> int:
    return int(SEGMENT_RE.match(path.name).group(1))


def parse_probe_output(raw: str) -> MediaInfo:
    """Turn `ffprobe -of json -show_format -show_streams` output into MediaInfo."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProbeError(f"ffprobe returned unparseable output: {e}") from e

    if not isinstance(data, dict):
        raise ProbeError("ffprobe returned unparseable output")

    fmt = data.get("format") or {}
    streams = data.get("streams") or []

    try:
        duration = float(fmt["duration"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProbeError("ffprobe output has no container duration") from e

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    video = None
    if video_stream is not None:
        video = VideoStreamInfo(
            codec=video_stream.get("codec_name"),
            width=_to_int(video_stream.get("width")),
            height=_to_int(video_stream.get("height")),
            framerate=video_stream.get("avg_frame_rate"),
        )

    audio = None
    if audio_stream is not None:
        audio = AudioStreamInfo(
            codec=audio_stream.get("codec_name"),
            sample_rate=_to_int(audio_stream.get("sample_rate")),
            channels=_to_int(audio_stream.get("channels")),
        )

    return MediaInfo(
        duration=duration,
        size=_to_int(fmt.get("size")),
        bitrate=_to_int(fmt.get("bit_rate")),
        video=video,
        audio=audio,
    )


def manifest_segment_names(manifest_path: Path) -> List[str]:
    """Segment URIs referenced by an HLS media playlist, in playback order."""
    names = []
    for line in manifest_path.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#"):
            names.append(line)
    return names


class Transcoder:
    """Wraps ffprobe/ffmpeg for metadata probing and HLS packaging."""

    def __init__(
        self,
        ffmpeg_bin: str = "ffmpeg",
        ffprobe_bin: str = "ffprobe",
        segment_seconds: int = 10,
        probe_timeout: int = 60,
        package_timeout: int = 3600,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.segment_seconds = segment_seconds
        self.probe_timeout = probe_timeout
        self.package_timeout = package_timeout

    def probe(self, source_path) -> MediaInfo:
        command = [
            self.ffprobe_bin,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(source_path),
        ]
        try:
            p = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                timeout=self.probe_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"ffprobe timed out after {self.probe_timeout}s") from e
        except OSError as e:
            raise ProbeError(f"ffprobe could not be started: {e}") from e

        if p.returncode != 0:
            raise ProbeError(
                f"ffprobe exited with code {p.returncode}: {_trim_tail(p.stderr)}"
            )

        info = parse_probe_output(p.stdout)
        logger.info(
            "Probed %s duration=%.2fs resolution=%s",
            source_path, info.duration, info.resolution or "unknown",
        )
        return info

    def build_package_command(self, source_path, output_dir: Path) -> List[str]:
        return [
            self.ffmpeg_bin,
            "-y",
            "-i", str(source_path),
            "-c:v", "libx264",
            "-c:a", "aac",
            "-hls_time", str(self.segment_seconds),
            "-hls_list_size", "0",
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            "-progress", "pipe:1",
            "-nostats",
            "-f", "hls",
            str(output_dir / MANIFEST_NAME),
        ]

    def package(
        self,
        source_path,
        output_dir,
        progress_callback: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> PackageDescriptor:
        """
        Re-encode `source_path` into an HLS playlist plus fixed-length
        segments, all written under `output_dir`.

        Setting `cancel_event` from another thread kills ffmpeg and raises
        PackagingError. Partial output is left on disk on failure; the
        caller owns the directory and removes it with the rest of its
        workspace.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        command = self.build_package_command(source_path, output_dir)
        logger.info("Starting HLS packaging: %s", " ".join(command))

        timed_out = threading.Event()
        cancelled = threading.Event()
        finished = threading.Event()

        def _kill(proc):
            timed_out.set()
            proc.kill()

        def _watch_cancel(proc):
            while not finished.is_set():
                if cancel_event.wait(0.1):
                    if not finished.is_set():
                        cancelled.set()
                        proc.kill()
                    return

        # ffmpeg echoes container tags to stderr, which need not be UTF-8
        with tempfile.TemporaryFile(mode="w+b") as stderr_log:
            try:
                proc = subprocess.Popen(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=stderr_log,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as e:
                raise PackagingError(f"ffmpeg could not be started: {e}") from e

            timer = threading.Timer(self.package_timeout, _kill, args=(proc,))
            timer.daemon = True
            timer.start()
            if cancel_event is not None:
                threading.Thread(target=_watch_cancel, args=(proc,), daemon=True).start()
            try:
                for line in proc.stdout:
                    m = _RE_OUT_TIME_MS.search(line)
                    if m and progress_callback is not None:
                        progress_callback(int(m.group(1)) / 1_000_000.0, duration)
                returncode = proc.wait()
            except BaseException:
                proc.kill()
                proc.wait()
                raise
            finally:
                finished.set()
                timer.cancel()

            if cancelled.is_set():
                raise PackagingError("ffmpeg was cancelled")
            if timed_out.is_set():
                raise PackagingError(f"ffmpeg timed out after {self.package_timeout}s")
            if returncode != 0:
                stderr_log.seek(0)
                stderr_text = stderr_log.read().decode("utf-8", errors="replace")
                raise PackagingError(
                    f"ffmpeg exited with code {returncode}: {_trim_tail(stderr_text)}"
                )

        descriptor = self.describe_output(output_dir)
        logger.info(
            "HLS packaging finished: %d segments in %s",
            descriptor.segment_count, output_dir,
        )
        return descriptor

    @staticmethod
    def describe_output(output_dir: Path) -> PackageDescriptor:
        manifest = output_dir / MANIFEST_NAME
        if not manifest.exists():
            raise PackagingError(f"{MANIFEST_NAME} was not created")

        segments = sorted(
            (p for p in output_dir.iterdir() if p.is_file() and is_segment_file(p.name)),
            key=_segment_index,
        )
        if not segments:
            raise PackagingError("packaging produced no segments")

        present = {p.name for p in segments}
        missing = [name for name in manifest_segment_names(manifest) if name not in present]
        if missing:
            raise PackagingError(f"playlist references missing segments: {missing[:5]}")

        return PackageDescriptor(
            manifest_path=manifest,
            files=[manifest, *segments],
            segment_paths=segments,
        )
