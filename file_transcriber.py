"""Offline transcription of WAV files into SRT and WebVTT subtitles.

The file is fed to a Vosk recognizer in 100ms chunks with word timings
enabled. Recognised words are grouped into subtitle cues that stay short
enough to read: a cue ends at a pause, after a few seconds, or when the text
gets too long, and each cue is wrapped onto at most two lines.
"""

from __future__ import annotations

import logging
import wave
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from config import default_data_dir
from errors import TranscriptionError
from events import EventEmitter, Unsubscribe
from models import chunk_bytes_for
from recognizer_worker import load_vosk, parse_result

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("both", "srt", "vtt")

MAX_CHARS = 72
MAX_DURATION_S = 6.0
MAX_GAP_S = 0.8
MIN_DURATION_S = 1.0
MAX_LINE_CHARS = 40


@dataclass(frozen=True)
class WordTiming:
    word: str
    start: float
    end: float


@dataclass(frozen=True)
class SubtitleSegment:
    start_ms: int
    end_ms: int
    text: str


@dataclass(frozen=True)
class TranscribeProgress:
    percent: int
    current_time_ms: int
    text_partial: Optional[str] = None


@dataclass
class TranscribeResult:
    segments: list[SubtitleSegment]
    words: list[WordTiming] = field(default_factory=list)
    duration_ms: int = 0
    sample_rate: int = 0
    srt_path: Optional[Path] = None
    vtt_path: Optional[Path] = None


# ----------------------------------------------------------------------
# Segmentation and subtitle formats
# ----------------------------------------------------------------------


def wrap_text(text: str, max_line_chars: int = MAX_LINE_CHARS) -> str:
    """Break ``text`` onto a second line once the first would exceed ``max_line_chars``."""
    first: list[str] = []
    rest: list[str] = []
    for word in text.split():
        if rest:
            rest.append(word)
        elif first and len(" ".join(first)) + 1 + len(word) > max_line_chars:
            rest.append(word)
        else:
            first.append(word)
    lines = [" ".join(first)]
    if rest:
        lines.append(" ".join(rest))
    return "\n".join(lines)


def _starts_new_segment(
    group: list[WordTiming], word: WordTiming, max_chars: int, max_duration_s: float, max_gap_s: float
) -> bool:
    if word.start - group[-1].end > max_gap_s:
        return True
    if word.end - group[0].start > max_duration_s:
        return True
    return len(" ".join(item.word for item in group)) + 1 + len(word.word) > max_chars


def segment_words(
    words: Iterable[WordTiming],
    max_chars: int = MAX_CHARS,
    max_duration_s: float = MAX_DURATION_S,
    max_gap_s: float = MAX_GAP_S,
    min_duration_s: float = MIN_DURATION_S,
    max_line_chars: int = MAX_LINE_CHARS,
) -> list[SubtitleSegment]:
    groups: list[list[WordTiming]] = []
    for word in words:
        if groups and not _starts_new_segment(groups[-1], word, max_chars, max_duration_s, max_gap_s):
            groups[-1].append(word)
        else:
            groups.append([word])

    segments: list[SubtitleSegment] = []
    for group in groups:
        text = " ".join(item.word for item in group).strip()
        if not text:
            continue
        start = group[0].start
        end = max(group[-1].end, start + min_duration_s)
        segments.append(
            SubtitleSegment(
                start_ms=int(round(start * 1000)),
                end_ms=int(round(end * 1000)),
                text=wrap_text(text, max_line_chars),
            )
        )
    return segments


def format_timestamp(ms: int, separator: str = ",") -> str:
    ms = max(0, int(ms))
    seconds, millis = divmod(ms, 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}{separator}{millis:03d}"


def _cues(segments: Iterable[SubtitleSegment], separator: str) -> list[str]:
    lines: list[str] = []
    for index, segment in enumerate(segments, start=1):
        lines.append(str(index))
        lines.append(
            f"{format_timestamp(segment.start_ms, separator)} --> {format_timestamp(segment.end_ms, separator)}"
        )
        lines.append(segment.text)
        lines.append("")
    return lines


def segments_to_srt(segments: Iterable[SubtitleSegment]) -> str:
    return "\n".join(_cues(segments, ","))


def segments_to_vtt(segments: Iterable[SubtitleSegment]) -> str:
    return "\n".join(["WEBVTT", ""] + _cues(segments, "."))


# ----------------------------------------------------------------------
# Transcriber
# ----------------------------------------------------------------------


def _collect_words(result: dict[str, Any], words: list[WordTiming]) -> None:
    for item in result.get("result") or ():
        if not isinstance(item, dict) or not item.get("word"):
            continue
        try:
            words.append(WordTiming(str(item["word"]), float(item["start"]), float(item["end"])))
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping malformed word entry: %r", item)


class FileTranscriber:
    """Transcribes 16-bit mono PCM WAV files and writes subtitle files."""

    def __init__(
        self,
        output_dir: Optional[str | Path] = None,
        loader: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.output_dir = Path(output_dir) if output_dir else default_data_dir() / "subtitles"
        self._loader = loader or load_vosk
        self._events = EventEmitter()

    def on_progress(self, callback: Callable[[TranscribeProgress], None]) -> Unsubscribe:
        return self._events.on("progress", callback)

    def transcribe(
        self,
        wav_path: str | Path,
        model_path: str | Path,
        export_format: str = "both",
    ) -> TranscribeResult:
        if export_format not in EXPORT_FORMATS:
            raise TranscriptionError(f"Unknown subtitle format: {export_format}")
        wav_path = Path(wav_path)
        if not wav_path.is_file():
            raise TranscriptionError(f"Audio file not found: {wav_path}")
        if not Path(model_path).is_dir():
            raise TranscriptionError(f"Model path not found: {model_path}")

        words, duration_ms, sample_rate = self._recognize(wav_path, Path(model_path))
        segments = segment_words(words)
        result = TranscribeResult(
            segments=segments, words=words, duration_ms=duration_ms, sample_rate=sample_rate
        )

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            if export_format in ("both", "srt"):
                result.srt_path = self.output_dir / f"{wav_path.stem}.srt"
                result.srt_path.write_text(segments_to_srt(segments), encoding="utf-8")
            if export_format in ("both", "vtt"):
                result.vtt_path = self.output_dir / f"{wav_path.stem}.vtt"
                result.vtt_path.write_text(segments_to_vtt(segments), encoding="utf-8")
        except OSError as exc:
            raise TranscriptionError(f"Could not write subtitles to {self.output_dir}: {exc}") from exc

        logger.info(
            "Transcribed %s: %d words, %d segments, %d ms", wav_path.name, len(words), len(segments), duration_ms
        )
        return result

    def _recognize(self, wav_path: Path, model_path: Path) -> tuple[list[WordTiming], int, int]:
        try:
            wav = wave.open(str(wav_path), "rb")
        except (wave.Error, EOFError) as exc:
            raise TranscriptionError(f"Not a PCM WAV file: {wav_path.name} ({exc})") from exc

        with wav:
            sample_rate = wav.getframerate()
            if wav.getnchannels() != 1 or wav.getsampwidth() != 2:
                raise TranscriptionError(
                    f"Audio must be 16-bit mono PCM, got {wav.getnchannels()} channel(s) "
                    f"at {wav.getsampwidth() * 8} bits"
                )
            total_frames = wav.getnframes()
            duration_ms = int(total_frames * 1000 / sample_rate) if sample_rate else 0

            vosk = self._loader()
            try:
                recognizer = vosk.KaldiRecognizer(vosk.Model(str(model_path)), float(sample_rate))
                recognizer.SetWords(True)
            except Exception as exc:
                raise TranscriptionError(f"Failed to initialise recognizer: {exc}") from exc

            frames_per_chunk = chunk_bytes_for(sample_rate) // 2
            words: list[WordTiming] = []
            processed = 0
            last_percent = 0
            partial = ""
            while True:
                chunk = wav.readframes(frames_per_chunk)
                if not chunk:
                    break
                processed += len(chunk) // 2
                if recognizer.AcceptWaveform(chunk):
                    _collect_words(parse_result(recognizer.Result()), words)
                else:
                    partial = str(parse_result(recognizer.PartialResult()).get("partial") or partial)

                percent = min(100, processed * 100 // total_frames) if total_frames else 100
                if percent != last_percent:
                    last_percent = percent
                    self._events.emit(
                        "progress",
                        TranscribeProgress(
                            percent=percent,
                            current_time_ms=int(processed * 1000 / sample_rate),
                            text_partial=partial or None,
                        ),
                    )
            _collect_words(parse_result(recognizer.FinalResult()), words)
        return words, duration_ms, sample_rate
