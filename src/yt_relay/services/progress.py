"""Parsing of yt-dlp progress output and the live speed/ETA side cache."""

from __future__ import annotations

import re
from collections import OrderedDict
from threading import Lock

from yt_relay.types import ProgressUpdate

_ANSI_ESCAPE_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_PERCENT_RE = re.compile(r"^\[download\]\s+(?P<percent>\d+(?:\.\d+)?)%")
_SPEED_RE = re.compile(r"\bat\s+(?P<speed>\d+(?:\.\d+)?\s*[KMGT]?i?B/s)")
_ETA_RE = re.compile(r"\bETA\s+(?P<eta>\d+(?::\d+)+)")
_FRAGMENT_RE = re.compile(r"\(frag\s+(?P<index>\d+)/(?P<total>\d+)\)")
_POST_PROCESSING_RE = re.compile(r"^\[(?:Merger|ExtractAudio|ffmpeg|VideoConvertor|VideoRemuxer|Fixup\w*)\]")


class ProgressParser:
    """Turns raw yt-dlp output lines into progress updates for a single job.

    Percentages never go down: every update carries the maximum of what was
    seen before and what the current line says. Once a fragment or
    post-processing line shows up the job is reported as ``converting``.
    """

    def __init__(self) -> None:
        self._max_percent = 0.0
        self._status = "downloading"

    @property
    def progress(self) -> int:
        return int(self._max_percent)

    @property
    def status(self) -> str:
        return self._status

    def feed(self, line: str) -> ProgressUpdate | None:
        clean = _ANSI_ESCAPE_RE.sub("", line).strip()
        if not clean:
            return None

        if _POST_PROCESSING_RE.match(clean):
            self._status = "converting"
            return ProgressUpdate(status="converting", progress=self.progress)

        match = _PERCENT_RE.match(clean)
        if match is None:
            return None

        percent = float(match.group("percent"))
        fragment = _FRAGMENT_RE.search(clean)
        if fragment is not None:
            self._status = "converting"
            total = int(fragment.group("total"))
            if total > 0:
                percent = max(percent, int(fragment.group("index")) / total * 100)

        self._max_percent = max(self._max_percent, min(percent, 100.0))

        speed = _SPEED_RE.search(clean)
        eta = _ETA_RE.search(clean)
        return ProgressUpdate(
            status=self._status,  # type: ignore[arg-type]
            progress=self.progress,
            speed=speed.group("speed").replace(" ", "") if speed else None,
            eta=eta.group("eta") if eta else None,
        )


class LiveProgressCache:
    """Latest speed/ETA labels per job, kept out of the persisted record.

    Bounded: the least recently updated entry is evicted once ``max_entries``
    is reached. Entries are discarded when a job completes or is deleted.
    """

    def __init__(self, max_entries: int = 1024) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[str | None, str | None]] = OrderedDict()
        self._lock = Lock()

    def set(self, job_id: str, speed: str | None, eta: str | None) -> None:
        with self._lock:
            self._entries[job_id] = (speed, eta)
            self._entries.move_to_end(job_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get(self, job_id: str) -> tuple[str | None, str | None]:
        with self._lock:
            return self._entries.get(job_id, (None, None))

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
