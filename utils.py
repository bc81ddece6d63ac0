# utils.py

import asyncio
import os
import re
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from json import dumps
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

T = TypeVar("T")

RESPONSE_PREVIEW_LIMIT = 2000
SEQUENCE_FILE_PATTERN = re.compile(r"^(\d{8})\.log$")


@dataclass(frozen=True)
class RequestLogEntry:
	sequence: int
	timestamp: str
	method: str
	url: str
	channel: str
	attempt: int
	outcome: str
	status_code: int | None = None
	elapsed_ms: float | None = None
	content_type: str | None = None
	error: str | None = None
	response: Any = None

	def summary_line(self) -> str:
		status = self.status_code if self.status_code is not None else "---"
		return f"{self.timestamp} {self.sequence:08d} {self.method} {self.url} {status} {self.outcome}"


@dataclass
class RequestLog:
	"""
	Append-only, sequence-numbered record of every dispatched request.

	record() only builds the entry. Files are written in sequence order by one
	background thread, and files older than ``retention_days`` are pruned there.
	Any failure is reported to the logger and swallowed.
	"""
	directory: str | None = "logs/requests"
	summary_path: str | None = None
	logger: Any = None
	keep_in_memory: int = 200
	retention_days: int | None = 7
	_sequence: int = field(default=0, init=False)
	_recent: deque = field(init=False)
	_writer: ThreadPoolExecutor | None = field(default=None, init=False)
	_lock: threading.Lock = field(default_factory=threading.Lock, init=False)

	def __post_init__(self):
		self._recent = deque(maxlen=self.keep_in_memory)
		if not self.directory:
			return
		if self.summary_path is None:
			self.summary_path = os.path.join(os.path.dirname(self.directory.rstrip("/\\")) or ".",
			                                 "requests-summary.log")
		try:
			self._sequence = self._initial_sequence()
		except OSError:
			self._sequence = 0
		self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="request-log")
		if self.retention_days:
			self._writer.submit(self._prune)

	@property
	def recent(self) -> list[RequestLogEntry]:
		return list(self._recent)

	def _initial_sequence(self) -> int:
		"""Continue numbering after the highest file already on disk."""
		if not os.path.isdir(self.directory):
			return 0
		highest = 0
		for name in os.listdir(self.directory):
			match = SEQUENCE_FILE_PATTERN.match(name)
			if match:
				highest = max(highest, int(match.group(1)))
		return highest

	def next_sequence(self) -> int:
		with self._lock:
			self._sequence += 1
			return self._sequence

	def record(self, *, method: str, url: str, channel: str, attempt: int, outcome: str,
	           status_code: int | None = None, elapsed_ms: float | None = None,
	           content_type: str | None = None, error: str | None = None, response: Any = None) -> RequestLogEntry | None:
		try:
			if isinstance(response, (bytes, bytearray)):
				response = f"<{len(response)} bytes>"
			elif isinstance(response, str) and len(response) > RESPONSE_PREVIEW_LIMIT:
				response = response[:RESPONSE_PREVIEW_LIMIT] + "..."

			entry = RequestLogEntry(
				sequence=self.next_sequence(),
				timestamp=datetime.now().strftime("%Y-%m-%d %H-%M-%S"),
				method=method,
				url=url,
				channel=channel,
				attempt=attempt,
				outcome=outcome,
				status_code=status_code,
				elapsed_ms=round(elapsed_ms, 1) if elapsed_ms is not None else None,
				content_type=content_type,
				error=error,
				response=response,
			)
			self._recent.append(entry)
			if self._writer is not None:
				self._writer.submit(self._write, entry)
			return entry
		except Exception as e:
			if self.logger is not None:
				self.logger.warning("Failed to record request", context={"url": url, "method": method},
				                    exc_info=e)
			return None

	def flush(self) -> None:
		"""Block until every entry recorded so far is on disk."""
		if self._writer is not None:
			self._writer.submit(lambda: None).result()

	def close(self) -> None:
		writer, self._writer = self._writer, None
		if writer is not None:
			writer.shutdown(wait=True)

	def _write(self, entry: RequestLogEntry) -> None:
		try:
			os.makedirs(self.directory, exist_ok=True)
			with open(os.path.join(self.directory, f"{entry.sequence:08d}.log"), "w", encoding="utf-8") as f:
				f.write(dumps(asdict(entry), indent=2, default=repr))
			if self.summary_path:
				with open(self.summary_path, "a", encoding="utf-8") as f:
					f.write(entry.summary_line() + "\n")
		except (OSError, TypeError, ValueError) as e:
			if self.logger is not None:
				self.logger.warning("Request log write failed", context={"sequence": entry.sequence, "error": str(e)})

	def _prune(self) -> None:
		cutoff = time.time() - self.retention_days * 86400
		try:
			names = os.listdir(self.directory)
		except OSError:
			return
		removed = 0
		for name in names:
			if not SEQUENCE_FILE_PATTERN.match(name):
				continue
			path = os.path.join(self.directory, name)
			try:
				if os.path.getmtime(path) < cutoff:
					os.remove(path)
					removed += 1
			except OSError:
				continue
		if removed and self.logger is not None:
			self.logger.debug("Pruned old request log files", context={"removed": removed})


@dataclass
class DebounceEntry:
	future: asyncio.Future
	started_at: float
	expiry: Optional[asyncio.TimerHandle] = None


class DebounceCache:
	"""Collapse calls that share a key inside a time window into one piece of work."""

	def __init__(self, clock: Callable[[], float] = time.monotonic):
		self._entries: Dict[str, DebounceEntry] = {}
		self._clock = clock

	async def debounce(self, key: str, operation: Callable[[], Awaitable[T]], window_ms: int = 1000) -> T:
		now = self._clock()
		window = window_ms / 1000
		cached = self._entries.get(key)

		if cached is not None and now - cached.started_at < window:
			return await asyncio.shield(cached.future)

		if cached is not None and cached.expiry is not None:
			cached.expiry.cancel()

		# No await between the lookup above and this insert, so concurrent callers cannot both miss
		future = asyncio.ensure_future(operation())
		entry = DebounceEntry(future=future, started_at=now)
		self._entries[key] = entry

		def _schedule_cleanup(done: asyncio.Future) -> None:
			# Retrieve the exception so an unawaited failure is not reported as never retrieved
			if not done.cancelled():
				done.exception()
			entry.expiry = asyncio.get_running_loop().call_later(window, self._expire, key, entry)

		future.add_done_callback(_schedule_cleanup)
		return await asyncio.shield(future)

	def _expire(self, key: str, entry: DebounceEntry) -> None:
		if self._entries.get(key) is entry:
			del self._entries[key]

	def has(self, key: str) -> bool:
		return key in self._entries

	def clear(self, key: str) -> None:
		entry = self._entries.pop(key, None)
		if entry is not None and entry.expiry is not None:
			entry.expiry.cancel()

	def clear_all(self) -> None:
		for key in list(self._entries):
			self.clear(key)

	def status(self) -> dict[str, Any]:
		return {"size": len(self._entries), "keys": list(self._entries)}
