# Logger.py

import asyncio
import glob
import os
import sys
import threading
import traceback
from base64 import b64encode
from datetime import datetime, timedelta
from json import dumps
from platform import system, version
from typing import Any, Mapping, Optional

from Crypto.Cipher import PKCS1_OAEP, AES
from Crypto.PublicKey import RSA
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad
from rich.console import Console

console = Console()

ERROR, WARNING, INFO, DEBUG = 1, 2, 3, 4

LEVEL_STYLES = {
	ERROR: "bold red",
	WARNING: "yellow",
	INFO: "cyan",
	DEBUG: "dim",
}


class RecordCipher:
	"""Hybrid RSA/AES encryption: a fresh AES key per record, wrapped with the public key."""

	def __init__(self, public_key_pem: str):
		self.public_key = RSA.import_key(public_key_pem)

	def encrypt(self, text: str) -> str:
		session_key = get_random_bytes(16)
		aes = AES.new(session_key, AES.MODE_CBC)
		body = aes.encrypt(pad(text.encode("utf-8"), AES.block_size))
		wrapped_key = PKCS1_OAEP.new(self.public_key).encrypt(session_key)
		return b64encode(wrapped_key + aes.iv + body).decode("utf-8")


def _jsonable(value: Any) -> Any:
	if value is None or isinstance(value, (str, int, float, bool)):
		return value
	if isinstance(value, Mapping):
		return {str(key): _jsonable(item) for key, item in value.items()}
	if isinstance(value, (list, tuple, set, frozenset)):
		return [_jsonable(item) for item in value]
	return repr(value)


def _exception_text(exc_info: Any) -> Optional[str]:
	if exc_info is None:
		return None
	if isinstance(exc_info, BaseException):
		exc_info = (type(exc_info), exc_info, exc_info.__traceback__)
	if isinstance(exc_info, tuple) and len(exc_info) == 3:
		return "".join(traceback.format_exception(*exc_info)).rstrip()
	return repr(exc_info)


class Logger:
	"""
	Daily file logger with numeric levels (1 Error ... 4 Debug).

	Each record is one line. With a public key loaded the line is encrypted,
	otherwise embedded newlines are escaped.
	"""

	def __init__(self, app_name: str, file_name: str, file_ending: str = ".log", *, min_level: int = DEBUG,
	             echo: bool = False, retention_days: int = 14):
		self.app_name = app_name
		self.file_name = file_name
		self.file_ending = file_ending

		self.VERSION = "v1.0.0"
		self.LEVELS = {ERROR: "Error", WARNING: "Warning", INFO: "Info", DEBUG: "Debug"}
		self.LOG_TIME_INTERVAL = timedelta(days=retention_days)

		self.min_level = min_level
		self.echo = echo
		self.cipher: RecordCipher | None = None
		self._lock = threading.Lock()
		self._pruned_for: str | None = None

	@property
	def key(self):
		return self.cipher.public_key if self.cipher else None

	def load_public_key(self, key: str):
		self.cipher = RecordCipher(key)

	@staticmethod
	def _timestamp():
		return datetime.now()

	def _get_log_filename(self) -> str:
		return f"{self.file_name}_{self._timestamp().strftime('%Y-%m-%d')}{self.file_ending}"

	def _log_file_header(self) -> str:
		rule = "=" * 60
		return "\n".join([
			rule,
			f"Application Name:    {self.app_name}",
			f"Version:             {self.VERSION}",
			f"Log File Created:    {self._timestamp()}",
			f"Minimum Level:       {self.LEVELS[self.min_level]}",
			f"Encrypted:           {self.cipher is not None}",
			f"Operating System:    [{system()}, {version()}]",
			rule,
		])

	def _build_record(self, level: int, message: str, context: Optional[Mapping[str, Any]],
	                  exc_info: Any) -> str:
		parts = [f"{self._timestamp():%Y-%m-%d %H:%M:%S} - {self.LEVELS[level]}: {message}"]
		if context:
			try:
				parts.append("context=" + dumps(_jsonable(context), ensure_ascii=True))
			except (TypeError, ValueError):
				parts.append(f"context={context!r}")
		exc_text = _exception_text(exc_info)
		if exc_text:
			parts.append(f"exception=\n{exc_text}")
		parts.append(f"thread={threading.current_thread().name}")
		return "\n".join(parts)

	def _seal(self, text: str) -> str:
		if self.cipher is not None:
			return self.cipher.encrypt(text)
		return text.replace("\n", "\\n")

	def _prune_old_files(self) -> None:
		cutoff = self._timestamp() - self.LOG_TIME_INTERVAL
		for path in glob.glob(f"{glob.escape(self.file_name)}_*{self.file_ending}"):
			stamp = path[len(self.file_name) + 1:len(path) - len(self.file_ending)]
			try:
				if datetime.strptime(stamp, "%Y-%m-%d") < cutoff:
					os.remove(path)
			except (ValueError, OSError):
				continue

	def log(self, level: int, message: str, *, context: Optional[Mapping[str, Any]] = None,
	        exc_info: Optional[Any] = None) -> int:
		if level not in self.LEVELS:
			return -1  # Invalid level
		if level > self.min_level:
			return 0  # Filtered

		record = self._build_record(level, message, context, exc_info)
		if self.echo:
			console.print(record, style=LEVEL_STYLES[level], markup=False, highlight=False)

		path = self._get_log_filename()
		try:
			with self._lock:
				directory = os.path.dirname(path)
				if directory:
					os.makedirs(directory, exist_ok=True)
				is_new = not os.path.exists(path)
				with open(path, "a", encoding="utf-8") as f:
					if is_new:
						f.write(self._seal(self._log_file_header()) + "\n")
					f.write(self._seal(record) + "\n")
				if is_new and self._pruned_for != path:
					self._pruned_for = path
					self._prune_old_files()
		except OSError as e:
			console.print(f"Error writing to log file: {e}", markup=False)
			return -2  # File I/O error

		return 1  # Success

	def debug(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> int:
		return self.log(DEBUG, message, context=context)

	def info(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> int:
		return self.log(INFO, message, context=context)

	def warning(self, message: str, *, context: Optional[Mapping[str, Any]] = None,
	            exc_info: Optional[Any] = None) -> int:
		return self.log(WARNING, message, context=context, exc_info=exc_info)

	def error(self, message: str, *, context: Optional[Mapping[str, Any]] = None,
	          exc_info: Optional[Any] = None) -> int:
		return self.log(ERROR, message, context=context, exc_info=exc_info)

	def log_exception(self, message: str, exception: BaseException,
	                  *, context: Optional[Mapping[str, Any]] = None, level: int = ERROR) -> int:
		return self.log(level, message, context=context, exc_info=exception)


def install_global_exception_handlers(app_logger: Logger, loop: asyncio.AbstractEventLoop | None = None) -> None:
	"""Send uncaught errors from the main thread, worker threads and the event loop to the log file."""

	def on_main_thread_error(exc_type, exc_value, exc_traceback):
		if issubclass(exc_type, KeyboardInterrupt):
			sys.__excepthook__(exc_type, exc_value, exc_traceback)
			return
		app_logger.error("Uncaught exception", context={"origin": "main"},
		                 exc_info=(exc_type, exc_value, exc_traceback))

	def on_thread_error(args):
		if issubclass(args.exc_type, KeyboardInterrupt):
			return
		app_logger.error("Uncaught exception", context={"origin": getattr(args.thread, "name", "thread")},
		                 exc_info=(args.exc_type, args.exc_value, args.exc_traceback))

	def on_loop_error(event_loop: asyncio.AbstractEventLoop, details: dict) -> None:
		app_logger.error(
			details.get("message", "Uncaught exception in event loop"),
			context={"origin": "asyncio", **{key: repr(value) for key, value in details.items()
			                                 if key not in ("exception", "message")}},
			exc_info=details.get("exception"),
		)

	sys.excepthook = on_main_thread_error
	threading.excepthook = on_thread_error
	if loop is not None:
		loop.set_exception_handler(on_loop_error)
