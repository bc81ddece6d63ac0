# Riot.py

import asyncio
import re
import time
from base64 import b64encode
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Sequence

import psutil
import requests
from requests.adapters import HTTPAdapter
from urllib3 import disable_warnings
from urllib3.exceptions import InsecureRequestWarning
from urllib3.util.retry import Retry  # noqa | Ignore, should work fine

# Local Imports
from errors import (
	AuthExpired,
	CredentialsUnavailable,
	GatewayClosed,
	RequestRejected,
	TransportError,
	TransportUnreachable,
)
from utils import DebounceCache, RequestLog

LOCAL_HOST = "127.0.0.1"
LCU_USERNAME = "riot"
DEFAULT_PROCESS_NAME = "LeagueClientUx.exe"

PRIMARY = "primary"
SECONDARY = "secondary"

REQUEST_TIMEOUT = (5, 15)  # (connect timeout, read timeout)

ARGUMENT_PATTERNS = {
	"port": re.compile(r"--app-port=(\d+)"),
	"auth_token": re.compile(r"--remoting-auth-token=([\w-]+)"),
	"region": re.compile(r"--region=([\w-]+)"),
	"platform_id": re.compile(r"--rso_platform_id=([\w-]+)"),
	"locale": re.compile(r"--locale=([\w-]+)"),
	"secondary_port": re.compile(r"--riotclient-app-port=(\d+)"),
	"secondary_auth_token": re.compile(r"--riotclient-auth-token=([\w-]+)"),
}


@dataclass(frozen=True)
class Credentials:
	port: int
	auth_token: str
	region: str = ""
	platform_id: str = ""
	locale: str = ""
	secondary_port: int | None = None
	secondary_auth_token: str | None = None
	host: str = LOCAL_HOST

	def endpoint(self, channel: str = PRIMARY) -> tuple[int, str]:
		if channel == PRIMARY:
			return self.port, self.auth_token
		if channel == SECONDARY:
			if not self.secondary_port or not self.secondary_auth_token:
				raise CredentialsUnavailable("Riot Client port/token missing from the launch arguments")
			return self.secondary_port, self.secondary_auth_token
		raise ValueError(f"Unknown request channel '{channel}'")

	def __repr__(self) -> str:
		# Never leak tokens into logs
		return (f"Credentials(host={self.host!r}, port={self.port}, region={self.region!r}, "
		        f"platform_id={self.platform_id!r}, locale={self.locale!r}, secondary_port={self.secondary_port})")


def parse_launch_arguments(arguments: Sequence[str] | str) -> Credentials:
	"""Build a Credentials snapshot out of the client's command line."""
	command_line = arguments if isinstance(arguments, str) else " ".join(arguments)

	found: dict[str, str] = {}
	for name, pattern in ARGUMENT_PATTERNS.items():
		match = pattern.search(command_line)
		if match:
			found[name] = match.group(1)

	if "port" not in found or "auth_token" not in found:
		raise CredentialsUnavailable("Could not find --app-port / --remoting-auth-token in the client arguments")

	try:
		port = int(found["port"])
		secondary_port = int(found["secondary_port"]) if "secondary_port" in found else None
	except ValueError as e:
		raise CredentialsUnavailable(f"Unparsable port in the client arguments: {e}") from e

	return Credentials(
		port=port,
		auth_token=found["auth_token"],
		region=found.get("region", ""),
		platform_id=found.get("platform_id", ""),
		locale=found.get("locale", ""),
		secondary_port=secondary_port,
		secondary_auth_token=found.get("secondary_auth_token"),
	)


def parse_lockfile(lockfile_data: str) -> Credentials:
	# Format: 'Process:PID:Port:Password:Protocol'
	parts = lockfile_data.strip().split(":")
	if len(parts) < 5:
		raise CredentialsUnavailable("Lockfile is incomplete")
	try:
		port = int(parts[2])
	except ValueError as e:
		raise CredentialsUnavailable(f"Unparsable port in lockfile: {parts[2]!r}") from e
	return Credentials(port=port, auth_token=parts[3])


def _same_process_name(candidate: str | None, wanted: str) -> bool:
	if not candidate:
		return False
	candidate = candidate.lower()
	wanted = wanted.lower()
	return candidate == wanted or candidate.removesuffix(".exe") == wanted.removesuffix(".exe")


def iter_processes() -> Iterable[tuple[str, list[str]]]:
	# With attrs given, psutil skips vanished processes and fills denied fields with None
	for proc in psutil.process_iter(["name", "cmdline"]):
		yield proc.info.get("name") or "", proc.info.get("cmdline") or []


class CredentialStore:
	"""
	Discovers the control API port and token from the running League client.

	The cached snapshot is an immutable Credentials object that is replaced in a
	single assignment, so a request that captured the old snapshot keeps using it
	until it finishes.
	"""

	def __init__(self, logger, process_name: str = DEFAULT_PROCESS_NAME, lockfile_path: str | Path | None = None,
	             process_source: Callable[[], Iterable[tuple[str, list[str]]]] = iter_processes):
		self.logger = logger
		self.process_name = process_name
		self.lockfile_path = Path(lockfile_path) if lockfile_path else None
		self.process_source = process_source

		self._snapshot: Credentials | None = None
		self.refresh_count = 0

	def peek(self) -> Credentials | None:
		return self._snapshot

	def get(self) -> Credentials:
		snapshot = self._snapshot
		if snapshot is None:
			snapshot = self._discover()
			self._snapshot = snapshot
		return snapshot

	def refresh(self) -> Credentials:
		self.refresh_count += 1
		snapshot = self._discover()
		changed = snapshot != self._snapshot
		self._snapshot = snapshot
		self.logger.info(
			"Credentials refreshed",
			context={"port": snapshot.port, "changed": changed, "refresh_count": self.refresh_count},
		)
		return snapshot

	def _discover(self) -> Credentials:
		try:
			return self._discover_from_processes()
		except CredentialsUnavailable as process_error:
			if self.lockfile_path is None:
				raise
			self.logger.debug("Process table lookup failed, trying lockfile",
			                  context={"lockfile_path": str(self.lockfile_path), "reason": str(process_error)})
			return self._discover_from_lockfile()

	def _discover_from_processes(self) -> Credentials:
		try:
			candidates = [cmdline for name, cmdline in self.process_source()
			              if _same_process_name(name, self.process_name)]
		except (psutil.Error, OSError) as e:
			raise CredentialsUnavailable(f"Unable to read the process table: {e}") from e

		if not candidates:
			raise CredentialsUnavailable(f"{self.process_name} is not running")

		last_error: CredentialsUnavailable | None = None
		for cmdline in candidates:
			try:
				credentials = parse_launch_arguments(cmdline)
			except CredentialsUnavailable as e:
				last_error = e
				continue
			self.logger.debug("Discovered League client credentials", context={"credentials": repr(credentials)})
			return credentials
		raise last_error

	def _discover_from_lockfile(self) -> Credentials:
		try:
			lockfile_data = self.lockfile_path.read_text(encoding="utf-8", errors="ignore")
		except OSError as e:
			raise CredentialsUnavailable(f"League client lockfile unreadable: {e}") from e
		return parse_lockfile(lockfile_data)


@dataclass
class QueuedRequest:
	method: str
	path: str
	body: Any = None
	params: Mapping[str, Any] | None = None
	channel: str = PRIMARY
	binary: bool = False
	future: asyncio.Future | None = None


def create_session() -> requests.Session:
	session = requests.Session()
	# Retries are owned by the gateway so the attempt count stays exact
	retry = Retry(total=0, connect=0, read=0, redirect=0, raise_on_status=False)
	adapter = HTTPAdapter(max_retries=retry, pool_connections=2, pool_maxsize=2)
	session.mount("https://", adapter)
	session.verify = False
	return session


class RequestGateway:
	"""
	Single entry point to the local control API.

	Requests are queued FIFO and dispatched one at a time, spaced by at least
	``min_interval`` seconds. Auth and connection failures trigger a credential
	refresh and a bounded number of retries.
	"""

	def __init__(self, credentials: CredentialStore, logger, *, session=None, request_log: RequestLog | None = None,
	             debounce: DebounceCache | None = None, min_interval: float = 0.1, max_retries: int = 2,
	             retry_delay: float = 1.0, timeout=REQUEST_TIMEOUT, clock: Callable[[], float] = time.monotonic):
		self.credentials = credentials
		self.logger = logger
		self.session = session if session is not None else create_session()
		self.request_log = request_log
		self.debounce = debounce
		self.min_interval = min_interval
		self.max_retries = max_retries
		self.retry_delay = retry_delay
		self.timeout = timeout
		self._clock = clock

		self._queue: asyncio.Queue[QueuedRequest] | None = None
		self._worker: asyncio.Task | None = None
		self._current: QueuedRequest | None = None
		self._last_request_at: float | None = None
		self._closed = False

		disable_warnings(InsecureRequestWarning)  # noqa

	async def execute(self, method: str, path: str, *, body: Any = None, params: Mapping[str, Any] | None = None,
	                  channel: str = PRIMARY) -> Any:
		return await self._enqueue(QueuedRequest(method.upper(), path, body, params, channel))

	async def execute_binary(self, method: str, path: str, *, params: Mapping[str, Any] | None = None,
	                         channel: str = PRIMARY) -> bytes:
		return await self._enqueue(QueuedRequest(method.upper(), path, None, params, channel, binary=True))

	async def get(self, path: str, **kwargs) -> Any:
		return await self.execute("GET", path, **kwargs)

	async def post(self, path: str, body: Any = None, **kwargs) -> Any:
		return await self.execute("POST", path, body=body, **kwargs)

	async def patch(self, path: str, body: Any = None, **kwargs) -> Any:
		return await self.execute("PATCH", path, body=body, **kwargs)

	async def put(self, path: str, body: Any = None, **kwargs) -> Any:
		return await self.execute("PUT", path, body=body, **kwargs)

	async def delete(self, path: str, **kwargs) -> Any:
		return await self.execute("DELETE", path, **kwargs)

	async def is_connected(self) -> bool:
		async def check() -> bool:
			try:
				await self.execute("GET", "/lol-summoner/v1/current-summoner")
				return True
			except (CredentialsUnavailable, TransportError) as e:
				self.logger.debug("Connection check failed", context={"reason": str(e)})
				return False

		if self.debounce is None:
			return await check()
		return await self.debounce.debounce("gateway:is_connected", check, 3000)

	def queue_status(self) -> dict[str, Any]:
		return {
			"queue_length": self._queue.qsize() if self._queue is not None else 0,
			"is_processing": self._current is not None,
			"last_request_at": self._last_request_at,
		}

	async def close(self) -> None:
		self._closed = True
		in_flight = self._current
		if self._worker is not None:
			self._worker.cancel()
			try:
				await self._worker
			except asyncio.CancelledError:
				pass
			self._worker = None

		pending = [in_flight] if in_flight is not None else []
		if self._queue is not None:
			while not self._queue.empty():
				pending.append(self._queue.get_nowait())
		for request in pending:
			if request.future is not None and not request.future.done():
				request.future.set_exception(GatewayClosed(f"Gateway closed before {request.method} {request.path}"))
		self._current = None
		self.session.close()
		if self.request_log is not None:
			await asyncio.to_thread(self.request_log.close)

	async def _enqueue(self, request: QueuedRequest) -> Any:
		if self._closed:
			raise GatewayClosed(f"Gateway closed, refusing {request.method} {request.path}")
		request.future = asyncio.get_running_loop().create_future()
		self._ensure_worker()
		self._queue.put_nowait(request)
		return await request.future

	def _ensure_worker(self) -> None:
		if self._worker is None or self._worker.done():
			# A fresh queue binds to the running loop
			if self._queue is None or self._queue.empty():
				self._queue = asyncio.Queue()
			self._worker = asyncio.create_task(self._drain(), name="request-gateway")

	async def _drain(self) -> None:
		while True:
			request = await self._queue.get()
			self._current = request
			try:
				if request.future.done():
					continue  # Caller went away
				try:
					result = await self._dispatch_with_retry(request)
				except Exception as e:
					if not request.future.done():
						request.future.set_exception(e)
				else:
					if not request.future.done():
						request.future.set_result(result)
			finally:
				self._current = None
				self._queue.task_done()

	async def _dispatch_with_retry(self, request: QueuedRequest) -> Any:
		attempt = 0
		while True:
			attempt += 1
			try:
				return await self._attempt(request, attempt)
			except (AuthExpired, TransportUnreachable) as e:
				if attempt > self.max_retries:
					self.logger.warning(
						"Request failed after refreshing credentials",
						context={"method": request.method, "path": request.path, "attempts": attempt,
						         "error": str(e)},
					)
					raise
				self.logger.info(
					f"Request failed, refreshing credentials and retrying ({attempt}/{self.max_retries})",
					context={"method": request.method, "path": request.path, "error": type(e).__name__},
				)
				await self._refresh_credentials()
				await asyncio.sleep(self.retry_delay)

	async def _refresh_credentials(self) -> None:
		try:
			await asyncio.to_thread(self.credentials.refresh)
		except CredentialsUnavailable as e:
			self.logger.warning("Credential refresh failed, retrying with the previous snapshot",
			                    context={"reason": str(e)})

	async def _credentials_snapshot(self) -> Credentials:
		snapshot = self.credentials.peek()
		if snapshot is None:
			snapshot = await asyncio.to_thread(self.credentials.get)
		return snapshot

	async def _wait_for_slot(self) -> None:
		if self._last_request_at is None:
			return
		while True:
			remaining = self.min_interval - (self._clock() - self._last_request_at)
			if remaining <= 0:
				return
			await asyncio.sleep(remaining)

	def _send(self, request: QueuedRequest, url: str, token: str) -> requests.Response:
		password = b64encode(f"{LCU_USERNAME}:{token}".encode("ASCII")).decode()
		headers = {
			"Authorization": f"Basic {password}",
			"Accept": "*/*" if request.binary else "application/json",
		}
		return self.session.request(request.method, url, params=request.params, json=request.body, headers=headers,
		                            verify=False, timeout=self.timeout)

	async def _attempt(self, request: QueuedRequest, attempt: int) -> Any:
		snapshot = await self._credentials_snapshot()
		port, token = snapshot.endpoint(request.channel)
		url = f"https://{snapshot.host}:{port}{request.path}"

		await self._wait_for_slot()
		started = self._clock()
		try:
			response = await asyncio.to_thread(self._send, request, url, token)
		except requests.exceptions.ConnectionError as e:
			self._record(request, url, attempt, "unreachable", started, error=str(e))
			raise TransportUnreachable(url, str(e)) from e
		except requests.exceptions.RequestException as e:
			self._record(request, url, attempt, "error", started, error=str(e))
			raise TransportError(f"{request.method} {url} failed: {e}") from e
		finally:
			self._last_request_at = self._clock()

		status = response.status_code
		content_type = response.headers.get("Content-Type") if response.headers is not None else None

		if status in (401, 403):
			self._record(request, url, attempt, "auth_expired", started, status, content_type, response=response.text)
			raise AuthExpired(status, url)

		if not 200 <= status < 300:
			body = self._decode_error_body(response)
			self._record(request, url, attempt, "rejected", started, status, content_type, response=body)
			if status != 404:
				self.logger.warning(
					"API request returned non-success status",
					context={"status_code": status, "url": url, "method": request.method,
					         "payload": repr(request.body), "response_preview": str(body)[:400]},
				)
			raise RequestRejected(status, body, url)

		if request.binary:
			self._record(request, url, attempt, "ok", started, status, content_type, response=response.content)
			return response.content

		if not response.content:
			self._record(request, url, attempt, "ok", started, status, content_type)
			return None

		try:
			data = response.json()
		except ValueError as e:
			self._record(request, url, attempt, "undecodable", started, status, content_type, error=str(e),
			             response=response.text)
			raise RequestRejected(status, response.text, url) from e

		self._record(request, url, attempt, "ok", started, status, content_type, response=data)
		return data

	@staticmethod
	def _decode_error_body(response) -> Any:
		try:
			return response.json()
		except ValueError:
			return response.text

	def _record(self, request: QueuedRequest, url: str, attempt: int, outcome: str, started: float,
	            status: int | None = None, content_type: str | None = None, *, error: str | None = None,
	            response: Any = None) -> None:
		if self.request_log is None:
			return
		self.request_log.record(
			method=request.method,
			url=url,
			channel=request.channel,
			attempt=attempt,
			outcome=outcome,
			status_code=status,
			elapsed_ms=(self._clock() - started) * 1000,
			content_type=content_type,
			error=error,
			response=response,
		)
