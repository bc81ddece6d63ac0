"""
Transport Test Suite

Tests for credential discovery and the queued, retrying request gateway.

Run with: python -m pytest tests/test_riot.py -v
"""

import asyncio
from base64 import b64decode

import pytest
import requests

from errors import AuthExpired, CredentialsUnavailable, GatewayClosed, RequestRejected, TransportUnreachable
from fakes import CLIENT_CMDLINE, FakeResponse, FakeSession, make_credential_store
from Riot import Credentials, RequestGateway, parse_launch_arguments, parse_lockfile
from utils import RequestLog


def make_gateway(logger, responses=None, store=None, **kwargs):
	if store is None:
		store, _ = make_credential_store(logger)
	session = FakeSession(responses)
	kwargs.setdefault("min_interval", 0)
	kwargs.setdefault("retry_delay", 0)
	return RequestGateway(store, logger, session=session, **kwargs), session


# =============================================================================
# LAUNCH ARGUMENT PARSING
# =============================================================================

class TestParseLaunchArguments:

	def test_reads_every_known_argument(self):
		credentials = parse_launch_arguments(CLIENT_CMDLINE)
		assert credentials == Credentials(
			port=52437,
			auth_token="lcu-token_1",
			region="EUW",
			platform_id="EUW1",
			locale="en_GB",
			secondary_port=52100,
			secondary_auth_token="rc-token",
		)
		assert credentials.host == "127.0.0.1"

	def test_accepts_a_single_command_line_string(self):
		credentials = parse_launch_arguments("LeagueClientUx.exe --app-port=1234 --remoting-auth-token=abc")
		assert credentials.port == 1234
		assert credentials.secondary_port is None
		assert credentials.region == ""

	def test_missing_token_is_unavailable(self):
		with pytest.raises(CredentialsUnavailable):
			parse_launch_arguments(["LeagueClientUx.exe", "--app-port=1234"])

	def test_repr_hides_tokens(self):
		assert "lcu-token_1" not in repr(parse_launch_arguments(CLIENT_CMDLINE))

	def test_secondary_endpoint_requires_secondary_credentials(self):
		credentials = Credentials(port=1, auth_token="t")
		with pytest.raises(CredentialsUnavailable):
			credentials.endpoint("secondary")

	def test_lockfile(self):
		credentials = parse_lockfile("LeagueClient:4242:55555:secret:https")
		assert (credentials.port, credentials.auth_token) == (55555, "secret")

	def test_truncated_lockfile(self):
		with pytest.raises(CredentialsUnavailable):
			parse_lockfile("LeagueClient:4242")


# =============================================================================
# CREDENTIAL STORE
# =============================================================================

class TestCredentialStore:

	def test_get_discovers_once_and_caches(self, logger):
		store, table = make_credential_store(logger)
		first = store.get()
		second = store.get()
		assert first is second
		assert table.reads == 1

	def test_refresh_swaps_snapshot(self, logger):
		store, table = make_credential_store(logger)
		old = store.get()
		table.processes = [("LeagueClientUx.exe", ["--app-port=6000", "--remoting-auth-token=fresh"])]
		new = store.refresh()
		assert store.get() is new
		assert (old.port, new.port) == (52437, 6000)
		assert old.auth_token == "lcu-token_1"

	def test_process_name_match_ignores_case_and_extension(self, logger):
		store, _ = make_credential_store(logger, processes=[("leagueclientux", CLIENT_CMDLINE)])
		assert store.get().port == 52437

	def test_other_processes_are_ignored(self, logger):
		store, _ = make_credential_store(logger, processes=[("LeagueClient.exe", CLIENT_CMDLINE)])
		with pytest.raises(CredentialsUnavailable):
			store.get()

	def test_absent_process_is_unavailable(self, logger):
		store, _ = make_credential_store(logger, processes=[])
		with pytest.raises(CredentialsUnavailable):
			store.get()
		assert store.peek() is None

	def test_lockfile_fallback(self, logger, tmp_path):
		lockfile = tmp_path / "lockfile"
		lockfile.write_text("LeagueClient:4242:55555:secret:https", encoding="utf-8")
		store, _ = make_credential_store(logger, processes=[], lockfile_path=lockfile)
		assert store.get().port == 55555


# =============================================================================
# REQUEST GATEWAY
# =============================================================================

class TestRequestGateway:

	def test_returns_decoded_json_with_basic_auth(self, logger):
		gateway, session = make_gateway(logger, [FakeResponse(200, {"displayName": "Teemo"})])

		result = asyncio.run(gateway.get("/lol-summoner/v1/current-summoner"))

		assert result == {"displayName": "Teemo"}
		call = session.calls[0]
		assert call.method == "GET"
		assert call.url == "https://127.0.0.1:52437/lol-summoner/v1/current-summoner"
		assert call.verify is False
		scheme, encoded = call.headers["Authorization"].split(" ")
		assert scheme == "Basic"
		assert b64decode(encoded).decode() == "riot:lcu-token_1"

	def test_patch_sends_json_body(self, logger):
		gateway, session = make_gateway(logger, [FakeResponse(204)])
		body = {"championId": 1, "completed": True, "type": "pick"}

		result = asyncio.run(gateway.patch("/lol-champ-select/v1/session/actions/3", body))

		assert result is None
		assert session.calls[0].method == "PATCH"
		assert session.calls[0].json == body

	def test_binary_returns_raw_bytes(self, logger):
		gateway, _ = make_gateway(logger, [FakeResponse(200, text="PNGDATA", content_type="image/png")])
		assert asyncio.run(gateway.execute_binary("GET", "/lol-game-data/assets/icon.png")) == b"PNGDATA"

	def test_secondary_channel_uses_riot_client_port(self, logger):
		gateway, session = make_gateway(logger)
		asyncio.run(gateway.get("/riotclient/region-locale", channel="secondary"))
		assert session.calls[0].url.startswith("https://127.0.0.1:52100/")
		assert b64decode(session.calls[0].headers["Authorization"].split(" ")[1]).decode() == "riot:rc-token"

	def test_auth_failure_is_retried_at_most_twice(self, logger):
		store, table = make_credential_store(logger)
		gateway, session = make_gateway(logger, [FakeResponse(401)] * 5, store=store, max_retries=2)

		with pytest.raises(AuthExpired) as excinfo:
			asyncio.run(gateway.get("/lol-gameflow/v1/gameflow-phase"))

		assert excinfo.value.status == 401
		assert len(session.calls) == 3
		assert store.refresh_count == 2

	def test_recovers_after_refresh(self, logger):
		store, table = make_credential_store(logger)
		gateway, session = make_gateway(logger, [FakeResponse(403), FakeResponse(200, "Lobby")], store=store)
		store.get()
		table.processes = [("LeagueClientUx.exe", ["--app-port=6000", "--remoting-auth-token=fresh"])]

		assert asyncio.run(gateway.get("/lol-gameflow/v1/gameflow-phase")) == "Lobby"
		assert session.calls[0].url.startswith("https://127.0.0.1:52437/")
		assert session.calls[1].url.startswith("https://127.0.0.1:6000/")

	def test_connection_refused_is_retried_then_raised(self, logger):
		refused = requests.exceptions.ConnectionError("connection refused")
		gateway, session = make_gateway(logger, [refused, refused, refused, refused])

		with pytest.raises(TransportUnreachable):
			asyncio.run(gateway.get("/lol-gameflow/v1/gameflow-phase"))
		assert len(session.calls) == 3

	def test_failed_refresh_does_not_stop_the_retry(self, logger):
		store, table = make_credential_store(logger)
		gateway, session = make_gateway(logger, [FakeResponse(401), FakeResponse(200, "Lobby")], store=store)
		store.get()
		table.processes = []

		assert asyncio.run(gateway.get("/lol-gameflow/v1/gameflow-phase")) == "Lobby"
		assert "Credential refresh failed, retrying with the previous snapshot" in logger.messages(2)

	def test_retry_bound_holds_when_every_refresh_fails(self, logger):
		store, table = make_credential_store(logger)
		gateway, session = make_gateway(logger, [FakeResponse(401)] * 6, store=store, max_retries=2)
		store.get()
		table.processes = []

		with pytest.raises(AuthExpired):
			asyncio.run(gateway.get("/lol-gameflow/v1/gameflow-phase"))

		assert len(session.calls) == 3
		assert store.refresh_count == 2
		assert logger.messages(2).count("Credential refresh failed, retrying with the previous snapshot") == 2

	def test_other_errors_are_not_retried(self, logger):
		gateway, session = make_gateway(logger, [FakeResponse(404, {"message": "No active session"})])

		with pytest.raises(RequestRejected) as excinfo:
			asyncio.run(gateway.get("/lol-champ-select/v1/session"))

		assert excinfo.value.status == 404
		assert excinfo.value.body_text() == "No active session"
		assert len(session.calls) == 1

	def test_missing_client_is_not_retried(self, logger):
		store, _ = make_credential_store(logger, processes=[])
		gateway, session = make_gateway(logger, store=store)

		with pytest.raises(CredentialsUnavailable):
			asyncio.run(gateway.get("/lol-gameflow/v1/gameflow-phase"))
		assert session.calls == []

	def test_dispatches_in_fifo_order_with_spacing(self, logger):
		gateway, session = make_gateway(logger, min_interval=0.05)

		async def scenario():
			await asyncio.gather(*(gateway.get(f"/path/{index}") for index in range(4)))

		asyncio.run(scenario())

		assert [call.url.rsplit("/", 1)[1] for call in session.calls] == ["0", "1", "2", "3"]
		gaps = [later.at - earlier.at for earlier, later in zip(session.calls, session.calls[1:])]
		assert all(gap >= 0.05 for gap in gaps), gaps

	def test_retries_respect_spacing(self, logger):
		gateway, session = make_gateway(logger, [FakeResponse(401), FakeResponse(200, {})], min_interval=0.05)
		asyncio.run(gateway.get("/lol-summoner/v1/current-summoner"))
		assert session.calls[1].at - session.calls[0].at >= 0.05

	def test_every_attempt_is_logged(self, logger, tmp_path):
		request_log = RequestLog(directory=str(tmp_path / "requests"), logger=logger)
		gateway, _ = make_gateway(logger, [FakeResponse(401), FakeResponse(200, {"a": 1})], request_log=request_log)

		asyncio.run(gateway.get("/lol-summoner/v1/current-summoner"))
		request_log.flush()

		assert [(entry.attempt, entry.outcome) for entry in request_log.recent] == [(1, "auth_expired"), (2, "ok")]
		assert (tmp_path / "requests" / "00000001.log").exists()
		assert (tmp_path / "requests" / "00000002.log").exists()
		assert len((tmp_path / "requests-summary.log").read_text(encoding="utf-8").splitlines()) == 2

	def test_close_fails_pending_and_later_callers(self, logger):
		gateway, session = make_gateway(logger, min_interval=10)

		async def scenario():
			await gateway.get("/first")
			pending = asyncio.create_task(gateway.get("/second"))
			await asyncio.sleep(0.05)
			assert gateway.queue_status()["is_processing"]
			await gateway.close()
			with pytest.raises(GatewayClosed):
				await pending
			with pytest.raises(GatewayClosed):
				await gateway.get("/third")

		asyncio.run(scenario())
		assert session.closed
		assert len(session.calls) == 1

	def test_close_shuts_down_the_request_log_writer(self, logger, tmp_path):
		request_log = RequestLog(directory=str(tmp_path / "requests"), logger=logger)
		gateway, _ = make_gateway(logger, request_log=request_log)

		async def scenario():
			await gateway.get("/lol-summoner/v1/current-summoner")
			await gateway.close()

		asyncio.run(scenario())
		assert request_log._writer is None
		assert (tmp_path / "requests" / "00000001.log").exists()

	def test_is_connected(self, logger):
		gateway, _ = make_gateway(logger)
		assert asyncio.run(gateway.is_connected()) is True

		store, _ = make_credential_store(logger, processes=[])
		offline, _ = make_gateway(logger, store=store)
		assert asyncio.run(offline.is_connected()) is False
