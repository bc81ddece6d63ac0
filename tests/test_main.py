"""
Orchestrator Test Suite

Tests for the polling loop, its error containment and the context wiring.

Run with: python -m pytest tests/test_main.py -v
"""

import asyncio
import sys
import threading

import pytest

from config import AutomationSettings, PositionSetting, build_main_config_manager
from errors import CredentialsUnavailable
from fakes import FakeGateway, action, member, session_payload
from Loader import (
	CHAMP_SELECT_SESSION_PATH,
	GAMEFLOW_PHASE_PATH,
	READY_CHECK_ACCEPT_PATH,
	READY_CHECK_PATH,
	ChampSelectAutomator,
	GameflowPhase,
	PhaseMonitor,
	ReadyCheckAcceptor,
)
from main import AppContext, AutomationOrchestrator, build_context, main, run_automation
from utils import DebounceCache, RequestLog


class StaticSettings:
	def __init__(self, settings):
		self.settings = settings

	def current(self):
		return self.settings


def make_context(logger, answers, settings=None):
	gateway = FakeGateway(answers)
	debounce = DebounceCache()
	context = AppContext(
		logger=logger,
		settings=StaticSettings(settings or AutomationSettings(auto_accept=True)),
		credentials=None,
		gateway=gateway,
		debounce=debounce,
		request_log=RequestLog(directory=None),
		phase_monitor=PhaseMonitor(gateway, logger),
		champ_select=ChampSelectAutomator(gateway, logger, debounce),
		ready_check=ReadyCheckAcceptor(gateway, logger),
		poll_interval=0.01,
	)
	return context, gateway


def champ_select_session():
	team = [member(0, "utility"), member(1, "top"), member(2, "jungle"), member(3, "middle"), member(4, "bottom")]
	return session_payload([[action(10, 0, "pick", in_progress=True)]], team)


@pytest.fixture
def restore_hooks(monkeypatch):
	monkeypatch.setattr(sys, "excepthook", sys.excepthook)
	monkeypatch.setattr(threading, "excepthook", threading.excepthook)


class TestAutomationOrchestrator:

	def test_champ_select_cycle_reads_the_session(self, logger):
		context, gateway = make_context(logger, {
			GAMEFLOW_PHASE_PATH: "ChampSelect",
			CHAMP_SELECT_SESSION_PATH: champ_select_session(),
		})
		orchestrator = AutomationOrchestrator(context)

		assert asyncio.run(orchestrator.tick()) is GameflowPhase.CHAMP_SELECT
		assert gateway.calls_for("GET", CHAMP_SELECT_SESSION_PATH)
		assert context.champ_select.window.action_id == 10
		assert "Gameflow phase changed" in logger.messages(3)

	def test_leaving_champ_select_resets_the_automator(self, logger):
		context, gateway = make_context(logger, {
			GAMEFLOW_PHASE_PATH: "ChampSelect",
			CHAMP_SELECT_SESSION_PATH: champ_select_session(),
		})
		orchestrator = AutomationOrchestrator(context)
		asyncio.run(orchestrator.tick())

		gateway.answers[GAMEFLOW_PHASE_PATH] = "InProgress"
		assert asyncio.run(orchestrator.tick()) is GameflowPhase.IN_PROGRESS
		assert context.champ_select.window is None

	def test_ready_check_is_accepted(self, logger):
		context, gateway = make_context(logger, {
			GAMEFLOW_PHASE_PATH: "ReadyCheck",
			READY_CHECK_PATH: {"playerResponse": "None"},
		})
		asyncio.run(AutomationOrchestrator(context).tick())
		assert gateway.calls_for("POST", READY_CHECK_ACCEPT_PATH)

	def test_missing_client_is_contained(self, logger):
		context, gateway = make_context(logger, {GAMEFLOW_PHASE_PATH: CredentialsUnavailable("not running")})
		orchestrator = AutomationOrchestrator(context)

		assert asyncio.run(orchestrator.tick()) is None
		assert "League client not available" in logger.messages(4)

		gateway.answers[GAMEFLOW_PHASE_PATH] = "Lobby"
		assert asyncio.run(orchestrator.tick()) is GameflowPhase.LOBBY

	def test_unexpected_errors_are_contained(self, logger):
		context, _ = make_context(logger, {GAMEFLOW_PHASE_PATH: RuntimeError("boom")})
		assert asyncio.run(AutomationOrchestrator(context).tick()) is None
		assert "Automation cycle failed" in logger.messages(1)

	def test_run_once(self, logger):
		context, gateway = make_context(logger, {GAMEFLOW_PHASE_PATH: "Lobby"})
		orchestrator = AutomationOrchestrator(context)
		asyncio.run(orchestrator.run(once=True))
		assert orchestrator.cycles == 1
		assert len(gateway.calls_for("GET", GAMEFLOW_PHASE_PATH)) == 1

	def test_stop_ends_the_loop_and_resets_state(self, logger):
		context, gateway = make_context(logger, {
			GAMEFLOW_PHASE_PATH: "ChampSelect",
			CHAMP_SELECT_SESSION_PATH: champ_select_session(),
		})
		orchestrator = AutomationOrchestrator(context)

		async def scenario():
			task = asyncio.create_task(orchestrator.run())
			await asyncio.sleep(0.05)
			orchestrator.stop()
			await asyncio.wait_for(task, 1)

		asyncio.run(scenario())

		assert orchestrator.stopped
		assert orchestrator.cycles >= 2
		assert context.phase_monitor.state.current is GameflowPhase.NONE
		assert context.champ_select.window is None
		assert context.ready_check.accepted is False

	def test_stop_during_a_cycle_prevents_the_action(self, logger):
		settings = AutomationSettings(
			auto_pick_enabled=True,
			pick_countdown=0,
			positions={"support": PositionSetting(pick_champions=(103,))},
		)
		context, gateway = make_context(logger, {GAMEFLOW_PHASE_PATH: "ChampSelect"}, settings)
		orchestrator = AutomationOrchestrator(context)
		session = champ_select_session()

		def stop_then_answer(body):
			orchestrator.stop()
			return session

		gateway.answers[CHAMP_SELECT_SESSION_PATH] = stop_then_answer

		asyncio.run(orchestrator.tick())

		assert orchestrator.stopped
		assert gateway.calls_for("PATCH") == []
		assert context.champ_select.window is None

	def test_run_automation_closes_the_gateway(self, logger, restore_hooks):
		context, gateway = make_context(logger, {GAMEFLOW_PHASE_PATH: "Lobby"})
		asyncio.run(run_automation(context, once=True))
		assert gateway.closed


class TestBuildContext:

	def test_wires_config_values(self, logger, tmp_path):
		manager = build_main_config_manager(tmp_path / "config.ini")
		parser = manager.load().config
		parser.set("Connection", "min_request_interval_ms", "250")
		parser.set("Connection", "request_log_dir", "")
		parser.set("Position.top", "pick_champions", "17")
		manager.save(parser)

		context = build_context(manager.load(), manager, logger)

		assert context.gateway.min_interval == 0.25
		assert context.gateway.max_retries == 2
		assert context.gateway.retry_delay == 1.0
		assert context.gateway.timeout == (5, 15)
		assert context.request_log.directory is None
		assert context.request_log.retention_days == 7
		assert context.poll_interval == 2.0
		assert context.credentials.process_name == "LeagueClientUx.exe"
		assert context.settings.current().position("top") == PositionSetting(pick_champions=(17,))


class TestCli:

	def test_version(self, capsys):
		assert main(["--version"]) == 0
		assert "Warden Version" in capsys.readouterr().out
