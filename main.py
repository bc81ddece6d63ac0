VERSION = "v1.0.0"

import argparse
import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.panel import Panel

from Loader import ChampSelectAutomator, GameflowPhase, PhaseMonitor, ReadyCheckAcceptor
from Logger import Logger, install_global_exception_handlers
from Riot import CredentialStore, RequestGateway
from config import CONFIG_FILE, ConfigLoadResult, ConfigManager, SettingsProvider, build_main_config_manager
from errors import CredentialsUnavailable
from utils import DebounceCache, RequestLog

console = Console()

BANNER = """
[dark_red]██     ██  █████  ██████  ██████  ███████ ███    ██[/dark_red]
[red]██     ██ ██   ██ ██   ██ ██   ██ ██      ████   ██[/red]
[red]██  █  ██ ███████ ██████  ██   ██ █████   ██ ██  ██[/red]
[dark_magenta]██ ███ ██ ██   ██ ██   ██ ██   ██ ██      ██  ██ ██[/dark_magenta]
[bright_magenta] ███ ███  ██   ██ ██   ██ ██████  ███████ ██   ████[/bright_magenta]
"""


@dataclass
class AppContext:
	logger: Logger
	settings: SettingsProvider
	credentials: CredentialStore
	gateway: RequestGateway
	debounce: DebounceCache
	request_log: RequestLog
	phase_monitor: PhaseMonitor
	champ_select: ChampSelectAutomator
	ready_check: ReadyCheckAcceptor
	poll_interval: float = 2.0


def build_context(config_result: ConfigLoadResult, manager: ConfigManager, logger: Logger) -> AppContext:
	config = config_result.config
	config_main = config["Main"]
	connection = config["Connection"]

	credentials = CredentialStore(
		logger,
		process_name=connection.get("process_name", "LeagueClientUx.exe"),
		lockfile_path=connection.get("lockfile_path", "").strip() or None,
	)

	request_log = RequestLog(
		directory=connection.get("request_log_dir", "").strip() or None,
		logger=logger,
		retention_days=connection.getint("request_log_retention_days", fallback=7),
	)

	debounce = DebounceCache()
	gateway = RequestGateway(
		credentials,
		logger,
		request_log=request_log,
		debounce=debounce,
		min_interval=connection.getint("min_request_interval_ms", fallback=100) / 1000,
		max_retries=connection.getint("max_retries", fallback=2),
		retry_delay=connection.getint("retry_delay_ms", fallback=1000) / 1000,
		timeout=(5, connection.getint("request_timeout_seconds", fallback=15)),
	)

	return AppContext(
		logger=logger,
		settings=SettingsProvider(manager, logger),
		credentials=credentials,
		gateway=gateway,
		debounce=debounce,
		request_log=request_log,
		phase_monitor=PhaseMonitor(gateway, logger),
		champ_select=ChampSelectAutomator(gateway, logger, debounce),
		ready_check=ReadyCheckAcceptor(gateway, logger),
		poll_interval=config_main.getint("poll_interval_ms", fallback=2000) / 1000,
	)


class AutomationOrchestrator:
	"""
	Polls the gameflow phase and drives the automations for it.

	The next cycle is scheduled only after the previous one has finished, so
	cycles never overlap.
	"""

	def __init__(self, context: AppContext):
		self.context = context
		self.logger = context.logger
		self._stop_event = asyncio.Event()
		self._waiting_for_client = False
		self.cycles = 0

	@property
	def stopped(self) -> bool:
		return self._stop_event.is_set()

	async def run(self, once: bool = False) -> None:
		self.logger.info("Automation loop started", context={"poll_interval": self.context.poll_interval})
		while not self.stopped:
			await self.tick()
			if once:
				break
			try:
				await asyncio.wait_for(self._stop_event.wait(), timeout=self.context.poll_interval)
			except asyncio.TimeoutError:
				pass
		self.logger.info("Automation loop finished", context={"cycles": self.cycles})

	async def tick(self) -> GameflowPhase | None:
		ctx = self.context
		self.cycles += 1
		try:
			settings = ctx.settings.current()
			previous = ctx.phase_monitor.state.current
			phase = await ctx.phase_monitor.get_current_phase()
			if self.stopped:
				ctx.phase_monitor.reset()  # Stopped mid-cycle, discard
				return None

			if self._waiting_for_client:
				self._waiting_for_client = False
				console.print("[bold green]Connected to the League client.[/bold green]")

			if phase is not previous:
				self.logger.info("Gameflow phase changed", context={"from": previous.value, "to": phase.value})
				console.print(f"[cyan]Phase:[/cyan] {previous.value} -> [bold]{phase.value}[/bold]")

			await ctx.ready_check.run(phase, settings)
			if self.stopped:
				return None

			if phase is GameflowPhase.CHAMP_SELECT:
				await ctx.champ_select.evaluate(settings)
			else:
				ctx.champ_select.reset()
			return phase

		except CredentialsUnavailable as e:
			if not self._waiting_for_client:
				self._waiting_for_client = True
				console.print("[yellow]Waiting for the League client...[/yellow]")
			self.logger.debug("League client not available", context={"reason": str(e)})
		except Exception as e:
			self.logger.error("Automation cycle failed", context={"cycle": self.cycles}, exc_info=e)
		return None

	def stop(self) -> None:
		self._stop_event.set()
		self.context.phase_monitor.reset()
		self.context.champ_select.reset()
		self.context.ready_check.reset()
		self.logger.info("Automation stopped")


def main_display():
	"""Display the main banner and version information."""
	banner = Panel(
		f"[cyan bold]{BANNER}[/cyan bold]",
		title="Welcome",
		title_align="left",
		border_style="blue",
	)
	console.print(banner)

	version_info = f"[bold cyan]Version:[/bold cyan] [green]{VERSION}[/green]"
	console.print(version_info)


def report_config_issues(config_result: ConfigLoadResult, config_path: str, logger: Logger) -> None:
	if config_result.created:
		console.print(Panel(f"Created default configuration at '{config_path}'.", style="bold green"))
		logger.info("Created default configuration file", context={"path": config_path})

	if not config_result.issues:
		logger.debug("Configuration loaded successfully without adjustments.")
		return

	logger.warning(
		"Configuration issues detected and adjusted",
		context={"issue_count": len(config_result.issues)},
	)
	console.rule("[bold yellow]Configuration Adjustments[/bold yellow]")
	for issue in config_result.issues:
		key_path = f"{issue.section}.{issue.key}" if issue.key != "*" else issue.section
		console.print(f"[yellow]{key_path}[/yellow]: {issue.message}")
		logger.debug(
			"Configuration setting adjusted",
			context={
				"section": issue.section,
				"key": issue.key,
				"message": issue.message,
				"reverted_to": issue.reverted_to,
			},
		)
		if issue.reverted_to is not None:
			console.print(f"  Using value: {issue.reverted_to}")
	console.print(Panel("Update the config file to apply your preferred values.", style="bold yellow"))


async def run_automation(context: AppContext, once: bool = False) -> None:
	install_global_exception_handlers(context.logger, asyncio.get_running_loop())
	orchestrator = AutomationOrchestrator(context)
	try:
		await orchestrator.run(once=once)
	finally:
		orchestrator.stop()
		await context.gateway.close()


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(prog="warden", add_help=True)
	parser.add_argument("--debug", action="store_true", help="Enable debug mode")
	parser.add_argument("--config", default=CONFIG_FILE, help="Path to the config file")
	parser.add_argument("--once", action="store_true", help="Run a single automation cycle and exit")
	parser.add_argument("--version", action="store_true", help="Show version and exit")
	args = parser.parse_args(argv)

	if args.version:
		console.print(f"Warden Version: {VERSION}")
		return 0

	main_display()

	config_manager = build_main_config_manager(args.config)
	config_result = config_manager.load()
	config_main = config_result.config["Main"]
	debug = args.debug or config_main.getboolean("enable_debug_logging", fallback=False)

	logger = Logger("Warden", "logs/Warden", ".log", min_level=4 if debug else 3, echo=debug)
	key_path = config_main.get("log_public_key_path", "").strip()
	if key_path:
		try:
			logger.load_public_key(Path(key_path).read_text(encoding="utf-8"))
		except (OSError, ValueError) as e:
			console.print(Panel(f"Could not load log public key '{key_path}': {e}", style="bold red"))
	install_global_exception_handlers(logger)

	logger.debug(
		"Runtime arguments resolved",
		context={"debug_flag": args.debug, "config": args.config, "once": args.once, "debug": debug},
	)
	report_config_issues(config_result, args.config, logger)

	context = build_context(config_result, config_manager, logger)
	try:
		asyncio.run(run_automation(context, once=args.once))
	except KeyboardInterrupt:
		console.print("[bold yellow]Exiting...[/bold yellow]")
	return 0


if __name__ == "__main__":
	sys.exit(main())
