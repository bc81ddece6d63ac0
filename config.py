# config.py

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from errors import ConfigValidationError

CONFIG_FILE = "config.ini"  # Name / Path for the config file

POSITIONS = ("top", "jungle", "middle", "bottom", "support")
POSITION_ALIASES = {"utility": "support", "mid": "middle", "bot": "bottom", "adc": "bottom", "sup": "support"}

TRUE_WORDS = ("true", "1", "yes", "on")
FALSE_WORDS = ("false", "0", "no", "off")


@dataclass(frozen=True)
class ConfigValidationIssue:
	section: str
	key: str
	message: str
	reverted_to: str | None = None


def _parse_bool(option: "ConfigOption", text: str) -> bool:
	lowered = text.lower()
	if lowered in TRUE_WORDS:
		return True
	if lowered in FALSE_WORDS:
		return False
	raise ConfigValidationError("Expected a boolean value (true/false).")


def _parse_int(option: "ConfigOption", text: str) -> int:
	try:
		number = int(text)
	except ValueError as exc:
		raise ConfigValidationError("Expected an integer value.") from exc
	if option.min_value is not None and number < option.min_value:
		raise ConfigValidationError(f"Value must be greater than or equal to {option.min_value}.")
	if option.max_value is not None and number > option.max_value:
		raise ConfigValidationError(f"Value must be less than or equal to {option.max_value}.")
	return number


def _parse_champion_ids(option: "ConfigOption", text: str) -> list[int]:
	champion_ids: list[int] = []
	for token in filter(None, (part.strip() for part in text.replace(";", ",").split(","))):
		if not token.isdigit():
			raise ConfigValidationError(f"'{token}' is not a champion id.")
		champion_id = int(token)
		if champion_id == 0:
			raise ConfigValidationError("Champion id must be positive, got 0.")
		if champion_id not in champion_ids:
			champion_ids.append(champion_id)
	return champion_ids


VALUE_PARSERS: dict[str, Callable[["ConfigOption", str], Any]] = {
	"bool": _parse_bool,
	"int": _parse_int,
	"int_list": _parse_champion_ids,
}

EMPTY_ALLOWED = ("str", "int_list")


@dataclass(frozen=True)
class ConfigOption:
	key: str
	default: Any
	description: Sequence[str]
	value_type: str = "str"
	min_value: int | None = None
	max_value: int | None = None
	normalizer: Callable[[str], str] | None = None

	def render_default(self) -> str:
		return self.render(self.default)

	def render(self, value: Any) -> str:
		if self.value_type == "bool":
			return "true" if value else "false"
		if self.value_type == "int":
			return str(int(value))
		if self.value_type == "int_list":
			return ", ".join(str(int(item)) for item in value)
		return str(value)

	def normalize(self, raw_value: str) -> str:
		"""Return the canonical text for ``raw_value`` or raise ConfigValidationError."""
		text = raw_value.strip()
		if not text and self.value_type not in EMPTY_ALLOWED:
			raise ConfigValidationError("Value cannot be empty.")
		if self.normalizer:
			return self.normalizer(text)
		parser = VALUE_PARSERS.get(self.value_type)
		return self.render(parser(self, text)) if parser else text


@dataclass(frozen=True)
class ConfigSection:
	name: str
	options: Sequence[ConfigOption]
	description: Sequence[str] = ()


@dataclass(frozen=True)
class ConfigLoadResult:
	config: configparser.ConfigParser
	issues: Sequence[ConfigValidationIssue]
	created: bool


class ConfigManager:
	"""
	INI file with a fixed schema.

	Missing sections and keys are filled with defaults, invalid values are
	reverted and reported. Keys outside the schema are kept as they are.
	"""

	def __init__(self, path: Path | str, sections: Sequence[ConfigSection]):
		self.path = Path(path)
		self.sections = tuple(sections)

	def load(self) -> ConfigLoadResult:
		created = not self.path.exists()
		if created:
			self._write_with_comments(self._build_defaults_parser())

		parser = configparser.ConfigParser()
		parser.read(self.path, encoding="utf-8")

		issues: list[ConfigValidationIssue] = []
		changed = created
		for section in self.sections:
			if not parser.has_section(section.name):
				parser.add_section(section.name)
				issues.append(ConfigValidationIssue(section.name, "*", "Section missing in file; populated with defaults."))
				changed = True
			for option in section.options:
				issue, rewritten = self._check_option(parser, section.name, option)
				if issue is not None:
					issues.append(issue)
				changed = changed or rewritten

		if changed:
			self._write_with_comments(parser)
		return ConfigLoadResult(config=parser, issues=issues, created=created)

	@staticmethod
	def _check_option(parser: configparser.ConfigParser, section: str,
	                  option: ConfigOption) -> tuple[ConfigValidationIssue | None, bool]:
		current = parser.get(section, option.key, fallback=None)
		if current is None:
			default = option.render_default()
			parser.set(section, option.key, default)
			return ConfigValidationIssue(section, option.key, "Missing entry; default applied.", default), True

		try:
			canonical = option.normalize(current)
		except ConfigValidationError as exc:
			default = option.render_default()
			parser.set(section, option.key, default)
			return ConfigValidationIssue(section, option.key, str(exc), default), True

		if canonical == current.strip():
			return None, False
		parser.set(section, option.key, canonical)
		return None, True

	def _build_defaults_parser(self) -> configparser.ConfigParser:
		parser = configparser.ConfigParser()
		parser.read_dict({
			section.name: {option.key: option.render_default() for option in section.options}
			for section in self.sections
		})
		return parser

	@staticmethod
	def _comment_lines(lines: Sequence[str]) -> list[str]:
		return [f"; {line}" for line in lines]

	def _section_block(self, parser: configparser.ConfigParser, section: ConfigSection) -> list[str]:
		block = self._comment_lines(section.description) + [f"[{section.name}]"]
		known = set()
		for option in section.options:
			known.add(option.key.lower())
			value = parser.get(section.name, option.key, fallback=option.render_default())
			block += self._comment_lines(option.description) + [f"{option.key} = {value}", ""]

		extra = sorted((key, value) for key, value in parser.items(section.name, raw=True) if key not in known)
		if extra:
			block.append("; Additional options preserved by ConfigManager")
			block += [f"{key} = {value}" for key, value in extra]
			block.append("")
		return block

	def _write_with_comments(self, parser: configparser.ConfigParser) -> None:
		blocks = [self._section_block(parser, section) for section in self.sections]

		managed = {section.name for section in self.sections}
		for name in parser.sections():
			if name not in managed:
				blocks.append([f"[{name}]"] + [f"{key} = {value}" for key, value in parser.items(name, raw=True)] + [""])

		text = "\n\n".join("\n".join(block).rstrip() for block in blocks)
		self.path.parent.mkdir(parents=True, exist_ok=True)
		self.path.write_text(text + "\n", encoding="utf-8")

	def save(self, parser: configparser.ConfigParser) -> None:
		self._write_with_comments(parser)


def normalize_position(value: str | None) -> str | None:
	if not value:
		return None
	lowered = str(value).strip().lower()
	lowered = POSITION_ALIASES.get(lowered, lowered)
	return lowered if lowered in POSITIONS else None


def position_section_name(position: str) -> str:
	return f"Position.{position}"


def build_main_config_manager(path: Path | str) -> ConfigManager:
	def normalize_process_name(value: str) -> str:
		trimmed = value.strip()
		if not trimmed or any(sep in trimmed for sep in ("/", "\\")):
			raise ConfigValidationError("Expected a bare process name such as LeagueClientUx.exe.")
		return trimmed

	sections: list[ConfigSection] = [
		ConfigSection(
			name="Main",
			description=(
				"Primary configuration for Warden. Edit values to customize behaviour.",
			),
			options=(
				ConfigOption(
					key="enable_debug_logging",
					default=False,
					value_type="bool",
					description=(
						"Echo every log record to the console and keep Debug records in the log file.",
						"Default = false.",
					),
				),
				ConfigOption(
					key="poll_interval_ms",
					default=2000,
					value_type="int",
					min_value=250,
					max_value=10000,
					description=(
						"Delay between two automation cycles, counted after a cycle finishes.",
						"Allowed range: 250-10000. Default = 2000.",
					),
				),
				ConfigOption(
					key="log_public_key_path",
					default="",
					description=(
						"Optional PEM public key. When set, log records are encrypted with it.",
					),
				),
			),
		),
		ConfigSection(
			name="Connection",
			description=(
				"How Warden finds and talks to the League client.",
			),
			options=(
				ConfigOption(
					key="process_name",
					default="LeagueClientUx.exe",
					description=(
						"Process whose launch arguments carry the control API port and token.",
					),
					normalizer=normalize_process_name,
				),
				ConfigOption(
					key="lockfile_path",
					default="",
					description=(
						"Optional lockfile to read when the process table yields nothing.",
						"Leave empty to rely on the process table only.",
					),
				),
				ConfigOption(
					key="min_request_interval_ms",
					default=100,
					value_type="int",
					min_value=0,
					max_value=5000,
					description=(
						"Minimum spacing between two dispatched requests. Default = 100.",
					),
				),
				ConfigOption(
					key="max_retries",
					default=2,
					value_type="int",
					min_value=0,
					max_value=5,
					description=(
						"Refresh-and-retry attempts after an auth or connection failure. Default = 2.",
					),
				),
				ConfigOption(
					key="retry_delay_ms",
					default=1000,
					value_type="int",
					min_value=0,
					max_value=10000,
					description=(
						"Delay before a retried request is re-issued. Default = 1000.",
					),
				),
				ConfigOption(
					key="request_timeout_seconds",
					default=15,
					value_type="int",
					min_value=1,
					max_value=120,
					description=(
						"Read timeout for one HTTP attempt. Default = 15.",
					),
				),
				ConfigOption(
					key="request_log_dir",
					default="logs/requests",
					description=(
						"Directory for the sequence-numbered request log. Leave empty to keep it in memory only.",
					),
				),
				ConfigOption(
					key="request_log_retention_days",
					default=7,
					value_type="int",
					min_value=0,
					max_value=365,
					description=(
						"Request log files older than this are deleted at startup. 0 keeps everything. Default = 7.",
					),
				),
			),
		),
		ConfigSection(
			name="Automation",
			description=(
				"Champion select and ready check automation.",
			),
			options=(
				ConfigOption(
					key="auto_accept_game",
					default=False,
					value_type="bool",
					description=("Accept the ready check automatically. Default = false.",),
				),
				ConfigOption(
					key="auto_ban_enabled",
					default=False,
					value_type="bool",
					description=("Ban from the position ban list when your ban turn runs out. Default = false.",),
				),
				ConfigOption(
					key="auto_pick_enabled",
					default=False,
					value_type="bool",
					description=("Lock in from the position pick list when your pick turn runs out. Default = false.",),
				),
				ConfigOption(
					key="auto_hover_enabled",
					default=True,
					value_type="bool",
					description=("Hover your first pick during the planning phase. Default = true.",),
				),
				ConfigOption(
					key="auto_ban_countdown",
					default=5,
					value_type="int",
					min_value=0,
					max_value=30,
					description=(
						"Seconds to wait after your ban turn starts before banning.",
						"Allowed range: 0-30. Default = 5.",
					),
				),
				ConfigOption(
					key="auto_pick_countdown",
					default=5,
					value_type="int",
					min_value=0,
					max_value=30,
					description=(
						"Seconds to wait after your pick turn starts before locking in.",
						"Allowed range: 0-30. Default = 5.",
					),
				),
			),
		),
	]

	for position in POSITIONS:
		sections.append(
			ConfigSection(
				name=position_section_name(position),
				description=(f"Preferences when assigned to {position}. Champion ids, in priority order.",),
				options=(
					ConfigOption(
						key="ban_champions",
						default=[],
						value_type="int_list",
						description=("Comma separated champion ids to ban.",),
					),
					ConfigOption(
						key="pick_champions",
						default=[],
						value_type="int_list",
						description=("Comma separated champion ids to pick.",),
					),
				),
			)
		)

	return ConfigManager(path, sections)


def _parse_int_list(raw: str) -> tuple[int, ...]:
	return tuple(int(token) for token in raw.split(",") if token.strip())


@dataclass(frozen=True)
class PositionSetting:
	ban_champions: tuple[int, ...] = ()
	pick_champions: tuple[int, ...] = ()


@dataclass(frozen=True)
class AutomationSettings:
	auto_accept: bool = False
	auto_ban_enabled: bool = False
	auto_pick_enabled: bool = False
	auto_hover_enabled: bool = True
	ban_countdown: int = 5
	pick_countdown: int = 5
	positions: Mapping[str, PositionSetting] = field(default_factory=dict)

	@classmethod
	def from_config(cls, parser: configparser.ConfigParser) -> "AutomationSettings":
		automation = parser["Automation"]
		positions = {}
		for position in POSITIONS:
			section = parser[position_section_name(position)]
			positions[position] = PositionSetting(
				ban_champions=_parse_int_list(section.get("ban_champions", "")),
				pick_champions=_parse_int_list(section.get("pick_champions", "")),
			)
		return cls(
			auto_accept=automation.getboolean("auto_accept_game", fallback=False),
			auto_ban_enabled=automation.getboolean("auto_ban_enabled", fallback=False),
			auto_pick_enabled=automation.getboolean("auto_pick_enabled", fallback=False),
			auto_hover_enabled=automation.getboolean("auto_hover_enabled", fallback=True),
			ban_countdown=automation.getint("auto_ban_countdown", fallback=5),
			pick_countdown=automation.getint("auto_pick_countdown", fallback=5),
			positions=positions,
		)

	def position(self, position: str | None) -> PositionSetting | None:
		if position is None:
			return None
		return self.positions.get(position)

	def countdown_for(self, action_type: str) -> int:
		return self.ban_countdown if action_type == "ban" else self.pick_countdown

	def enabled_for(self, action_type: str) -> bool:
		return self.auto_ban_enabled if action_type == "ban" else self.auto_pick_enabled


class SettingsProvider:
	"""Re-reads the config file whenever it changes on disk and hands out immutable snapshots."""

	def __init__(self, manager: ConfigManager, logger=None):
		self.manager = manager
		self.logger = logger
		self._mtime: float | None = None
		self._settings: AutomationSettings | None = None

	def current(self) -> AutomationSettings:
		try:
			mtime = os.path.getmtime(self.manager.path)
		except OSError:
			mtime = None

		if self._settings is None or mtime != self._mtime:
			result = self.manager.load()
			# load() may rewrite the file, so sample the mtime afterwards
			try:
				self._mtime = os.path.getmtime(self.manager.path)
			except OSError:
				self._mtime = None
			self._settings = AutomationSettings.from_config(result.config)
			if self.logger is not None:
				self.logger.debug(
					"Automation settings reloaded",
					context={"path": str(self.manager.path), "issues": len(result.issues)},
				)
		return self._settings
