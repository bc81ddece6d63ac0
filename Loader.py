# Loader.py
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Iterable

from config import AutomationSettings, POSITIONS, PositionSetting, normalize_position
from errors import (
	CredentialsUnavailable,
	NoEligibleChoice,
	RequestRejected,
	SessionUnavailable,
	TransportError,
)
from utils import DebounceCache

GAMEFLOW_PHASE_PATH = "/lol-gameflow/v1/gameflow-phase"
CHAMP_SELECT_SESSION_PATH = "/lol-champ-select/v1/session"
CHAMP_SELECT_ACTION_PATH = "/lol-champ-select/v1/session/actions/{action_id}"
READY_CHECK_PATH = "/lol-matchmaking/v1/ready-check"
READY_CHECK_ACCEPT_PATH = "/lol-matchmaking/v1/ready-check/accept"

SESSION_DEBOUNCE_KEY = "champ-select:session"
SESSION_DEBOUNCE_MS = 500

# Server messages for champions the account cannot play
UNAVAILABLE_MARKERS = ("is not owned by account", "is not free to play")


class GameflowPhase(str, Enum):
	NONE = "None"
	LOBBY = "Lobby"
	MATCHMAKING = "Matchmaking"
	CHECKED_INTO_TOURNAMENT = "CheckedIntoTournament"
	READY_CHECK = "ReadyCheck"
	CHAMP_SELECT = "ChampSelect"
	GAME_START = "GameStart"
	FAILED_TO_LAUNCH = "FailedToLaunch"
	IN_PROGRESS = "InProgress"
	RECONNECT = "Reconnect"
	WAITING_FOR_STATS = "WaitingForStats"
	PRE_END_OF_GAME = "PreEndOfGame"
	END_OF_GAME = "EndOfGame"
	TERMINATED_IN_ERROR = "TerminatedInError"

	@classmethod
	def _missing_(cls, value):
		return cls.NONE

	@classmethod
	def is_known(cls, value: Any) -> bool:
		return isinstance(value, str) and value in cls._value2member_map_


@dataclass(frozen=True)
class PhaseState:
	current: GameflowPhase = GameflowPhase.NONE
	previous: GameflowPhase | None = None
	entered_at: float | None = None


class PhaseMonitor:
	def __init__(self, gateway, logger, clock: Callable[[], float] = time.monotonic):
		self.gateway = gateway
		self.logger = logger
		self._clock = clock
		self._state = PhaseState()

	@property
	def state(self) -> PhaseState:
		return self._state

	async def get_current_phase(self) -> GameflowPhase:
		raw = await self.gateway.get(GAMEFLOW_PHASE_PATH)
		phase = GameflowPhase(raw) if isinstance(raw, str) else GameflowPhase.NONE
		if phase is GameflowPhase.NONE and not GameflowPhase.is_known(raw):
			self.logger.debug("Unrecognized gameflow phase", context={"raw_phase": raw})

		old = self._state
		if old.entered_at is None or phase is not old.current:
			self._state = PhaseState(
				current=phase,
				previous=old.current if old.entered_at is not None else None,
				entered_at=self._clock(),
			)
		return phase

	def reset(self) -> None:
		self._state = PhaseState()


@dataclass(frozen=True)
class Action:
	id: int
	actor_cell_id: int
	type: str
	champion_id: int = 0
	completed: bool = False
	is_in_progress: bool = False

	@classmethod
	def from_payload(cls, data: dict) -> "Action":
		return cls(
			id=int(data.get("id", -1)),
			actor_cell_id=int(data.get("actorCellId", -1)),
			type=str(data.get("type", "")),
			champion_id=int(data.get("championId") or 0),
			completed=bool(data.get("completed", False)),
			is_in_progress=bool(data.get("isInProgress", False)),
		)


@dataclass(frozen=True)
class TeamMember:
	cell_id: int
	assigned_position: str | None = None
	champion_id: int = 0
	champion_pick_intent: int = 0

	@classmethod
	def from_payload(cls, data: dict) -> "TeamMember":
		return cls(
			cell_id=int(data.get("cellId", -1)),
			assigned_position=normalize_position(data.get("assignedPosition")),
			champion_id=int(data.get("championId") or 0),
			champion_pick_intent=int(data.get("championPickIntent") or 0),
		)


def infer_missing_positions(members: list[TeamMember]) -> list[TeamMember]:
	"""
	Give the one member without a usable position the position nobody else has.

	Only applies to a full team of five where the other four positions are valid
	and distinct; any other shape is returned unchanged.
	"""
	if len(members) != len(POSITIONS):
		return members

	known = [member.assigned_position for member in members if member.assigned_position in POSITIONS]
	unknown = [index for index, member in enumerate(members) if member.assigned_position not in POSITIONS]
	if len(unknown) != 1 or len(set(known)) != len(POSITIONS) - 1:
		return members

	missing = next(position for position in POSITIONS if position not in known)
	inferred = list(members)
	inferred[unknown[0]] = replace(members[unknown[0]], assigned_position=missing)
	return inferred


@dataclass(frozen=True)
class NegotiationSession:
	actions: list[list[Action]] = field(default_factory=list)
	my_team: list[TeamMember] = field(default_factory=list)
	their_team: list[TeamMember] = field(default_factory=list)
	local_player_cell_id: int = -1
	timer_phase: str = ""

	@classmethod
	def from_payload(cls, data: dict) -> "NegotiationSession":
		actions = [[Action.from_payload(action) for action in group] for group in data.get("actions") or []]
		my_team = [TeamMember.from_payload(member) for member in data.get("myTeam") or []]
		their_team = [TeamMember.from_payload(member) for member in data.get("theirTeam") or []]
		return cls(
			actions=actions,
			my_team=infer_missing_positions(my_team),
			their_team=their_team,
			local_player_cell_id=int(data.get("localPlayerCellId", -1)),
			timer_phase=str((data.get("timer") or {}).get("phase", "")),
		)

	def all_actions(self) -> Iterable[Action]:
		for group in self.actions:
			yield from group

	@property
	def local_member(self) -> TeamMember | None:
		for member in self.my_team:
			if member.cell_id == self.local_player_cell_id:
				return member
		return None

	@property
	def local_position(self) -> str | None:
		member = self.local_member
		return member.assigned_position if member else None

	def pending_local_action(self) -> Action | None:
		for action in self.all_actions():
			if action.actor_cell_id == self.local_player_cell_id and action.is_in_progress and not action.completed:
				return action
		return None

	def any_in_progress(self) -> bool:
		return any(action.is_in_progress for action in self.all_actions())

	def first_open_local_pick(self) -> Action | None:
		for action in self.all_actions():
			if action.actor_cell_id == self.local_player_cell_id and action.type == "pick" and not action.completed:
				return action
		return None

	def banned_champions(self) -> set[int]:
		return {action.champion_id for action in self.all_actions()
		        if action.type == "ban" and action.completed and action.champion_id}

	def picked_champions(self) -> set[int]:
		picked = {action.champion_id for action in self.all_actions()
		          if action.type == "pick" and action.completed and action.champion_id}
		for member in [*self.my_team, *self.their_team]:
			if member.cell_id != self.local_player_cell_id and member.champion_id:
				picked.add(member.champion_id)
		return picked

	def teammate_intents(self) -> set[int]:
		return {member.champion_pick_intent for member in self.my_team
		        if member.cell_id != self.local_player_cell_id and member.champion_pick_intent}


@dataclass
class ActionWindow:
	action_id: int
	action_type: str
	started_at: float
	executed: bool = False

	def elapsed_ms(self, now: float) -> float:
		return (now - self.started_at) * 1000

	def remaining_ms(self, now: float, countdown_seconds: int) -> float:
		return max(0.0, countdown_seconds * 1000 - self.elapsed_ms(now))


def _is_unavailable_rejection(error: RequestRejected) -> bool:
	text = error.body_text()
	return any(marker in text for marker in UNAVAILABLE_MARKERS)


class ChampSelectAutomator:
	def __init__(self, gateway, logger, debounce: DebounceCache | None = None,
	             clock: Callable[[], float] = time.monotonic):
		self.gateway = gateway
		self.logger = logger
		self.debounce = debounce if debounce is not None else DebounceCache()
		self._clock = clock

		self.window: ActionWindow | None = None
		self.hover_done = False
		self.unavailable: set[int] = set()
		# Bumped by reset(); a cycle that started under an older value must not act
		self.generation = 0

	def reset(self) -> None:
		self.window = None
		self.hover_done = False
		self.unavailable.clear()
		self.generation += 1
		self.debounce.clear(SESSION_DEBOUNCE_KEY)

	async def read_session(self) -> NegotiationSession:
		try:
			payload = await self.debounce.debounce(
				SESSION_DEBOUNCE_KEY,
				lambda: self.gateway.get(CHAMP_SELECT_SESSION_PATH),
				SESSION_DEBOUNCE_MS,
			)
		except (CredentialsUnavailable, TransportError) as e:
			raise SessionUnavailable(f"Could not read the champion select session: {e}") from e

		if not isinstance(payload, dict):
			raise SessionUnavailable("Champion select session is empty")
		return NegotiationSession.from_payload(payload)

	def ban_candidates(self, session: NegotiationSession, preference: PositionSetting) -> list[int]:
		excluded = session.banned_champions() | session.teammate_intents()
		return [champion for champion in preference.ban_champions if champion and champion not in excluded]

	def pick_candidates(self, session: NegotiationSession, preference: PositionSetting) -> list[int]:
		excluded = session.banned_champions() | session.picked_champions() | self.unavailable
		candidates = [champion for champion in preference.pick_champions if champion and champion not in excluded]

		member = session.local_member
		intent = member.champion_pick_intent if member else 0
		if intent and intent in candidates:
			candidates.remove(intent)
			candidates.insert(0, intent)
		return candidates

	async def evaluate(self, settings: AutomationSettings) -> str:
		"""Run one champion select decision. Returns a short outcome name."""
		generation = self.generation
		try:
			session = await self.read_session()
		except SessionUnavailable as e:
			self.logger.warning("Champion select session unavailable, skipping cycle", context={"reason": str(e)})
			return "session_unavailable"

		if generation != self.generation:
			self.logger.debug("Automator reset while reading the session, discarding cycle")
			return "cancelled"

		pending = session.pending_local_action()
		if pending is None or pending.type not in ("ban", "pick"):
			if self.window is not None:
				self.logger.debug("Local turn ended", context={"action_id": self.window.action_id})
			self.window = None
			if pending is None and not session.any_in_progress():
				await self.hover(session, settings)
			return "idle"

		now = self._clock()
		window = self.window
		if window is None or window.action_type != pending.type or window.action_id != pending.id:
			window = self.window = ActionWindow(pending.id, pending.type, now)
			self.logger.info("Local turn started",
			                 context={"action_id": pending.id, "type": pending.type,
			                          "position": session.local_position})

		if not settings.enabled_for(pending.type):
			return "disabled"

		if window.remaining_ms(now, settings.countdown_for(pending.type)) > 0:
			return "waiting"

		if window.executed:
			return "executed"
		window.executed = True

		preference = settings.position(session.local_position)
		if preference is None:
			self.logger.warning("No preferences for the assigned position",
			                    context={"position": session.local_position, "type": pending.type})
			return "no_settings"

		try:
			champion_id = await self.submit_action(session, pending, preference)
		except NoEligibleChoice as e:
			self.logger.warning(str(e), context={"action_id": pending.id})
			return "no_choice"
		except (CredentialsUnavailable, TransportError) as e:
			self.logger.error("Failed to submit champion select action",
			                  context={"action_id": pending.id, "type": pending.type}, exc_info=e)
			return "failed"

		self.logger.info("Champion select action submitted",
		                 context={"action_id": pending.id, "type": pending.type, "champion_id": champion_id})
		return "submitted"

	async def submit_action(self, session: NegotiationSession, action: Action, preference: PositionSetting) -> int:
		if action.type == "ban":
			candidates = self.ban_candidates(session, preference)
		else:
			candidates = self.pick_candidates(session, preference)

		path = CHAMP_SELECT_ACTION_PATH.format(action_id=action.id)
		for champion_id in candidates:
			try:
				await self.gateway.patch(path, {"championId": champion_id, "completed": True, "type": action.type})
			except RequestRejected as e:
				if not _is_unavailable_rejection(e):
					raise
				self.unavailable.add(champion_id)
				self.logger.info("Champion unavailable, trying the next one",
				                 context={"champion_id": champion_id, "type": action.type})
				continue
			return champion_id

		raise NoEligibleChoice(action.type, session.local_position)

	async def hover(self, session: NegotiationSession, settings: AutomationSettings) -> int | None:
		"""Pre-select the first eligible pick during planning. Best-effort, once per session."""
		if self.hover_done or not settings.auto_hover_enabled or not settings.auto_pick_enabled:
			return None

		action = session.first_open_local_pick()
		preference = settings.position(session.local_position)
		if action is None or preference is None:
			return None

		self.hover_done = True
		generation = self.generation
		path = CHAMP_SELECT_ACTION_PATH.format(action_id=action.id)
		for champion_id in self.pick_candidates(session, preference):
			if generation != self.generation:
				return None
			try:
				await self.gateway.patch(path, {"championId": champion_id, "completed": False, "type": "pick"})
			except RequestRejected as e:
				if _is_unavailable_rejection(e):
					self.unavailable.add(champion_id)
					continue
				self.logger.warning("Hover rejected", context={"champion_id": champion_id, "status": e.status})
				return None
			except (CredentialsUnavailable, TransportError) as e:
				self.logger.warning("Hover failed", context={"champion_id": champion_id, "error": str(e)})
				return None
			self.logger.info("Hovered champion", context={"champion_id": champion_id, "action_id": action.id})
			return champion_id
		return None


class ReadyCheckAcceptor:
	def __init__(self, gateway, logger):
		self.gateway = gateway
		self.logger = logger
		self.accepted = False
		self.generation = 0

	def reset(self) -> None:
		self.accepted = False
		self.generation += 1

	async def run(self, phase: GameflowPhase, settings: AutomationSettings) -> bool:
		if phase is not GameflowPhase.READY_CHECK:
			self.accepted = False
			return False
		if not settings.auto_accept or self.accepted:
			return False

		generation = self.generation
		try:
			state = await self.gateway.get(READY_CHECK_PATH)
		except (CredentialsUnavailable, TransportError) as e:
			self.logger.warning("Could not read ready check state", context={"error": str(e)})
			return False

		if generation != self.generation or not isinstance(state, dict):
			return False
		if state.get("playerResponse") != "None":
			# Already answered, manually or by an earlier cycle
			self.accepted = True
			return False

		self.accepted = True
		try:
			await self.gateway.post(READY_CHECK_ACCEPT_PATH)
		except (CredentialsUnavailable, TransportError) as e:
			self.logger.warning("Ready check accept failed", context={"error": str(e)})
			return False

		self.logger.info("Ready check accepted")
		return True
