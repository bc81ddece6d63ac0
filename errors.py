# errors.py

from typing import Any


class WardenError(Exception):
	"""Base class for every error raised by Warden."""


class CredentialsUnavailable(WardenError):
	"""The League client process is not running or its launch arguments are unusable."""


class TransportError(WardenError):
	"""A request to the local control API could not be completed."""


class AuthExpired(TransportError):
	def __init__(self, status: int, url: str = ""):
		self.status = status
		self.url = url
		super().__init__(f"Authentication rejected with status {status} ({url})")


class TransportUnreachable(TransportError):
	def __init__(self, url: str = "", reason: str = ""):
		self.url = url
		self.reason = reason
		message = f"Control API unreachable ({url})"
		if reason:
			message += f": {reason}"
		super().__init__(message)


class RequestRejected(TransportError):
	def __init__(self, status: int, body: Any = None, url: str = ""):
		self.status = status
		self.body = body
		self.url = url
		super().__init__(f"Request rejected with status {status} ({url}): {body}")

	def body_text(self) -> str:
		if isinstance(self.body, dict):
			return str(self.body.get("message", self.body))
		return "" if self.body is None else str(self.body)


class GatewayClosed(TransportError):
	"""The gateway was closed before the request was dispatched."""


class AutomationError(WardenError):
	"""Non-fatal outcome of an automation cycle."""


class NoEligibleChoice(AutomationError):
	def __init__(self, action_type: str, position: str | None = None):
		self.action_type = action_type
		self.position = position
		super().__init__(f"No eligible champion to {action_type} for position '{position}'")


class SessionUnavailable(AutomationError):
	"""The champion select session could not be read this cycle."""


class ConfigValidationError(WardenError, ValueError):
	"""Raised when a configuration value cannot be parsed or validated."""
