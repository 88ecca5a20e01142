"""Tagged control messages sent by the browser client over the relay socket."""

from __future__ import annotations

from typing import Annotated, Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class _ClientMessage(BaseModel):
	model_config = ConfigDict(populate_by_name=True)


class StartMessage(_ClientMessage):
	type: Literal["start"]
	username: str = Field(min_length=1)
	session_id: str = Field(alias="sessionId", min_length=1)
	conversation_id: str = Field(alias="conversationId", min_length=1)
	is_reconnection: bool = Field(default=False, alias="isReconnection")
	has_messages: bool = Field(default=False, alias="hasMessages")


class AudioMessage(_ClientMessage):
	type: Literal["audio"]
	audio: str


class StopMessage(_ClientMessage):
	type: Literal["stop"]
	request_new_session: bool = Field(default=False, alias="requestNewSession")


class EmergencySaveMessage(_ClientMessage):
	type: Literal["emergency_save"]


ClientMessage = Annotated[
	Union[StartMessage, AudioMessage, StopMessage, EmergencySaveMessage],
	Field(discriminator="type"),
]

_CLIENT_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(payload: Dict[str, Any]):
	"""Validate a decoded JSON payload into one of the client message models.

	Raises:
		pydantic.ValidationError: If the payload has an unknown type or bad fields.
	"""
	return _CLIENT_MESSAGE_ADAPTER.validate_python(payload)
