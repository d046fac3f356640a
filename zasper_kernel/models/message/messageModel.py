from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

PROTOCOL_VERSION = "4.0"
PROTOCOL_VERSION_INFO = [4, 0]


class Header(BaseModel):
    # clients may send fields we do not know about; keep them
    model_config = ConfigDict(extra="allow")

    msg_id: str  # typically UUID, must be unique per message
    username: str = ""
    session: str = ""  # typically UUID, should be unique per session
    msg_type: str  # open set, see CONTENT_TYPES for the ones handled here
    date: str = ""  # ISO 8601 timestamp for when the message is created
    version: str = PROTOCOL_VERSION


class Message(BaseModel):
    header: Header
    parent_header: Optional[Header] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    content: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("parent_header", mode="before")
    @classmethod
    def _empty_parent(cls, value: Any) -> Any:
        # originator messages carry {} as their parent header
        if value == {}:
            return None
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def msg_type(self) -> str:
        return self.header.msg_type


# Request content


class KernelInfoRequest(BaseModel):
    model_config = ConfigDict(extra="allow")


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str
    silent: bool = False
    store_history: bool = True
    user_expressions: Dict[str, Any] = Field(default_factory=dict)
    allow_stdin: bool = True
    stop_on_error: bool = True


# Reply and broadcast content


class KernelInfoReply(BaseModel):
    protocol_version: List[int]
    language: str
    language_version: List[int] = Field(default_factory=list)


class KernelStatus(BaseModel):
    execution_state: Literal["busy", "idle", "starting"]


class OutputMsg(BaseModel):
    execution_count: int
    data: Dict[str, str]
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecuteReplyOk(BaseModel):
    status: Literal["ok"] = "ok"
    execution_count: int
    payload: List[Dict[str, Any]] = Field(default_factory=list)
    user_variables: Dict[str, Any] = Field(default_factory=dict)
    user_expressions: Dict[str, Any] = Field(default_factory=dict)


class ExecuteReplyError(BaseModel):
    status: Literal["error"] = "error"
    execution_count: int
    ename: str
    evalue: str
    traceback: List[str]


ExecuteReply = Annotated[
    Union[ExecuteReplyOk, ExecuteReplyError], Field(discriminator="status")
]


class UnknownContent(BaseModel):
    """Fallback for message types without a dedicated content model."""

    model_config = ConfigDict(extra="allow")


CONTENT_TYPES = {
    "kernel_info_request": KernelInfoRequest,
    "kernel_info_reply": KernelInfoReply,
    "execute_request": ExecuteRequest,
    "execute_reply": ExecuteReply,
    "status": KernelStatus,
    "pyout": OutputMsg,
}

_adapters = {msg_type: TypeAdapter(model) for msg_type, model in CONTENT_TYPES.items()}
_unknown_adapter = TypeAdapter(UnknownContent)


def parse_content(msg_type: str, content: Dict[str, Any]) -> BaseModel:
    """Validate `content` against the model registered for `msg_type`.

    Unregistered message types yield an UnknownContent that keeps every field.
    Raises pydantic.ValidationError when the content does not fit its model.
    """
    adapter = _adapters.get(msg_type, _unknown_adapter)
    return adapter.validate_python(content)


# {
#     "header": {
#         "msg_id": "4c1f0d6e-...",
#         "username": "",
#         "session": "9b7e...",
#         "msg_type": "execute_request",
#         "date": "2024-01-01T00:00:00Z",
#         "version": "4.0"
#     },
#     "parent_header": {},
#     "metadata": {},
#     "content": {
#         "silent": false,
#         "store_history": true,
#         "user_expressions": {},
#         "allow_stdin": true,
#         "code": "1200*3600"
#     }
# }
