import pytest

from zasper_kernel.models.message.messageModel import Message
from zasper_kernel.services.execution.executionEngine import ExecutionEngine, ExecutionError
from zasper_kernel.services.kernels.dispatcher import KernelSession, SessionDispatcher
from zasper_kernel.services.kernels.session import (
    decode_message,
    msg_header,
    serialize_frames,
)

KEY = b"a0436f6c-1916-498b-8eb9-e81ab9368e84"


class RecordingSocket:
    """Stands in for a zmq socket, keeping every multipart message sent."""

    def __init__(self):
        self.sent = []

    def send_multipart(self, frames):
        self.sent.append(list(frames))

    def messages(self, key=KEY):
        return [decode_message(frames, key) for frames in self.sent]


class ScriptedEngine(ExecutionEngine):
    """Returns canned results keyed by code; raises ExecutionError for 'fail'."""

    language = "test"
    language_version = [1, 0]

    def __init__(self, results=None):
        self.results = results or {}
        self.calls = []

    def execute(self, code):
        self.calls.append(code)
        if code == "fail":
            raise ExecutionError("ERROR", "something broke")
        return self.results.get(code)


def make_request(msg_type, content=None, idents=(b"client-a", b"client-b"), key=KEY):
    header = msg_header(msg_type, username="tester", session="session-1")
    msg = Message(header=header, content=content or {})
    return msg, serialize_frames(msg, idents, key)


@pytest.fixture
def engine():
    return ScriptedEngine({"1+1": 2, "x = 1": None})


@pytest.fixture
def shell():
    return RecordingSocket()


@pytest.fixture
def iopub():
    return RecordingSocket()


@pytest.fixture
def dispatcher(shell, iopub, engine):
    return SessionDispatcher(shell, iopub, KernelSession(engine), key=KEY)
