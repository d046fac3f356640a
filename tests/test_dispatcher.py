import pytest
import zmq

from zasper_kernel.services.execution.executionEngine import PythonEngine
from zasper_kernel.services.kernels.dispatcher import (
    KernelSession,
    LoopStatus,
    SessionDispatcher,
)
from zasper_kernel.services.kernels.session import (
    DELIM,
    InvalidSignature,
    MalformedPayload,
    decode_message,
    serialize_frames,
)

from conftest import KEY, RecordingSocket, ScriptedEngine, make_request


def iopub_types(iopub):
    return [msg.msg_type for msg, _ in iopub.messages()]


def test_kernel_info(dispatcher, shell, iopub):
    request, frames = make_request("kernel_info_request")

    outcome = dispatcher.handle_shell(frames)

    assert outcome.status is LoopStatus.Continue
    [(reply, idents)] = shell.messages()
    assert reply.msg_type == "kernel_info_reply"
    assert reply.parent_header == request.header
    assert reply.content["protocol_version"] == [4, 0]
    assert reply.content["language"] == "test"
    assert iopub_types(iopub) == ["status", "status"]


def test_successful_execution(dispatcher, shell, iopub):
    request, frames = make_request("execute_request", {"code": "1+1"})

    dispatcher.handle_shell(frames)

    [(reply, _)] = shell.messages()
    assert reply.msg_type == "execute_reply"
    assert reply.content["status"] == "ok"
    assert reply.content["execution_count"] == 1
    assert reply.content["payload"] == []
    assert reply.content["user_expressions"] == {}

    published = [msg for msg, _ in iopub.messages()]
    assert [m.msg_type for m in published] == ["status", "pyout", "status"]
    busy, pyout, idle = published
    assert busy.content == {"execution_state": "busy"}
    assert pyout.content["data"] == {"text/plain": "2"}
    assert pyout.content["execution_count"] == 1
    assert idle.content == {"execution_state": "idle"}
    assert all(m.parent_header == request.header for m in published)


def test_void_result_has_no_output(dispatcher, shell, iopub):
    _, frames = make_request("execute_request", {"code": "x = 1"})

    dispatcher.handle_shell(frames)

    [(reply, _)] = shell.messages()
    assert reply.content["status"] == "ok"
    assert iopub_types(iopub) == ["status", "status"]


def test_failing_execution(dispatcher, shell, iopub):
    _, frames = make_request("execute_request", {"code": "fail"})

    outcome = dispatcher.handle_shell(frames)

    assert not outcome.fatal
    [(reply, _)] = shell.messages()
    assert reply.content["status"] == "error"
    assert reply.content["ename"] == "ERROR"
    assert reply.content["evalue"] == "something broke"
    assert reply.content["traceback"] == ["something broke"]
    assert reply.content["execution_count"] == 1
    assert iopub_types(iopub) == ["status", "status"]


def test_execution_count_advances_once_per_request(dispatcher, shell, engine):
    codes = ["1+1", "fail", "x = 1", "fail", "1+1"]
    for code in codes:
        _, frames = make_request("execute_request", {"code": code})
        dispatcher.handle_shell(frames)

    counts = [reply.content["execution_count"] for reply, _ in shell.messages()]
    assert counts == [1, 2, 3, 4, 5]
    assert dispatcher.session.execution_count == len(codes)
    assert engine.calls == codes


def test_every_reply_carries_the_request_envelope(dispatcher, shell, iopub):
    idents = (b"A", b"B")
    _, frames = make_request("execute_request", {"code": "1+1"}, idents=idents)

    dispatcher.handle_shell(frames)

    sent = shell.sent + iopub.sent
    assert len(sent) == 4
    for frames in sent:
        assert frames[: frames.index(DELIM)] == [b"A", b"B"]


def test_reply_headers_are_fresh(dispatcher, shell, iopub):
    request, frames = make_request("execute_request", {"code": "1+1"})

    dispatcher.handle_shell(frames)

    headers = [msg.header for msg, _ in shell.messages() + iopub.messages()]
    ids = {h.msg_id for h in headers}
    assert len(ids) == len(headers)
    assert request.header.msg_id not in ids
    assert all(h.session == "session-1" and h.username == "tester" for h in headers)


def test_unknown_message_type_is_ignored(dispatcher, shell, iopub):
    _, frames = make_request("complete_request", {"code": "pri", "cursor_pos": 3})

    outcome = dispatcher.handle_shell(frames)

    assert outcome.status is LoopStatus.Continue
    assert shell.sent == []
    assert iopub.sent == []


def test_bad_signature_is_dropped(dispatcher, shell, iopub, engine):
    _, frames = make_request("execute_request", {"code": "1+1"}, key=b"wrong key")

    outcome = dispatcher.handle_shell(frames)

    assert outcome.status is LoopStatus.Continue
    assert shell.sent == []
    assert iopub.sent == []
    assert engine.calls == []
    assert dispatcher.session.execution_count == 0


def test_bad_signature_is_fatal_when_strict(shell, iopub, engine):
    dispatcher = SessionDispatcher(shell, iopub, KernelSession(engine), key=KEY, strict=True)
    _, frames = make_request("execute_request", {"code": "1+1"}, key=b"wrong key")

    outcome = dispatcher.handle_shell(frames)

    assert outcome.fatal
    assert isinstance(outcome.error, InvalidSignature)
    assert engine.calls == []


def test_malformed_frames_are_dropped(dispatcher, shell):
    outcome = dispatcher.handle_shell([b"id", b"no delimiter here"])

    assert outcome.status is LoopStatus.Continue
    assert shell.sent == []


def test_execute_request_without_code(shell, iopub, engine):
    dispatcher = SessionDispatcher(shell, iopub, KernelSession(engine), key=KEY, strict=True)
    _, frames = make_request("execute_request", {"silent": False})

    outcome = dispatcher.handle_shell(frames)

    assert outcome.fatal
    assert isinstance(outcome.error, MalformedPayload)
    assert dispatcher.session.execution_count == 0
    assert shell.sent == []


def test_unsigned_session(shell, iopub, engine):
    dispatcher = SessionDispatcher(shell, iopub, KernelSession(engine), key=b"")
    _, frames = make_request("kernel_info_request", key=b"")

    dispatcher.handle_shell(frames)

    [frames] = shell.sent
    assert frames[frames.index(DELIM) + 1] == b""


def test_stdin_is_drained(dispatcher, shell, iopub):
    _, frames = make_request("input_reply", {"value": "42"})

    outcome = dispatcher.handle_stdin(frames)

    assert outcome.status is LoopStatus.Continue
    assert shell.sent == []
    assert iopub.sent == []


def test_send_failure_is_fatal(shell, engine):
    class BrokenSocket(RecordingSocket):
        def send_multipart(self, frames):
            raise zmq.ZMQError(zmq.ENOTSOCK)

    dispatcher = SessionDispatcher(shell, BrokenSocket(), KernelSession(engine), key=KEY)
    _, frames = make_request("kernel_info_request")

    outcome = dispatcher.handle_shell(frames)

    assert outcome.fatal


@pytest.mark.parametrize("value, text", [("abc", "'abc'"), ([1, 2], "[1, 2]"), (0, "0")])
def test_result_rendering(shell, iopub, value, text):
    engine = ScriptedEngine({"v": value})
    dispatcher = SessionDispatcher(shell, iopub, KernelSession(engine), key=KEY)
    _, frames = make_request("execute_request", {"code": "v"})

    dispatcher.handle_shell(frames)

    pyout = [msg for msg, _ in iopub.messages() if msg.msg_type == "pyout"]
    assert pyout[0].content["data"]["text/plain"] == text


def test_reply_frames_are_signed(dispatcher, shell):
    _, frames = make_request("kernel_info_request")
    dispatcher.handle_shell(frames)

    with pytest.raises(InvalidSignature):
        decode_message(shell.sent[0], b"some other key")
    reply, _ = decode_message(shell.sent[0], KEY)
    assert serialize_frames(reply, [b"client-a", b"client-b"], KEY) == shell.sent[0]


def test_exit_in_user_code_gets_an_error_reply(shell, iopub):
    dispatcher = SessionDispatcher(shell, iopub, KernelSession(PythonEngine()), key=KEY)
    for code in ["exit(3)", "raise SystemExit(3)"]:
        _, frames = make_request("execute_request", {"code": code})
        outcome = dispatcher.handle_shell(frames)
        assert not outcome.fatal

    replies = [reply for reply, _ in shell.messages()]
    assert [r.content["status"] for r in replies] == ["error", "error"]
    assert [r.content["ename"] for r in replies] == ["SystemExit", "SystemExit"]
    assert [r.content["execution_count"] for r in replies] == [1, 2]
    assert iopub_types(iopub) == ["status", "status"] * 2


def test_engine_crash_gets_an_error_reply(shell, iopub):
    class CrashingEngine(ScriptedEngine):
        def execute(self, code):
            raise RuntimeError("engine blew up")

    dispatcher = SessionDispatcher(shell, iopub, KernelSession(CrashingEngine()), key=KEY)
    _, frames = make_request("execute_request", {"code": "1+1"})

    outcome = dispatcher.handle_shell(frames)

    assert not outcome.fatal
    [(reply, _)] = shell.messages()
    assert reply.content["status"] == "error"
    assert reply.content["ename"] == "RuntimeError"
    assert reply.content["evalue"] == "engine blew up"
    assert reply.content["execution_count"] == 1
    published = [msg for msg, _ in iopub.messages()]
    assert [m.content["execution_state"] for m in published] == ["busy", "idle"]
