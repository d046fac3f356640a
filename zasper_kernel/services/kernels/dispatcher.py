from __future__ import annotations

import logging
import typing as t
from dataclasses import dataclass
from enum import Enum

import zmq
from pydantic import BaseModel, ValidationError

from zasper_kernel.models.message.messageModel import (
    PROTOCOL_VERSION_INFO,
    ExecuteReplyError,
    ExecuteReplyOk,
    ExecuteRequest,
    KernelInfoReply,
    KernelStatus,
    Message,
    OutputMsg,
    parse_content,
)
from zasper_kernel.services.execution.executionEngine import ExecutionEngine, ExecutionError
from zasper_kernel.services.kernels.connect import KernelTransport, TransportError
from zasper_kernel.services.kernels.session import (
    InvalidSignature,
    MalformedPayload,
    decode_message,
    new_message,
    serialize_frames,
)
from zasper_kernel.services.metrics.metrics import (
    KERNEL_EXECUTION_DURATION_SECONDS,
    KERNEL_EXECUTIONS_TOTAL,
    KERNEL_MESSAGES_RECEIVED_TOTAL,
    KERNEL_MESSAGES_REJECTED_TOTAL,
)

logger = logging.getLogger(__name__)

Envelope = t.List[bytes]


class LoopStatus(Enum):
    """What the caller of the dispatch loop should do next."""

    Continue = "continue"
    Fatal = "fatal"


@dataclass(frozen=True)
class DispatchOutcome:
    status: LoopStatus
    error: t.Optional[Exception] = None

    @property
    def fatal(self) -> bool:
        return self.status is LoopStatus.Fatal


CONTINUE = DispatchOutcome(LoopStatus.Continue)


@dataclass
class KernelSession:
    """Per-session state: the execution counter and the engine handle.

    Owned by a single SessionDispatcher; handlers receive it by reference.
    """

    engine: ExecutionEngine
    execution_count: int = 0

    def next_execution_count(self) -> int:
        self.execution_count += 1
        return self.execution_count


class SessionDispatcher:
    """Decode shell messages, route them by msg_type and send the replies.

    One message is handled completely, reply and status broadcasts
    included, before the next is looked at.

    Messages that fail signature or payload checks are logged and dropped.
    With strict=True they are fatal instead: the outcome carries the error
    and the caller is expected to shut down.
    """

    def __init__(
        self,
        shell: t.Any,
        iopub: t.Any,
        session: KernelSession,
        key: bytes = b"",
        signature_scheme: str = "hmac-sha256",
        strict: bool = False,
    ):
        self.shell = shell
        self.iopub = iopub
        self.session = session
        self.key = key
        self.signature_scheme = signature_scheme
        self.strict = strict
        self.shell_handlers: t.Dict[str, t.Callable[..., None]] = {
            "kernel_info_request": self.kernel_info_request,
            "execute_request": self.execute_request,
        }

    @classmethod
    def from_transport(
        cls, transport: KernelTransport, engine: ExecutionEngine, strict: bool = False
    ) -> SessionDispatcher:
        return cls(
            transport.shell,
            transport.iopub,
            KernelSession(engine),
            key=transport.key,
            signature_scheme=transport.signature_scheme,
            strict=strict,
        )

    # --------------------------------------------------------------------------
    # Receiving
    # --------------------------------------------------------------------------

    def handle_shell(self, frames: t.Sequence[bytes]) -> DispatchOutcome:
        """Handle one multipart message received on the shell socket."""
        try:
            msg, idents = decode_message(frames, self.key, self.signature_scheme)
        except InvalidSignature as e:
            return self._reject("invalid_signature", e, frames)
        except MalformedPayload as e:
            return self._reject("malformed_payload", e, frames)

        msg_type = msg.msg_type
        KERNEL_MESSAGES_RECEIVED_TOTAL.labels(msg_type).inc()
        logger.debug("--> %s", msg_type)

        handler = self.shell_handlers.get(msg_type)
        if handler is None:
            logger.info("Ignoring unsupported message type %r", msg_type)
            return CONTINUE

        try:
            content = parse_content(msg_type, msg.content)
        except ValidationError as e:
            err = MalformedPayload(f"Invalid {msg_type} content: {e}", frame="content")
            return self._reject("invalid_content", err, frames)

        try:
            self.publish_status("busy", msg, idents)
            handler(self.session, msg, content, idents)
            self.publish_status("idle", msg, idents)
        except zmq.ZMQError as e:
            logger.error("Failed to send reply to %s: %s", msg_type, e)
            return DispatchOutcome(LoopStatus.Fatal, TransportError(str(e)))
        return CONTINUE

    def handle_stdin(self, frames: t.Sequence[bytes]) -> DispatchOutcome:
        """Drain a message from the stdin socket; input requests are not handled."""
        logger.debug("Discarding stdin message (%i frames)", len(frames))
        return CONTINUE

    def _reject(self, reason: str, error: Exception, frames: t.Sequence[bytes]) -> DispatchOutcome:
        KERNEL_MESSAGES_REJECTED_TOTAL.labels(reason).inc()
        if self.strict:
            logger.error("Invalid message (%s): %s", reason, error)
            return DispatchOutcome(LoopStatus.Fatal, error)
        logger.warning("Dropping invalid message (%s): %s", reason, error)
        logger.debug("Dropped frames: %r", list(frames))
        return CONTINUE

    # --------------------------------------------------------------------------
    # Sending
    # --------------------------------------------------------------------------

    def send(self, socket: t.Any, msg: Message, idents: Envelope) -> None:
        """Send `msg` behind the identity envelope of the request it answers."""
        frames = serialize_frames(msg, idents, self.key, self.signature_scheme)
        socket.send_multipart(frames)
        logger.debug("<-- %s", msg.msg_type)

    def reply(
        self, socket: t.Any, msg_type: str, parent: Message, content: BaseModel, idents: Envelope
    ) -> Message:
        reply = new_message(msg_type, parent, content)
        self.send(socket, reply, idents)
        return reply

    def publish_status(self, execution_state: str, parent: Message, idents: Envelope) -> None:
        status = KernelStatus(execution_state=execution_state)
        self.reply(self.iopub, "status", parent, status, idents)

    # --------------------------------------------------------------------------
    # Shell handlers
    # --------------------------------------------------------------------------

    def kernel_info_request(
        self, session: KernelSession, msg: Message, content: BaseModel, idents: Envelope
    ) -> None:
        info = KernelInfoReply(
            protocol_version=PROTOCOL_VERSION_INFO,
            language=session.engine.language,
            language_version=session.engine.language_version,
        )
        self.reply(self.shell, "kernel_info_reply", msg, info, idents)

    def execute_request(
        self, session: KernelSession, msg: Message, content: ExecuteRequest, idents: Envelope
    ) -> None:
        execution_count = session.next_execution_count()
        try:
            with KERNEL_EXECUTION_DURATION_SECONDS.time():
                try:
                    value = session.engine.execute(content.code)
                except ExecutionError:
                    raise
                except Exception as e:
                    logger.exception("Engine failed executing request %s", msg.header.msg_id)
                    ename = type(e).__name__
                    raise ExecutionError(ename, str(e) or ename) from e
        except ExecutionError as e:
            reply_content: BaseModel = ExecuteReplyError(
                execution_count=execution_count,
                ename=e.ename,
                evalue=e.evalue,
                traceback=e.traceback,
            )
        else:
            reply_content = ExecuteReplyOk(execution_count=execution_count)
            if value is not None:
                output = OutputMsg(
                    execution_count=execution_count,
                    data={"text/plain": self.format_value(value)},
                )
                self.reply(self.iopub, "pyout", msg, output, idents)
        KERNEL_EXECUTIONS_TOTAL.labels(reply_content.status).inc()
        self.reply(self.shell, "execute_reply", msg, reply_content, idents)

    def format_value(self, value: t.Any) -> str:
        return repr(value)
