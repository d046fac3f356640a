"""An application that serves a kernel over the connection described by a connection file."""

import argparse
import logging
import os
import signal
import sys
import typing as t

from prometheus_client import start_http_server
from tornado.ioloop import IOLoop
from zmq.eventloop.zmqstream import ZMQStream

from zasper_kernel._version import __version__
from zasper_kernel.models.connectionModel import ConnectionInfo
from zasper_kernel.services.execution.executionEngine import ExecutionEngine, PythonEngine
from zasper_kernel.services.kernels.connect import (
    KernelTransport,
    TransportError,
    find_connection_file,
    load_connection_file,
    write_connection_file,
)
from zasper_kernel.services.kernels.dispatcher import DispatchOutcome, SessionDispatcher

logger = logging.getLogger(__name__)


def parse_args(argv: t.Optional[t.Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="zasper-kernel",
        description="Run a kernel on the sockets described by a connection file",
    )
    parser.add_argument("connection_file", help="path to the kernel connection file")
    parser.add_argument(
        "--debug", action="store_true", help="log extra info to stderr"
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="shut down on the first message with a bad signature or payload",
    )
    parser.add_argument(
        "--metrics-port", type=int, default=None, help="serve prometheus metrics on this port"
    )
    parser.add_argument("--version", action="version", version=__version__)
    return parser.parse_args(argv)


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        level=logging.DEBUG if debug else logging.WARNING,
        stream=sys.stderr,
    )


class KernelApp:
    """Bind the kernel sockets and dispatch shell traffic on a tornado IOLoop."""

    description = "Serve a kernel over ZeroMQ"

    def __init__(
        self,
        connection_file: str,
        engine: t.Optional[ExecutionEngine] = None,
        strict: bool = False,
    ) -> None:
        self.connection_file = find_connection_file(connection_file)
        self.engine = engine or PythonEngine()
        self.strict = strict
        self.exit_code = 0
        self.transport: t.Optional[KernelTransport] = None
        self.dispatcher: t.Optional[SessionDispatcher] = None
        self.streams: t.List[ZMQStream] = []
        self.loop = IOLoop.current()

    def load_connection_info(self):
        if not os.path.exists(self.connection_file):
            logger.info("Connection file %s not found, writing a new one", self.connection_file)
            _, info = write_connection_file(self.connection_file)
            return info
        return load_connection_file(self.connection_file)

    def init_transport(self) -> None:
        """Bind the sockets; raises TransportError if any of them cannot be bound."""
        info = self.load_connection_info()
        self.transport = KernelTransport(info)
        self.transport.bind()
        self.dispatcher = SessionDispatcher.from_transport(
            self.transport, self.engine, strict=self.strict
        )
        logger.info("Kernel listening with ports %s", self.transport.ports)
        ports = self.transport.ports
        if any(getattr(info, "%s_port" % name) != port for name, port in ports.items()):
            self.write_bound_ports(info)

    def write_bound_ports(self, info: ConnectionInfo) -> None:
        """Record randomly bound ports in the connection file so clients can find them."""
        assert self.transport is not None
        ports = self.transport.ports
        write_connection_file(
            self.connection_file,
            shell_port=ports["shell"],
            iopub_port=ports["iopub"],
            stdin_port=ports["stdin"],
            hb_port=ports["hb"],
            control_port=info.control_port,
            ip=info.ip,
            key=info.key,
            transport=info.transport,
            signature_scheme=info.signature_scheme,
            kernel_name=info.kernel_name or "",
        )
        logger.warning("Bound random ports %s, updated %s", ports, self.connection_file)

    def init_streams(self) -> None:
        assert self.transport is not None and self.dispatcher is not None
        shell = ZMQStream(self.transport.shell, self.loop)
        shell.on_recv(self._dispatch(self.dispatcher.handle_shell))
        stdin = ZMQStream(self.transport.stdin, self.loop)
        stdin.on_recv(self._dispatch(self.dispatcher.handle_stdin))
        self.streams = [shell, stdin]

    def _dispatch(self, handler: t.Callable[[t.List[bytes]], DispatchOutcome]) -> t.Callable:
        def on_recv(frames: t.List[bytes]) -> None:
            outcome = handler(frames)
            if outcome.fatal:
                logger.critical("Shutting down: %s", outcome.error)
                self.exit_code = 1
                self.loop.stop()

        return on_recv

    def setup_signals(self) -> None:
        """Shutdown on SIGTERM or SIGINT (Ctrl-C)"""
        if os.name == "nt":
            return

        for sig in [signal.SIGTERM, signal.SIGINT]:
            self.loop.asyncio_loop.add_signal_handler(sig, self.shutdown, sig)

    def shutdown(self, signo: int) -> None:
        """Shut down the application."""
        logger.info("Shutting down on signal %d", signo)
        self.loop.stop()

    def cleanup(self) -> None:
        for stream in self.streams:
            stream.close(linger=0)
        self.streams = []
        if self.transport is not None:
            self.transport.close()
            self.transport = None

    def start(self) -> int:
        """Start the application, returning the process exit code."""
        try:
            self.init_transport()
        except (TransportError, OSError, ValueError) as e:
            logger.critical("Could not start kernel: %s", e)
            self.cleanup()
            return 1
        try:
            self.init_streams()
            self.setup_signals()
            self.loop.start()
        finally:
            self.cleanup()
        return self.exit_code


def main(argv: t.Optional[t.Sequence[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.debug)
    if args.metrics_port is not None:
        start_http_server(args.metrics_port)
    app = KernelApp(args.connection_file, strict=args.strict)
    return app.start()


if __name__ == "__main__":
    sys.exit(main())
