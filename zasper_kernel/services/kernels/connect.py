# Kernel side of https://github.com/jupyter/jupyter_client/blob/main/jupyter_client/connect.py
import json
import logging
import os
import socket
import tempfile
import typing as t

import zmq

from zasper_kernel.core.paths import jupyter_runtime_dir, secure_write
from zasper_kernel.models.connectionModel import ConnectionInfo
from zasper_kernel.services.kernels.heartbeat import Heartbeat
from zasper_kernel.services.kernels.session import digest_name
from zasper_kernel.utils import new_id_bytes

# the kernel binds the server half of each channel
channel_socket_types = {
    "hb": zmq.REP,
    "shell": zmq.ROUTER,
    "iopub": zmq.PUB,
    "stdin": zmq.ROUTER,
}

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """A socket could not be bound, polled or written to."""


def find_connection_file(filename: str) -> str:
    """Resolve a connection file name.

    Paths that exist are used as given; bare names are looked up in the
    runtime dir. A path that cannot be found is returned as the location
    where a new connection file should be written.
    """
    if os.path.exists(filename) or os.path.dirname(filename):
        return filename
    return os.path.join(jupyter_runtime_dir(), filename)


def load_connection_file(connection_file: str) -> ConnectionInfo:
    """Load connection info from a JSON connection file."""
    logger.debug("Loading connection file %s", connection_file)
    with open(connection_file) as f:
        info = json.load(f)
    conn = ConnectionInfo.model_validate(info)
    # fail early on a scheme we cannot sign with
    digest_name(conn.signature_scheme)
    return conn


def write_connection_file(
    fname: t.Optional[str] = None,
    shell_port: int = 0,
    iopub_port: int = 0,
    stdin_port: int = 0,
    hb_port: int = 0,
    control_port: int = 0,
    ip: str = "127.0.0.1",
    key: t.Optional[bytes] = None,
    transport: str = "tcp",
    signature_scheme: str = "hmac-sha256",
    kernel_name: str = "",
) -> t.Tuple[str, ConnectionInfo]:
    """Generates a JSON config file, including the selection of random ports.

    Parameters
    ----------

    fname : unicode
        The path to the file to write, a temporary file if not given.

    shell_port, iopub_port, stdin_port, hb_port, control_port : int, optional
        Ports to record; any port <= 0 gets a free port picked at random.

    ip  : str, optional
        The ip address the kernel will bind to.

    key : bytes, optional
        The key used for message authentication. A fresh random key is
        generated when not given; pass b"" to disable signing.

    signature_scheme : str, optional
        The scheme used for message authentication, 'hmac-<hash>'.
    """
    if not fname:
        fd, fname = tempfile.mkstemp(".json")
        os.close(fd)
    if key is None:
        key = new_id_bytes()

    ports = {
        "shell_port": shell_port,
        "iopub_port": iopub_port,
        "stdin_port": stdin_port,
        "control_port": control_port,
        "hb_port": hb_port,
    }
    if transport == "tcp":
        # hold every socket open until all ports are chosen so none repeat
        sockets: t.List[socket.socket] = []
        for name, port in ports.items():
            if port > 0:
                continue
            sock = socket.socket()
            # struct.pack('ii', (0,0)) is 8 null bytes
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, b"\0" * 8)
            sock.bind((ip, 0))
            sockets.append(sock)
            ports[name] = sock.getsockname()[1]
        for sock in sockets:
            sock.close()
    else:
        n = 1
        for name, port in ports.items():
            if port > 0:
                continue
            while os.path.exists(f"{ip}-{n}"):
                n += 1
            ports[name] = n
            n += 1

    cfg = dict(ports)
    cfg["ip"] = ip
    cfg["key"] = key.decode()
    cfg["transport"] = transport
    cfg["signature_scheme"] = signature_scheme
    cfg["kernel_name"] = kernel_name

    dirname = os.path.dirname(fname)
    if dirname:
        os.makedirs(dirname, mode=0o700, exist_ok=True)
    # the file holds the signing key, keep it user read/writeable only
    with secure_write(fname) as f:
        f.write(json.dumps(cfg, indent=2))
    logger.info("Wrote connection file %s", fname)
    return fname, ConnectionInfo.model_validate(cfg)


def make_url(info: ConnectionInfo, channel: str, port: t.Optional[int] = None) -> str:
    """Make a ZeroMQ URL for a given channel."""
    if port is None:
        port = getattr(info, "%s_port" % channel)
    if info.transport == "tcp":
        return "tcp://%s:%i" % (info.ip, port)
    return f"{info.transport}://{info.ip}-{port}"


class KernelTransport:
    """Owns the kernel's sockets: shell, stdin, iopub and heartbeat.

    bind() binds all four; a failure on any of them raises TransportError.
    Ports set to 0 in the connection info are bound to a random port, the
    chosen ports are available from `ports` afterwards.
    """

    def __init__(self, info: ConnectionInfo, context: t.Optional[zmq.Context] = None):
        self.info = info
        self._created_context = context is None
        self.context = context or zmq.Context()
        self.sockets: t.Dict[str, zmq.Socket] = {}
        self.ports: t.Dict[str, int] = {}
        self.heartbeat: t.Optional[Heartbeat] = None

    @property
    def key(self) -> bytes:
        return self.info.key

    @property
    def signature_scheme(self) -> str:
        return self.info.signature_scheme

    @property
    def shell(self) -> zmq.Socket:
        return self.sockets["shell"]

    @property
    def stdin(self) -> zmq.Socket:
        return self.sockets["stdin"]

    @property
    def iopub(self) -> zmq.Socket:
        return self.sockets["iopub"]

    def _bind_socket(self, channel: str) -> zmq.Socket:
        sock = self.context.socket(channel_socket_types[channel])
        # set linger to 1s to prevent hangs at exit
        sock.linger = 1000
        port = getattr(self.info, "%s_port" % channel)
        try:
            if self.info.transport == "tcp" and port <= 0:
                port = sock.bind_to_random_port("tcp://%s" % self.info.ip)
                url = make_url(self.info, channel, port)
            else:
                url = make_url(self.info, channel)
                sock.bind(url)
        except zmq.ZMQError as e:
            sock.close(linger=0)
            msg = f"Could not bind {channel} socket to {make_url(self.info, channel)}: {e}"
            raise TransportError(msg) from e
        logger.debug("Bound %s socket to %s", channel, url)
        self.ports[channel] = port
        return sock

    def bind(self) -> None:
        """Bind every channel and start the heartbeat echo loop."""
        try:
            for channel in ("shell", "stdin", "iopub", "hb"):
                self.sockets[channel] = self._bind_socket(channel)
        except TransportError:
            self.close()
            raise
        self.heartbeat = Heartbeat(self.sockets.pop("hb"))
        self.heartbeat.start()

    def close(self) -> None:
        """Close the sockets and stop the heartbeat.

        The context is terminated only when this transport created it.
        """
        for sock in self.sockets.values():
            sock.close(linger=0)
        self.sockets.clear()
        if self.heartbeat is not None:
            self.heartbeat.stop()
            self.heartbeat = None
        if self._created_context and not self.context.closed:
            self.context.term()
