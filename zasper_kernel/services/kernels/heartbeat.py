import errno
import logging
import threading

import zmq

from zasper_kernel.utils import new_id

logger = logging.getLogger(__name__)


class Heartbeat(threading.Thread):
    """Echo every message received on the heartbeat REP socket.

    The socket is bound by the caller, so bind failures surface at startup,
    and is owned by this thread from then on. The loop never touches kernel
    state. It ends on stop(), or when the zmq context is terminated.
    """

    def __init__(self, socket: zmq.Socket):
        super().__init__(daemon=True, name="heartbeat-thread")
        self.socket = socket
        self.control_url = "inproc://heartbeat-control-%s" % new_id()
        # bound before any peer connects, read only by the echo loop
        self.control = socket.context.socket(zmq.PAIR)
        self.control.linger = 0
        self.control.bind(self.control_url)

    def run(self) -> None:
        logger.debug("Heartbeat echo running on %s", self.socket.get(zmq.LAST_ENDPOINT))
        try:
            zmq.proxy_steerable(self.socket, self.socket, None, self.control)
        except zmq.ZMQError as e:
            if e.errno != errno.ENOTSOCK and e.errno != zmq.ETERM:
                logger.error("Heartbeat stopped: %s", e)
                raise
        finally:
            self.socket.close(linger=0)
            self.control.close(linger=0)
        logger.debug("Heartbeat stopped")

    def stop(self, timeout: float = 1) -> None:
        """Ask the echo loop to exit and wait for the thread."""
        if self.is_alive():
            ctl = self.socket.context.socket(zmq.PAIR)
            # give the command time to reach the loop before the socket goes
            ctl.linger = 1000
            try:
                ctl.connect(self.control_url)
                ctl.send(b"TERMINATE")
            finally:
                ctl.close()
        self.join(timeout=timeout)
