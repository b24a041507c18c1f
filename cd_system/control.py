"""
Client side of the control channel. This is the public API for Python
applications deployed by the daemon: the supervisor hands every managed
process a control socket (see cd_system.supervisor), and ControlClient wraps it.

    client = ControlClient.from_env()
    client.request("pull")
    for message in client.messages():
        print(message["event"], message["payload"])
"""

import json
import os
import socket

from cd_system import config

ACTIONS = ("reset", "build", "pull", "setup")


class ControlClient:
    def __init__(self, sock: socket.socket):
        self.sock = sock

    @classmethod
    def from_env(cls, environ=None):
        """Open the control channel the daemon handed to this process"""
        environ = os.environ if environ is None else environ
        try:
            fd = int(environ[config.CONTROL_FD_ENV])
        except (KeyError, ValueError):
            raise RuntimeError(f"${config.CONTROL_FD_ENV} is not set; not running under the deploy daemon")
        return cls(socket.socket(fileno=fd))

    def request(self, action: str) -> None:
        """Ask the daemon to reset, build, pull or setup"""
        if action not in ACTIONS:
            raise ValueError(f"Unknown action {action!r}, expected one of {', '.join(ACTIONS)}")
        self.sock.sendall(f"{action}\n".encode())

    def messages(self):
        """Yield data messages from the daemon until the channel closes"""
        with self.sock.makefile("r", encoding="utf-8") as reader:
            for line in reader:
                if line.strip():
                    yield json.loads(line)

    def close(self) -> None:
        self.sock.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
