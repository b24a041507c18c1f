"""
tests/test_control.py

Unit tests for the client that deployed applications use on their end of the
control channel. A socket pair stands in for the one the supervisor creates.
"""

import json
import socket
import unittest

from cd_system import config
from cd_system.control import ControlClient


class TestControlClient(unittest.TestCase):
    def setUp(self):
        self.daemon_end, child_end = socket.socketpair()
        self.client = ControlClient.from_env({config.CONTROL_FD_ENV: str(child_end.detach())})

    def tearDown(self):
        self.client.close()
        self.daemon_end.close()

    def test_request_sends_one_line(self):
        self.client.request("build")
        self.assertEqual(self.daemon_end.recv(64), b"build\n")

    def test_unknown_action_is_refused(self):
        with self.assertRaises(ValueError):
            self.client.request("deploy-everything")

    def test_messages_yields_decoded_payloads(self):
        message = {"event": "push", "id": "d-1", "payload": {"ref": "refs/heads/main"}}
        self.daemon_end.sendall((json.dumps(message) + "\n\n").encode())
        self.daemon_end.shutdown(socket.SHUT_WR)
        self.assertEqual(list(self.client.messages()), [message])

    def test_from_env_without_descriptor(self):
        with self.assertRaises(RuntimeError):
            ControlClient.from_env({})


if __name__ == "__main__":
    unittest.main()
