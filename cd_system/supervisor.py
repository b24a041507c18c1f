"""
A process supervisor that owns the single managed application process.

The child inherits the daemon's standard streams, so its output interleaves
with the daemon log, and gets one end of a connected socket pair as a control
channel. The descriptor number is announced in the CD_CONTROL_FD environment
variable. Each line the child writes is an action request; each line the
daemon writes is a JSON data message. Deployed Python applications talk to
it through cd_system.control.ControlClient.
"""

import json
import logging
import os
import socket
import subprocess
import threading
from typing import Callable, Dict, List, Mapping, Optional

from cd_system import config
from cd_system.errors import ProcessAlreadyRunning, ProcessSpawnError

logger = logging.getLogger(__name__)

ControlHandler = Callable[[str], None]
ExitHandler = Callable[["ManagedProcess"], None]


def merge_environment(overlay: Mapping[str, str], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Ambient environment with overlay values winning on collisions"""
    base = os.environ if base is None else base
    return {**base, **overlay}


class ManagedProcess:
    """Handle to a running child and its control channel"""

    def __init__(self, popen: subprocess.Popen, channel: socket.socket, working_directory: str, env: Dict[str, str]):
        self.popen = popen
        self.pid = popen.pid
        self.working_directory = working_directory
        self.env = env
        self.channel = channel
        self.handlers: List[ControlHandler] = []
        self.pending: List[str] = []
        self.dispatch_lock = threading.Lock()
        self.send_lock = threading.Lock()

    def is_alive(self) -> bool:
        return self.popen.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.popen.poll()

    def close_channel(self) -> None:
        # shutdown() wakes up a reader blocked in recv, close() alone does not
        try:
            self.channel.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.channel.close()

    def __repr__(self):
        return f"<ManagedProcess pid={self.pid} cwd={self.working_directory!r}>"


class ProcessSupervisor:
    """Starts, stops and talks to the managed process"""

    def __init__(self, grace_period: float = config.STOP_GRACE_PERIOD):
        self.grace_period = grace_period
        self.current: Optional[ManagedProcess] = None
        self._lock = threading.Lock()

    def start(self, command: str, args: List[str], cwd: str, env: Mapping[str, str],
              on_exit: Optional[ExitHandler] = None) -> ManagedProcess:
        """Spawn the managed process with a control channel attached

        on_exit is called from the watcher thread once the process has exited,
        whether it was stopped or exited on its own.
        """
        with self._lock:
            if self.current is not None and self.current.is_alive():
                raise ProcessAlreadyRunning(f"Managed process {self.current.pid} is still running")

            parent_end, child_end = socket.socketpair()
            child_env = dict(env)
            child_env[config.CONTROL_FD_ENV] = str(child_end.fileno())
            try:
                popen = subprocess.Popen(
                    [command, *args],
                    cwd=cwd,
                    env=child_env,
                    pass_fds=(child_end.fileno(),),
                )
            except (OSError, ValueError) as e:
                parent_end.close()
                raise ProcessSpawnError(f"Failed to start '{command}': {e}") from e
            finally:
                child_end.close()

            process = ManagedProcess(popen, parent_end, cwd, child_env)
            self.current = process

        logger.info(f"Started managed process PID: {process.pid} ({' '.join([command, *args])})")
        threading.Thread(target=self._read_control, args=(process,), daemon=True).start()
        threading.Thread(target=self._watch, args=(process, on_exit), daemon=True).start()
        return process

    def stop(self, process: Optional[ManagedProcess]) -> None:
        """Terminate process, killing it after the grace period, and release it"""
        if process is None:
            return
        if process.is_alive():
            logger.info(f"Stopping managed process PID: {process.pid}")
            process.popen.terminate()
            try:
                process.popen.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                logger.warning(f"PID {process.pid} ignored SIGTERM, killing it")
                process.popen.kill()
                process.popen.wait()
        process.close_channel()
        self._release(process)

    def on_control_message(self, process: ManagedProcess, handler: ControlHandler) -> None:
        """Register handler for action requests sent by the child"""
        with process.dispatch_lock:
            process.handlers.append(handler)
            # Requests that arrived before anyone was listening
            pending, process.pending = process.pending, []
            for action in pending:
                self._call(handler, action)

    def send(self, process: ManagedProcess, payload) -> None:
        """Push a data message to the child, without waiting for any reply"""
        message = json.dumps(payload) + "\n"
        try:
            with process.send_lock:
                process.channel.sendall(message.encode())
        except OSError as e:
            logger.warning(f"Could not deliver message to PID {process.pid}: {e}")

    def _read_control(self, process: ManagedProcess) -> None:
        try:
            with process.channel.makefile("r", encoding="utf-8", errors="replace") as reader:
                for line in reader:
                    action = line.strip()
                    if not action:
                        continue
                    with process.dispatch_lock:
                        if not process.handlers:
                            process.pending.append(action)
                        for handler in process.handlers:
                            self._call(handler, action)
        except (OSError, ValueError) as e:
            logger.debug(f"Control channel of PID {process.pid} closed: {e}")
        finally:
            process.channel.close()

    @staticmethod
    def _call(handler: ControlHandler, action: str) -> None:
        try:
            handler(action)
        except Exception:
            logger.exception(f"Control handler failed for action {action!r}")

    def _watch(self, process: ManagedProcess, on_exit: Optional[ExitHandler]) -> None:
        returncode = process.popen.wait()
        logger.info(f"Managed process PID: {process.pid} exited with code {returncode}")
        self._release(process)
        if on_exit is not None:
            try:
                on_exit(process)
            except Exception:
                logger.exception(f"Exit handler failed for PID {process.pid}")

    def _release(self, process: ManagedProcess) -> None:
        with self._lock:
            if self.current is process:
                self.current = None
