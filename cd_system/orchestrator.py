"""
Deployment orchestrator for the CD daemon

The orchestrator decides what to run when something asks for a deployment:
  - "bootstrap" at daemon start (clone, then a full rebuild)
  - "build" from a push webhook or from the child (pull, config, setup, restart)
  - "reset" from the child (restart with the loaded config)
  - "pull" / "setup" from the child (one step, no restart)

Requests are queued and drained by a single worker thread, and every sequence
holds the sequence lock, so two sequences never run at the same time.
"""

import functools
import logging
import os
import queue
import shlex
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from cd_system import config
from cd_system.config_store import ConfigStore, RepositoryConfig
from cd_system.errors import CommandFailure, ConfigError, DeployError
from cd_system.helpers import run_command
from cd_system.supervisor import ProcessSupervisor, merge_environment

logger = logging.getLogger(__name__)


class OrchestratorState(Enum):
    IDLE = "Idle"
    CLONING = "Cloning"
    CONFIGURING = "Configuring"
    BUILDING = "Building"
    RUNNING = "Running"
    FAILED = "Failed"


@dataclass
class Event:
    name: str
    id: str
    payload: Any = None


def sequence(method):
    """Run method as one lifecycle sequence: exclusive, logged, never raising DeployError"""
    @functools.wraps(method)
    def wrapper(self) -> bool:
        with self._sequence_lock:
            if self._closing.is_set():
                logger.info(f"Shutting down, skipping sequence: {method.__name__}")
                return False
            self.busy = True
            logger.info(f"Starting sequence: {method.__name__}")
            try:
                method(self)
            except DeployError as e:
                self.state = OrchestratorState.FAILED
                logger.error(f"Sequence {method.__name__} failed: {e}")
                return False
            finally:
                self.busy = False
            logger.info(f"Sequence {method.__name__} finished ({self.state.value})")
            return True
    return wrapper


class DeploymentOrchestrator:
    """Owns the repository checkout, its configuration and the managed process"""

    def __init__(
        self,
        repo_url: str,
        repo_dir: str,
        config_file: str = config.CONFIG_FILE,
        runner: Callable = run_command,
        config_store: Optional[ConfigStore] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        environ=None,
    ):
        self.repo_url = repo_url
        self.repo_dir = os.path.abspath(repo_dir)
        self.config_file = config_file
        self.runner = runner
        self.config_store = config_store or ConfigStore(self.repo_dir)
        self.supervisor = supervisor or ProcessSupervisor()
        self.environ = environ

        self.process = None
        self.state = OrchestratorState.IDLE
        self.busy = False

        self._sequence_lock = threading.Lock()
        self._requests: "queue.Queue[Optional[Callable]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._closing = threading.Event()

        # Actions the managed process may request over its control channel
        self.actions = {
            "reset": self.restart_only,
            "build": self.rebuild_and_run,
            "pull": self.pull_only,
            "setup": self.setup_only,
        }

    @property
    def config(self) -> Optional[RepositoryConfig]:
        return self.config_store.config

    def is_active(self) -> bool:
        return self.process is not None and self.process.is_alive()

    # Sequences

    @sequence
    def bootstrap(self) -> None:
        if self.process is None:
            self._clone()
        self._rebuild()

    @sequence
    def rebuild_and_run(self) -> None:
        self._rebuild()

    @sequence
    def restart_only(self) -> None:
        self._require_config()
        self._restart()

    @sequence
    def pull_only(self) -> None:
        self._pull()
        self._settle()

    @sequence
    def setup_only(self) -> None:
        self._require_config()
        self._run_setup_scripts()
        self._settle()

    # Steps

    def _rebuild(self) -> None:
        logger.info("Building application...")
        self._pull()
        self._load_config()
        self._run_setup_scripts()
        self._restart()

    def _clone(self) -> None:
        self.state = OrchestratorState.CLONING
        if os.path.isdir(os.path.join(self.repo_dir, ".git")):
            logger.info(f"Repository already cloned in {self.repo_dir}")
            return
        logger.info("Cloning repository...")
        parent = os.path.dirname(self.repo_dir)
        self._run_step(f"git clone {shlex.quote(self.repo_url)} {shlex.quote(self.repo_dir)}", cwd=parent)

    def _pull(self) -> None:
        self.state = OrchestratorState.CLONING
        logger.info("Pulling latest changes...")
        self._run_step("git pull")

    def _load_config(self) -> None:
        self.state = OrchestratorState.CONFIGURING
        self.config_store.load(self.config_file)

    def _run_setup_scripts(self) -> None:
        self.state = OrchestratorState.BUILDING
        logger.info("Running setup scripts...")
        for script in self.config.setup_scripts:
            self._run_step(script)

    def _restart(self) -> None:
        previous, self.process = self.process, None
        if previous is not None:
            logger.info("Restarting application...")
        else:
            logger.info("Starting application...")
        self.supervisor.stop(previous)

        program, *args = self.config.argv
        env = merge_environment(self.config.env_overlay, self.environ)
        logger.info(f"Executing command: {self.config.run_command}")
        process = self.supervisor.start(program, args, self.repo_dir, env, on_exit=self._process_exited)
        self.process = process
        self.supervisor.on_control_message(process, self.request)
        self.state = OrchestratorState.RUNNING

    def _process_exited(self, process) -> None:
        """Forget a managed process that is gone; called from the supervisor's watcher"""
        with self._sequence_lock:
            if self.process is not process:
                return
            returncode = process.returncode
            logger.warning(f"Application exited on its own with code {returncode}")
            self.process = None
            self.state = OrchestratorState.IDLE if returncode == 0 else OrchestratorState.FAILED

    def _run_step(self, command: str, cwd: Optional[str] = None) -> None:
        result = self.runner(command, cwd or self.repo_dir)
        if not result.ok:
            raise CommandFailure(command, result.stderr)

    def _require_config(self) -> None:
        if self.config is None:
            raise ConfigError("Configuration not loaded. Run a build before this action.")

    def _settle(self) -> None:
        self.state = OrchestratorState.RUNNING if self.is_active() else OrchestratorState.IDLE

    # Requests

    def request(self, action: str) -> bool:
        """Queue the sequence for a control action; unknown actions are ignored"""
        operation = self.actions.get(action.strip())
        if operation is None:
            logger.warning(f"Ignoring unknown action: {action!r}")
            return False
        logger.info(f"Action requested: {action.strip()}")
        self.submit(operation)
        return True

    def submit(self, operation: Callable[[], bool]) -> None:
        """Queue a sequence behind the ones already waiting"""
        if self._closing.is_set():
            logger.info("Shutting down, request dropped")
            return
        self._requests.put(operation)

    def handle_event(self, event: Event) -> None:
        """React to an event from the webhook transport"""
        logger.info(f"Received event: {event.name} with ID: {event.id}")
        if event.name != "push":
            logger.info(f"Ignoring {event.name} event")
            return
        process = self.process
        if process is None:
            logger.info("No application running yet, dropping push event")
            return
        self.supervisor.send(process, {"event": event.name, "id": event.id, "payload": event.payload})
        self.request("build")

    # Worker

    def start(self) -> None:
        """Start the worker thread that drains the request queue"""
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._work, name="orchestrator", daemon=True)
        self._worker.start()

    def wait_idle(self) -> None:
        """Block until every queued sequence has finished"""
        self._requests.join()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Drop queued sequences, wait for the running one, then stop the application"""
        self._closing.set()
        while True:
            try:
                self._requests.get_nowait()
            except queue.Empty:
                break
            self._requests.task_done()
        if self._worker is not None:
            self._requests.put(None)
            self._worker.join(timeout)
            self._worker = None
        with self._sequence_lock:
            process, self.process = self.process, None
            self.supervisor.stop(process)
            self.state = OrchestratorState.IDLE

    def _work(self) -> None:
        while True:
            operation = self._requests.get()
            try:
                if operation is None:
                    return
                if not self._closing.is_set():
                    operation()
            except Exception:
                # Keep the worker alive for the next trigger
                logger.exception("Unexpected error in deployment sequence")
                self.state = OrchestratorState.FAILED
            finally:
                self._requests.task_done()
