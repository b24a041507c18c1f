"""
Error types raised while running deployment sequences.

Everything derives from DeployError so a sequence can catch the whole family
in one place and turn it into a logged failure.
"""


class DeployError(Exception):
    """Base class for deployment failures"""


class TransportError(DeployError):
    """A command could not be started at all (bad cwd, missing executable)"""


class CommandFailure(DeployError):
    """A command ran and exited with a non-zero status"""

    def __init__(self, command: str, stderr: str = ""):
        self.command = command
        self.stderr = stderr
        message = f"Command failed: {command}"
        if stderr:
            message += f"\n{stderr.strip()}"
        super().__init__(message)


class ConfigError(DeployError):
    """The repository configuration file was rejected"""


class ConfigFileUnreadable(ConfigError):
    pass


class MissingConfigSection(ConfigError):
    pass


class MissingCommand(ConfigError):
    pass


class MissingSetupScripts(ConfigError):
    pass


class ProcessSpawnError(DeployError):
    """The managed process could not be spawned"""


class ProcessAlreadyRunning(RuntimeError):
    """start() was called while a managed process is still live"""
