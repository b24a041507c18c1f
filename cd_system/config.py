"""
This module defines constants for the continuous-deployment daemon.
It includes the HTTP listener defaults, the repository configuration file name,
process supervision timings, the control channel variable and logging levels.
It also resolves the daemon settings that come from the environment.
"""

import os
from dataclasses import dataclass

# Repository configuration file, read from the root of the checkout
CONFIG_FILE = "hf.conf"

# Network configurations
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 7860
WEBHOOK_PATH = "/webhook"

# Process supervision
STOP_GRACE_PERIOD = 5  # Seconds between SIGTERM and SIGKILL
CONTROL_FD_ENV = "CD_CONTROL_FD"  # Tells the child which fd is its control channel

# Logging configuration
LOG_LEVEL = "INFO"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class SettingsError(Exception):
    """Raised when a required daemon setting is missing"""


def extract_repo_name(url):
    """Return the checkout directory name for a repository URL"""
    if not url:
        return None
    name = url.rstrip("/").split("/")[-1]
    return name[:-4] if name.endswith(".git") else name


@dataclass
class DaemonSettings:
    git_url: str
    webhook_secret: str
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    workdir: str = ""
    config_file: str = CONFIG_FILE

    def __post_init__(self):
        if not extract_repo_name(self.git_url):
            raise SettingsError("Please provide $GIT_URL environment variable.")
        if not self.webhook_secret:
            raise SettingsError("Please provide $WEBHOOK_SECRET environment variable.")
        if not self.workdir:
            self.workdir = extract_repo_name(self.git_url)

    @classmethod
    def from_env(cls, environ=None, **overrides):
        """Build settings from environment variables; non-None overrides win"""
        environ = os.environ if environ is None else environ
        values = {
            "git_url": environ.get("GIT_URL", ""),
            "webhook_secret": environ.get("WEBHOOK_SECRET", ""),
            "port": int(environ.get("PORT", DEFAULT_PORT)),
            "config_file": environ.get("CD_CONFIG_FILE", CONFIG_FILE),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
