"""
Loads the build configuration that ships inside the deployed repository.

The file is INI-formatted:

    [config]
    command = node server.js
    script[] = npm install
    script[] = npm run build

    [env]
    NODE_ENV = production

A configuration is validated as a whole; a rejected file never replaces the
configuration that is currently held.
"""

import configparser
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from cd_system import config
from cd_system.errors import (
    ConfigFileUnreadable,
    MissingCommand,
    MissingConfigSection,
    MissingSetupScripts,
)

logger = logging.getLogger(__name__)

# "key[] = value" lines, numbered before configparser sees them
ARRAY_KEY_REGEX = re.compile(r"^(\s*)([^\s=\[]+)\[\]\s*=", re.MULTILINE)
# "key[0]" style keys after numbering
INDEXED_KEY_REGEX = re.compile(r"^(.+)\[(\d*)\]$")
# Holds keys written above the first section header
ROOT_SECTION = "__root__"

Tree = Dict[str, Dict[str, str]]


@dataclass(frozen=True)
class RepositoryConfig:
    run_command: str
    setup_scripts: Tuple[str, ...]
    env_overlay: Dict[str, str] = field(default_factory=dict)

    @property
    def argv(self) -> List[str]:
        """Run command split on spaces into program and arguments"""
        return self.run_command.split()


def parse_config(text: str) -> Tree:
    """Parse INI text into {section: {key: value}}, keeping key case"""
    counters: Dict[str, int] = {}

    def number(match):
        key = match.group(2)
        index = counters.get(key, 0)
        counters[key] = index + 1
        return f"{match.group(1)}{key}[{index}] ="

    parser = configparser.ConfigParser(interpolation=None, strict=False, delimiters=("=",))
    parser.optionxform = str
    parser.read_string(f"[{ROOT_SECTION}]\n" + ARRAY_KEY_REGEX.sub(number, text))
    return {section: dict(parser[section]) for section in parser.sections() if section != ROOT_SECTION}


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _list_value(section: Dict[str, str], name: str) -> List[str]:
    """Collect a list from either a multi-line value or indexed keys"""
    if name in section:
        values = section[name].splitlines()
    else:
        values = []
        for key, value in section.items():
            match = INDEXED_KEY_REGEX.match(key)
            if match and match.group(1) == name:
                values.append(value)
    return [_unquote(v) for v in values if _unquote(v)]


def validate(tree: Tree) -> RepositoryConfig:
    """Turn a parsed tree into a RepositoryConfig, failing on the first missing field"""
    section = tree.get("config")
    if section is None:
        raise MissingConfigSection("No config found in config file.")

    command = _unquote(section.get("command") or "")
    if not command:
        raise MissingCommand("No command found in config file.")

    scripts = _list_value(section, "script")
    if not scripts:
        raise MissingSetupScripts("No script for setup installation found in config file.")

    env = {key: _unquote(str(value)) for key, value in tree.get("env", {}).items()}
    return RepositoryConfig(command, tuple(scripts), env)


class ConfigStore:
    """Holds the current RepositoryConfig of a checkout"""

    def __init__(self, repo_dir: str, parser: Callable[[str], Tree] = parse_config):
        self.repo_dir = repo_dir
        self.parser = parser
        self.config: Optional[RepositoryConfig] = None

    def load(self, path: str = config.CONFIG_FILE) -> RepositoryConfig:
        """Read, parse and validate path (relative to the checkout)"""
        file_path = os.path.join(self.repo_dir, path)
        logger.info(f"Loading configuration from {file_path}")
        try:
            with open(file_path, "r") as f:
                text = f.read()
        except OSError as e:
            raise ConfigFileUnreadable(f"Failed to read {file_path}: {e}") from e

        try:
            tree = self.parser(text)
        except configparser.Error as e:
            raise ConfigFileUnreadable(f"Failed to parse {file_path}: {e}") from e

        loaded = validate(tree)
        # Only a fully valid config replaces the current one
        self.config = loaded
        return loaded
