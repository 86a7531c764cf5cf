# subsplitctl/config.py
import json
import os
import types
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .models import ProjectDefinition

# Worker PIDs and detached worker output live in a hidden directory in the user's home folder
APP_DIR = os.path.join(os.path.expanduser('~'), '.subsplitctl')
PID_FILE = os.path.join(APP_DIR, 'subsplitctl.pid')
LOG_FILE = os.path.join(APP_DIR, 'worker.log')

CONFIG_ENVVAR = 'SUBSPLITCTL_CONFIG'
CONFIG_CANDIDATES = ('config.json', 'config.json.dist')

DEFAULT_CONFIG = {
    'working_directory': os.path.join('/var/tmp', 'subsplitctl'),
    'redis': {
        'host': 'localhost',
        'port': 6379,
        'db': 0,
        'password': None,
        'url': None,
        'prefix': 'dflydev-git-subsplit',
    },
}


class ConfigError(ValueError):
    """Raised when the configuration file is missing or malformed."""


@dataclass(frozen=True)
class RedisSettings:
    host: str = 'localhost'
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None
    prefix: str = 'dflydev-git-subsplit'


@dataclass(frozen=True)
class Config:
    working_directory: str
    projects: Mapping[str, ProjectDefinition]
    redis: RedisSettings = field(default_factory=RedisSettings)
    source: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'working-directory': self.working_directory,
            'redis': {
                'host': self.redis.host,
                'port': self.redis.port,
                'db': self.redis.db,
                'password': '***' if self.redis.password else None,
                'url': self.redis.url,
                'prefix': self.redis.prefix,
            },
            'projects': {name: p.to_dict() for name, p in self.projects.items()},
        }


def _normalize_key(key: str) -> str:
    """Normalize config keys to a canonical form.
    - lowercases
    - converts hyphens to underscores
    - trims surrounding whitespace
    """
    if key is None:
        return key
    return key.strip().lower().replace('-', '_')


def _normalize(section: dict) -> dict:
    return {_normalize_key(k): v for k, v in section.items()}


def _parse_project(name: str, raw) -> ProjectDefinition:
    if not isinstance(raw, dict):
        raise ConfigError(f"Project '{name}' must be an object.")
    data = _normalize(raw)

    url = data.get('url')
    if not isinstance(url, str) or not url:
        raise ConfigError(f"Project '{name}' must define a 'url'.")

    repository_url = data.get('repository_url')
    if repository_url is not None and not isinstance(repository_url, str):
        raise ConfigError(f"Project '{name}' has an invalid 'repository-url'.")

    splits = data.get('splits', [])
    if isinstance(splits, str):
        splits = [splits]
    if not isinstance(splits, list) or not all(isinstance(s, str) for s in splits):
        raise ConfigError(f"Project '{name}' must define 'splits' as a list of strings.")
    if not splits:
        raise ConfigError(f"Project '{name}' has no splits configured.")

    return ProjectDefinition(
        name=name,
        url=url,
        splits=tuple(splits),
        repository_url=repository_url or None,
    )


def _parse_redis(raw) -> RedisSettings:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError("'redis' must be an object.")
    values = dict(DEFAULT_CONFIG['redis'])
    values.update(_normalize(raw))
    try:
        return RedisSettings(
            host=str(values['host']),
            port=int(values['port']),
            db=int(values['db']),
            password=values['password'],
            url=values['url'],
            prefix=str(values['prefix']),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid redis settings: {e}") from e


def parse_config(raw: dict, source: str = None) -> Config:
    """
    Builds an immutable Config from the decoded configuration file.
    Project order is preserved; it decides which project wins on a URL match.
    """
    if not isinstance(raw, dict):
        raise ConfigError("Configuration must be a JSON object.")
    data = _normalize(raw)

    projects_raw = data.get('projects')
    if not isinstance(projects_raw, dict):
        raise ConfigError("Configuration must define 'projects' as an object.")

    projects = {}
    for name, project in projects_raw.items():
        projects[name] = _parse_project(name, project)

    working_directory = data.get('working_directory') or DEFAULT_CONFIG['working_directory']
    if not isinstance(working_directory, str):
        raise ConfigError("'working-directory' must be a path.")

    return Config(
        working_directory=os.path.abspath(os.path.expanduser(working_directory)),
        projects=types.MappingProxyType(projects),
        redis=_parse_redis(data.get('redis')),
        source=source,
    )


def find_config_file(path: str = None) -> str:
    """
    Returns the config file to use: the explicit path if given,
    otherwise config.json, falling back to config.json.dist.
    """
    if path:
        if not os.path.exists(path):
            raise ConfigError(f"Config file '{path}' not found.")
        return path

    for candidate in CONFIG_CANDIDATES:
        if os.path.exists(candidate):
            return candidate

    raise ConfigError(f"No config file found (looked for {', '.join(CONFIG_CANDIDATES)}).")


def load_config(path: str = None) -> Config:
    """
    Reads and validates the configuration file. Called once at startup.
    """
    config_path = find_config_file(path)
    try:
        with open(config_path, 'r') as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file '{config_path}' is not valid JSON: {e}") from e
    except OSError as e:
        raise ConfigError(f"Unable to read config file '{config_path}': {e}") from e

    return parse_config(raw, source=os.path.abspath(config_path))
