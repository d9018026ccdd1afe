import logging
import os
from argparse import ArgumentDefaultsHelpFormatter, ArgumentParser
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from yaml import YAMLError, safe_load

from retention.models import DigestSource, RetentionRule

DEFAULT_RULES_FILE = "config.properties"
DEFAULT_LOG_FILE = "logs/cleaner.log"
DEFAULT_TIMEOUT = 10
DEFAULT_INTERVAL_MINUTES = 15
MAX_CONCURRENT_REPOSITORIES = 5
LOG_FORMAT = "[%(asctime)s] [%(levelname)-8s] |> %(message)s"
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

PROXY_SCHEMES = {"http", "https", "socks5", "socks5h"}
TRUE_VALUES = {"1", "t", "true", "yes", "on"}
FALSE_VALUES = {"", "0", "f", "false", "no", "off"}


class ConfigError(Exception):
    """Configuration is unreadable or invalid; nothing may be deleted."""


class Args(BaseModel):
    rules: Path = Path(DEFAULT_RULES_FILE)
    dry_run: bool = False
    watch: bool = False
    interval_minutes: int = DEFAULT_INTERVAL_MINUTES
    http_logs: bool = False
    log_file: Path = Path(DEFAULT_LOG_FILE)

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> "Args":
        parser = ArgumentParser(
            description="Keeps the last N numeric tags of every configured repository",
            formatter_class=ArgumentDefaultsHelpFormatter,
        )
        parser.add_argument(
            "--rules",
            help="Retention rules file: 'repository=count' lines or a YAML mapping",
            required=False,
            default=DEFAULT_RULES_FILE,
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="The application will generate logs without actually deleting the images",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--watch",
            action="store_true",
            help="Repeat the cleanup every --interval minutes until interrupted",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--interval",
            type=int,
            help="Minutes between two cleanups in watch mode",
            required=False,
            default=DEFAULT_INTERVAL_MINUTES,
        )
        parser.add_argument(
            "--http-logs",
            action="store_true",
            help="Enable http logs for every request",
            required=False,
            default=False,
        )
        parser.add_argument(
            "--log-file",
            help="File that receives a copy of every log line",
            required=False,
            default=DEFAULT_LOG_FILE,
        )
        args = parser.parse_args(argv)
        if args.interval <= 0:
            parser.error("--interval must be greater than 0")

        return cls(
            rules=Path(args.rules),
            dry_run=args.dry_run,
            watch=args.watch,
            interval_minutes=args.interval,
            http_logs=args.http_logs,
            log_file=Path(args.log_file),
        )


class RegistryClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    base_url: str
    insecure_transport: bool = False
    timeout: float = DEFAULT_TIMEOUT
    username: str | None = None
    password: str | None = None
    proxy: str | None = None
    digest_source: DigestSource = DigestSource.CONFIG
    max_concurrent_repositories: int = MAX_CONCURRENT_REPOSITORIES

    @field_validator("base_url")
    @classmethod
    def set_base_url(cls, value: str) -> str:
        value = value.strip().rstrip("/")
        parsed = urlparse(value)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(
                "registry url must be a valid url: <scheme>://<address>[:port][/v2]"
            )
        if not value.endswith("/v2"):
            logging.warning("For API endpoints, will be used '/v2' as path")
            value = f"{value}/v2"
        return value

    @field_validator("timeout")
    @classmethod
    def set_timeout(cls, value: float) -> float:
        if not 0 < value <= 120:
            logging.error(f"Timeout must be in range 1-120. Set {DEFAULT_TIMEOUT}")
            return DEFAULT_TIMEOUT
        return value

    @field_validator("max_concurrent_repositories")
    @classmethod
    def set_max_concurrent_repositories(cls, value: int) -> int:
        if value <= 0:
            logging.error(
                "Max_concurrent_repositories must be greater than 0. "
                f"Set {MAX_CONCURRENT_REPOSITORIES}"
            )
            return MAX_CONCURRENT_REPOSITORIES
        return value

    @field_validator("proxy")
    @classmethod
    def set_proxy(cls, value: str | None) -> str | None:
        if not value:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in PROXY_SCHEMES or not parsed.netloc:
            raise ValueError(
                "proxy must be a valid url: <http|https|socks5|socks5h>://<address>[:port]; "
                "Remove value or fix it"
            )
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RegistryClientConfig":
        env = os.environ if environ is None else environ
        host = env.get("REGISTRY_HOST", "").strip()
        if not host:
            raise ConfigError(
                "REGISTRY_HOST is not set. Use e.g. REGISTRY_HOST=https://registry.example.com/v2/"
            )

        data: dict[str, Any] = {
            "base_url": host,
            "insecure_transport": parse_bool(env.get("INSECURE_REGISTRY", "")),
            "username": env.get("REGISTRY_USERNAME") or None,
            "password": env.get("REGISTRY_PASSWORD") or None,
            "proxy": env.get("REGISTRY_PROXY") or None,
        }
        optional = {
            "timeout": "REGISTRY_TIMEOUT",
            "digest_source": "REGISTRY_DIGEST_SOURCE",
            "max_concurrent_repositories": "MAX_CONCURRENT_REPOSITORIES",
        }
        for field, var in optional.items():
            if env.get(var, "").strip():
                data[field] = env[var].strip()

        if bool(data["username"]) != bool(data["password"]):
            raise ConfigError(
                "Set both REGISTRY_USERNAME and REGISTRY_PASSWORD, or neither of them"
            )

        try:
            return cls.model_validate(data)
        except ValidationError as err:
            raise ConfigError(f"Invalid registry settings: {err}") from err


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized not in FALSE_VALUES:
        logging.warning(f"Cannot parse {value!r} as a boolean, treating it as false")
    return False


def parse_properties(text: str) -> dict[str, str]:
    """Parse 'key=value' lines into a mapping.

    Lines starting with '#' are comments. The key is everything before the
    first '=', both sides are trimmed, lines without a key are ignored and
    a repeated key keeps its last value.
    """
    config: dict[str, str] = {}
    for line in text.splitlines():
        if line.lstrip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        config[key] = value.strip()
    return config


def parse_yaml_rules(text: str) -> dict[str, Any]:
    try:
        data = safe_load(text)
    except YAMLError as err:
        raise ConfigError(f"Invalid YAML in retention rules: {err}") from err
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            "YAML retention rules must be a mapping of 'repository: count'"
        )
    return {str(key).strip(): value for key, value in data.items()}


def load_rules(path: Path | str) -> dict[str, RetentionRule]:
    path = Path(path)
    logging.info(f"Parsing configuration {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise ConfigError(f"Unable to read retention rules from {path}: {err}") from err

    if path.suffix in (".yml", ".yaml"):
        raw_rules = parse_yaml_rules(text)
    else:
        raw_rules = parse_properties(text)

    rules: dict[str, RetentionRule] = {}
    for repository, count in raw_rules.items():
        try:
            rule = RetentionRule(repository=repository, keep_count=count)
        except ValidationError:
            logging.warning(
                f"Skipping rule for '{repository}': retention count {count!r} "
                "is not a non-negative integer"
            )
            continue
        rules[rule.repository] = rule

    if not rules:
        logging.warning(f"No valid retention rules found in {path}")
    return rules
