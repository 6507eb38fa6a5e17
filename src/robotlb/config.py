# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Process-wide configuration.

Values come from the command line, ``ROBOTLB_*`` environment variables or
an optional YAML file, in that order of precedence. The parsers in this
module are shared with the per-service annotation resolver so that a
default and an annotation are validated the same way.
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import pathlib
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import yaml

from robotlb import consts
from robotlb.errors import ConfigError, InvalidValue

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def parse_int(key: str, raw: Any, minimum: int = 0) -> int:
    try:
        value = int(str(raw).strip())
    except ValueError as e:
        raise InvalidValue(key, str(raw), "expected an integer") from e
    if value < minimum:
        raise InvalidValue(key, str(raw), f"must be at least {minimum}")
    return value


def parse_bool(key: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise InvalidValue(key, str(raw), "expected true or false")


def parse_algorithm(key: str, raw: str) -> str:
    text = str(raw).strip()
    if text not in consts.ALGORITHMS:
        raise InvalidValue(key, text, f"expected one of {', '.join(consts.ALGORITHMS)}")
    return text


def parse_name(key: str, raw: str) -> str:
    """Validate a cloud identifier such as a location code or balancer type."""
    text = str(raw).strip()
    if not _NAME_PATTERN.match(text):
        raise InvalidValue(key, text, "expected a lowercase alphanumeric name")
    return text


def parse_private_ip(key: str, raw: str | None) -> str | None:
    """Parse an optional private IPv4 address.

    Returns a normalized IP string or None if unset.
    """
    if raw is None:
        return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        return str(ipaddress.IPv4Address(text))
    except ValueError as e:
        raise InvalidValue(key, text, "expected an IPv4 address") from e


def parse_optional(key: str, raw: str | None) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


@dataclass(frozen=True)
class Defaults:
    """Values used for every service annotation that is not set."""

    network: str | None = None
    dynamic_node_selector: bool = False
    check_interval: int = consts.DEFAULT_LB_INTERVAL
    timeout: int = consts.DEFAULT_LB_TIMEOUT
    retries: int = consts.DEFAULT_LB_RETRIES
    location: str = consts.DEFAULT_LB_LOCATION
    balancer_type: str = consts.DEFAULT_LB_TYPE
    algorithm: str = consts.DEFAULT_LB_ALGORITHM
    proxy_mode: bool = False
    ipv6_ingress: bool = False


@dataclass(frozen=True)
class OperatorConfig:
    hcloud_token: str
    defaults: Defaults = field(default_factory=Defaults)
    workers: int = 4
    resync_period: float = 30.0
    debounce: float = 1.0
    max_backoff: float = 300.0
    log_level: str = "INFO"


# (option name, parser, help). Option "foo-bar" maps to env ROBOTLB_FOO_BAR
# and file key "foo_bar".
_OPTIONS: tuple[tuple[str, Any, str], ...] = (
    ("hcloud-token", parse_optional, "Hetzner Cloud API token"),
    ("default-network", parse_optional, "network to attach balancers to"),
    (
        "dynamic-node-selector",
        parse_bool,
        "target the nodes running the service's pods instead of using node selectors",
    ),
    ("default-lb-interval", parse_int, "health check interval in seconds"),
    ("default-lb-timeout", parse_int, "health check timeout in seconds"),
    ("default-lb-retries", parse_int, "health check retries"),
    ("default-lb-location", parse_name, "location of new balancers"),
    ("default-balancer-type", parse_name, "type of new balancers"),
    ("default-lb-algorithm", parse_algorithm, "balancing algorithm of new balancers"),
    ("default-lb-proxy-mode", parse_bool, "enable the proxy protocol"),
    ("ipv6-ingress", parse_bool, "publish the balancer's IPv6 address in the service status"),
    ("workers", parse_int, "number of concurrent reconciliations"),
    ("resync-period", parse_int, "seconds between periodic reconciliations of a service"),
    ("debounce", parse_int, "seconds to wait for more events before reconciling"),
    ("max-backoff", parse_int, "upper bound in seconds for the retry delay"),
    ("log-level", parse_optional, "log level"),
)


_ZERO_ALLOWED = {"default-lb-retries", "debounce"}


def _env_name(option: str) -> str:
    return "ROBOTLB_" + option.upper().replace("-", "_")


def _load_file(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    try:
        data = yaml.safe_load(pathlib.Path(path).read_text())
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return {str(k).replace("_", "-"): v for k, v in data.items()}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="robotlb",
        description="Manage Hetzner Cloud load balancers for Kubernetes LoadBalancer services.",
    )
    parser.add_argument("--config-file", help="YAML file with default option values")
    for option, _, help_text in _OPTIONS:
        parser.add_argument(f"--{option}", help=f"{help_text} (env {_env_name(option)})")
    return parser


def load_config(
    argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None
) -> OperatorConfig:
    """Build the operator configuration.

    Raises ConfigError if any value is invalid or the token is missing.
    """
    environ = os.environ if environ is None else environ
    args = vars(_build_parser().parse_args(argv))
    file_values = _load_file(args.get("config_file") or environ.get("ROBOTLB_CONFIG_FILE"))

    values: dict[str, Any] = {}
    for option, parse, _ in _OPTIONS:
        raw = args.get(option.replace("-", "_"))
        if raw is None:
            raw = environ.get(_env_name(option))
        if raw is None:
            raw = file_values.get(option)
        if raw is None:
            continue
        if parse is parse_int:
            minimum = 0 if option in _ZERO_ALLOWED else 1
            values[option] = parse_int(option, raw, minimum=minimum)
        else:
            values[option] = parse(option, raw)

    token = values.get("hcloud-token")
    if not token:
        raise ConfigError(f"hcloud-token must be set (or {_env_name('hcloud-token')})")

    builtin = Defaults()
    defaults = Defaults(
        network=values.get("default-network", builtin.network),
        dynamic_node_selector=values.get("dynamic-node-selector", builtin.dynamic_node_selector),
        check_interval=values.get("default-lb-interval", builtin.check_interval),
        timeout=values.get("default-lb-timeout", builtin.timeout),
        retries=values.get("default-lb-retries", builtin.retries),
        location=values.get("default-lb-location", builtin.location),
        balancer_type=values.get("default-balancer-type", builtin.balancer_type),
        algorithm=values.get("default-lb-algorithm", builtin.algorithm),
        proxy_mode=values.get("default-lb-proxy-mode", builtin.proxy_mode),
        ipv6_ingress=values.get("ipv6-ingress", builtin.ipv6_ingress),
    )

    log_level = str(values.get("log-level", "INFO")).upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise InvalidValue("log-level", log_level, "expected a logging level name")

    builtin_config = OperatorConfig(hcloud_token=token)
    return OperatorConfig(
        hcloud_token=token,
        defaults=defaults,
        workers=values.get("workers", builtin_config.workers),
        resync_period=float(values.get("resync-period", builtin_config.resync_period)),
        debounce=float(values.get("debounce", builtin_config.debounce)),
        max_backoff=float(values.get("max-backoff", builtin_config.max_backoff)),
        log_level=log_level,
    )
