"""Configuration loader for fleetlink."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from . import constants


@dataclass(slots=True)
class TelemetryConfig:
    url: str = constants.DEFAULT_TELEMETRY_URL
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_attempts: int = 5
    heartbeat_interval_seconds: float = 15.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class CommandConfig:
    host: str = constants.DEFAULT_COMMAND_HOST
    base_port: int = constants.DEFAULT_COMMAND_BASE_PORT
    url_template: Optional[str] = None  # e.g. ws://{host}:{port}/{uuid}
    connect_timeout_seconds: float = 10.0
    bootstrap_on_connect: bool = True
    bootstrap_delay_seconds: float = 2.0


@dataclass(slots=True)
class TaskConfig:
    poll_interval_seconds: float = 1.0
    settle_seconds: float = 2.0
    default_step_timeout_seconds: float = 30.0
    height_tolerance: float = 0.1
    heading_tolerance: float = 3.0


@dataclass(slots=True)
class RegistryConfig:
    base_url: str = constants.DEFAULT_REGISTRY_URL
    request_timeout_seconds: float = 10.0
    api_token: Optional[str] = None


@dataclass(slots=True)
class HistoryConfig:
    enabled: bool = False
    path: Path = constants.DEFAULT_HISTORY_PATH
    immediate_interval_seconds: float = 30.0
    flush_interval_seconds: float = 5.0


@dataclass(slots=True)
class SensorConfig:
    enabled: bool = False
    broker_host: str = constants.DEFAULT_SENSOR_BROKER_HOST
    broker_port: int = constants.DEFAULT_SENSOR_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    topics: Dict[str, int] = field(default_factory=dict)  # topic -> device id


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class FleetLinkConfig:
    telemetry: TelemetryConfig
    resilience: ResilienceConfig
    commands: CommandConfig
    tasks: TaskConfig
    registry: RegistryConfig
    history: HistoryConfig
    sensors: SensorConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path


def _parse_topics(value: str) -> Dict[str, int]:
    topics: Dict[str, int] = {}
    for item in value.split(","):
        topic, separator, device = item.strip().rpartition("=")
        if not separator or not topic.strip():
            continue
        try:
            topics[topic.strip()] = int(device)
        except ValueError:
            continue
    return topics


def _optional(parser: ConfigParser, section: str, option: str) -> Optional[str]:
    value = parser.get(section, option, fallback=None)
    if value is None or not value.strip():
        return None
    return value.strip()


def load_config(path: Optional[Path] = None) -> FleetLinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser(interpolation=None)
    parser.read_dict(
        {
            "telemetry": {
                "url": constants.DEFAULT_TELEMETRY_URL,
                "connect_timeout_seconds": "10.0",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_attempts": "5",
                "heartbeat_interval_seconds": "15",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
            "commands": {
                "host": constants.DEFAULT_COMMAND_HOST,
                "base_port": str(constants.DEFAULT_COMMAND_BASE_PORT),
                "connect_timeout_seconds": "10.0",
                "bootstrap_on_connect": "true",
                "bootstrap_delay_seconds": "2.0",
            },
            "tasks": {
                "poll_interval_seconds": "1.0",
                "settle_seconds": "2.0",
                "default_step_timeout_seconds": "30",
                "height_tolerance": "0.1",
                "heading_tolerance": "3.0",
            },
            "registry": {
                "base_url": constants.DEFAULT_REGISTRY_URL,
                "request_timeout_seconds": "10.0",
            },
            "history": {
                "enabled": "false",
                "path": str(constants.DEFAULT_HISTORY_PATH),
                "immediate_interval_seconds": "30",
                "flush_interval_seconds": "5",
            },
            "sensors": {
                "enabled": "false",
                "broker_host": constants.DEFAULT_SENSOR_BROKER_HOST,
                "broker_port": str(constants.DEFAULT_SENSOR_BROKER_PORT),
                "topics": "",
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    telemetry = TelemetryConfig(
        url=parser.get("telemetry", "url"),
        connect_timeout_seconds=max(
            0.1, parser.getfloat("telemetry", "connect_timeout_seconds", fallback=10.0)
        ),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=max(
            0.01,
            parser.getfloat("resilience", "reconnect_initial_seconds", fallback=1.0),
        ),
        reconnect_max_attempts=max(
            0, parser.getint("resilience", "reconnect_max_attempts", fallback=5)
        ),
        heartbeat_interval_seconds=max(
            0.1,
            parser.getfloat("resilience", "heartbeat_interval_seconds", fallback=15.0),
        ),
        health_enabled=parser.getboolean("resilience", "health_enabled", fallback=False),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    commands = CommandConfig(
        host=parser.get("commands", "host"),
        base_port=parser.getint(
            "commands", "base_port", fallback=constants.DEFAULT_COMMAND_BASE_PORT
        ),
        url_template=_optional(parser, "commands", "url_template"),
        connect_timeout_seconds=max(
            0.1, parser.getfloat("commands", "connect_timeout_seconds", fallback=10.0)
        ),
        bootstrap_on_connect=parser.getboolean(
            "commands", "bootstrap_on_connect", fallback=True
        ),
        bootstrap_delay_seconds=max(
            0.0, parser.getfloat("commands", "bootstrap_delay_seconds", fallback=2.0)
        ),
    )

    task_defaults = TaskConfig()
    tasks = TaskConfig(
        poll_interval_seconds=max(
            0.01,
            parser.getfloat(
                "tasks",
                "poll_interval_seconds",
                fallback=task_defaults.poll_interval_seconds,
            ),
        ),
        settle_seconds=max(
            0.0,
            parser.getfloat(
                "tasks", "settle_seconds", fallback=task_defaults.settle_seconds
            ),
        ),
        default_step_timeout_seconds=max(
            0.1,
            parser.getfloat(
                "tasks",
                "default_step_timeout_seconds",
                fallback=task_defaults.default_step_timeout_seconds,
            ),
        ),
        height_tolerance=parser.getfloat(
            "tasks", "height_tolerance", fallback=task_defaults.height_tolerance
        ),
        heading_tolerance=parser.getfloat(
            "tasks", "heading_tolerance", fallback=task_defaults.heading_tolerance
        ),
    )

    registry = RegistryConfig(
        base_url=parser.get("registry", "base_url"),
        request_timeout_seconds=max(
            0.1, parser.getfloat("registry", "request_timeout_seconds", fallback=10.0)
        ),
        api_token=_optional(parser, "registry", "api_token"),
    )

    history = HistoryConfig(
        enabled=parser.getboolean("history", "enabled", fallback=False),
        path=Path(
            _optional(parser, "history", "path") or constants.DEFAULT_HISTORY_PATH
        ).expanduser(),
        immediate_interval_seconds=max(
            0.0,
            parser.getfloat("history", "immediate_interval_seconds", fallback=30.0),
        ),
        flush_interval_seconds=max(
            0.1, parser.getfloat("history", "flush_interval_seconds", fallback=5.0)
        ),
    )

    broker_host_value = parser.get("sensors", "broker_host")
    broker_port_value = parser.getint(
        "sensors", "broker_port", fallback=constants.DEFAULT_SENSOR_BROKER_PORT
    )
    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            broker_port_value = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            parser.set("sensors", "broker_host", host_part)
            parser.set("sensors", "broker_port", str(broker_port_value))

    sensors = SensorConfig(
        enabled=parser.getboolean("sensors", "enabled", fallback=False),
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=_optional(parser, "sensors", "username"),
        password=_optional(parser, "sensors", "password"),
        topics=_parse_topics(parser.get("sensors", "topics", fallback="")),
    )

    log_path_value = _optional(parser, "logging", "path")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return FleetLinkConfig(
        telemetry=telemetry,
        resilience=resilience,
        commands=commands,
        tasks=tasks,
        registry=registry,
        history=history,
        sensors=sensors,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: FleetLinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
