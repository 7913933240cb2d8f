"""Configuration loader for ptu-bridge."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


@dataclass(slots=True)
class SerialConfig:
    port: str = constants.DEFAULT_SERIAL_PORT
    baud: int = constants.DEFAULT_SERIAL_BAUD
    timeout_seconds: float = constants.DEFAULT_IO_TIMEOUT_SECONDS
    write_timeout_seconds: float = constants.DEFAULT_IO_TIMEOUT_SECONDS
    connect_timeout_seconds: float = constants.DEFAULT_IO_TIMEOUT_SECONDS


@dataclass(slots=True)
class DeviceConfig:
    protocol: str = constants.DEFAULT_PROTOCOL_FACTORY
    limits_enabled: bool = True
    dry_run: bool = False
    default_velocity: float = constants.DEFAULT_VELOCITY
    joint_name_prefix: str = constants.DEFAULT_JOINT_NAME_PREFIX


@dataclass(slots=True)
class ControlConfig:
    jog_step: float = constants.DEFAULT_JOG_STEP
    jog_min_period_seconds: float = constants.DEFAULT_JOG_MIN_PERIOD_SECONDS


@dataclass(slots=True)
class TelemetryConfig:
    rate_hz: float = constants.DEFAULT_POLL_RATE_HZ

    @property
    def period_seconds(self) -> float:
        return 1.0 / self.rate_hz


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    device_id: str = "ptu"
    keepalive: int = 60
    enabled: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    retry_delay_seconds: float = constants.DEFAULT_RETRY_DELAY_SECONDS
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class PtuConfig:
    serial: SerialConfig
    device: DeviceConfig
    control: ControlConfig
    telemetry: TelemetryConfig
    broker: BrokerConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path

    @property
    def topic_base(self) -> str:
        return f"{constants.DEFAULT_TOPIC_ROOT}/{self.broker.device_id}"


def build_default_config(path: Optional[Path] = None) -> PtuConfig:
    """Return a configuration populated only with defaults."""

    return PtuConfig(
        serial=SerialConfig(),
        device=DeviceConfig(),
        control=ControlConfig(),
        telemetry=TelemetryConfig(),
        broker=BrokerConfig(),
        logging=LoggingConfig(),
        resilience=ResilienceConfig(),
        raw=ConfigParser(),
        path=path or constants.DEFAULT_CONFIG_PATH,
    )


def load_config(path: Optional[Path] = None) -> PtuConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "serial": {
                "port": constants.DEFAULT_SERIAL_PORT,
                "baud": str(constants.DEFAULT_SERIAL_BAUD),
                "timeout_seconds": str(constants.DEFAULT_IO_TIMEOUT_SECONDS),
                "write_timeout_seconds": str(constants.DEFAULT_IO_TIMEOUT_SECONDS),
                "connect_timeout_seconds": str(constants.DEFAULT_IO_TIMEOUT_SECONDS),
            },
            "device": {
                "protocol": constants.DEFAULT_PROTOCOL_FACTORY,
                "limits_enabled": "true",
                "dry_run": "false",
                "default_velocity": str(constants.DEFAULT_VELOCITY),
                "joint_name_prefix": constants.DEFAULT_JOINT_NAME_PREFIX,
            },
            "control": {
                "jog_step": str(constants.DEFAULT_JOG_STEP),
                "jog_min_period_seconds": str(
                    constants.DEFAULT_JOG_MIN_PERIOD_SECONDS
                ),
            },
            "telemetry": {
                "rate_hz": str(constants.DEFAULT_POLL_RATE_HZ),
            },
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "device_id": "ptu",
                "keepalive": "60",
                "enabled": "true",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "resilience": {
                "retry_delay_seconds": str(constants.DEFAULT_RETRY_DELAY_SECONDS),
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    serial_defaults = SerialConfig()
    serial = SerialConfig(
        port=parser.get("serial", "port"),
        baud=parser.getint("serial", "baud", fallback=serial_defaults.baud),
        timeout_seconds=_positive_float(
            parser, "serial", "timeout_seconds", serial_defaults.timeout_seconds
        ),
        write_timeout_seconds=_positive_float(
            parser,
            "serial",
            "write_timeout_seconds",
            serial_defaults.write_timeout_seconds,
        ),
        connect_timeout_seconds=_positive_float(
            parser,
            "serial",
            "connect_timeout_seconds",
            serial_defaults.connect_timeout_seconds,
        ),
    )

    device = DeviceConfig(
        protocol=parser.get("device", "protocol").strip(),
        limits_enabled=parser.getboolean("device", "limits_enabled", fallback=True),
        dry_run=parser.getboolean("device", "dry_run", fallback=False),
        default_velocity=parser.getfloat(
            "device", "default_velocity", fallback=constants.DEFAULT_VELOCITY
        ),
        joint_name_prefix=parser.get(
            "device", "joint_name_prefix", fallback=constants.DEFAULT_JOINT_NAME_PREFIX
        ).strip(),
    )

    control = ControlConfig(
        jog_step=parser.getfloat(
            "control", "jog_step", fallback=constants.DEFAULT_JOG_STEP
        ),
        jog_min_period_seconds=max(
            0.0,
            parser.getfloat(
                "control",
                "jog_min_period_seconds",
                fallback=constants.DEFAULT_JOG_MIN_PERIOD_SECONDS,
            ),
        ),
    )

    telemetry = TelemetryConfig(
        rate_hz=_positive_float(
            parser, "telemetry", "rate_hz", constants.DEFAULT_POLL_RATE_HZ
        ),
    )

    broker = BrokerConfig(
        host=parser.get("broker", "host"),
        port=parser.getint("broker", "port", fallback=constants.DEFAULT_BROKER_PORT),
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        device_id=parser.get("broker", "device_id", fallback="ptu").strip() or "ptu",
        keepalive=max(1, parser.getint("broker", "keepalive", fallback=60)),
        enabled=parser.getboolean("broker", "enabled", fallback=True),
    )

    log_path_value = parser.get("logging", "path", fallback="").strip()
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        retry_delay_seconds=max(
            0.0,
            parser.getfloat(
                "resilience",
                "retry_delay_seconds",
                fallback=constants.DEFAULT_RETRY_DELAY_SECONDS,
            ),
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return PtuConfig(
        serial=serial,
        device=device,
        control=control,
        telemetry=telemetry,
        broker=broker,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )


def save_config(config: PtuConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)


def _positive_float(
    parser: ConfigParser, section: str, option: str, default: float
) -> float:
    try:
        value = parser.getfloat(section, option, fallback=default)
    except ValueError:
        return default
    if value <= 0:
        return default
    return value
