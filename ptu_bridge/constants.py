"""Constants used across the ptu-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "ptu-bridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_SERIAL_PORT = "/dev/ttyUSB0"
DEFAULT_SERIAL_BAUD = 9600
DEFAULT_IO_TIMEOUT_SECONDS = 0.2

DEFAULT_POLL_RATE_HZ = 10.0
DEFAULT_VELOCITY = 0.6
DEFAULT_JOINT_NAME_PREFIX = "ptu_"
DEFAULT_JOG_STEP = 0.01
DEFAULT_JOG_MIN_PERIOD_SECONDS = 0.25
DEFAULT_RETRY_DELAY_SECONDS = 1.0

DEFAULT_PROTOCOL_FACTORY = "ptu_bridge.backends.simulated:SimulatedPtu"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_TOPIC_ROOT = "ptu"
