import os
import sys
import time
import json
import math
import shutil
import signal
import sqlite3
import logging
import argparse
import threading
import subprocess
from enum import Enum
from dataclasses import dataclass, asdict, replace, fields
from typing import Tuple, Optional, Dict, Any, List, NamedTuple
from multiprocessing import Process
from http.server import HTTPServer, BaseHTTPRequestHandler
from urllib.parse import urlparse

import psutil


# Set up module logger
logger = logging.getLogger(__name__)

__version__ = "1.0.0"


# ---------------------------
# Errors
# ---------------------------
class LoadgenError(Exception):
    """Base class for loadgen errors."""


class ConfigError(LoadgenError):
    """Configuration could not be loaded or is inconsistent."""


class MeasurementUnavailable(LoadgenError):
    """A counter source (/proc/stat, NIC statistics) is missing or unreadable."""


class ActuatorUnavailable(LoadgenError):
    """An external load generator cannot be started."""


# ---------------------------
# Env / config
# ---------------------------
DEFAULT_CONFIG_FILE = "/etc/loadgen.conf"

CONFIG_DEFAULTS = {
    "CPU_TARGET_PERCENT": "30",
    "BANDWIDTH_TARGET_MBPS": "10",
    "MAX_CPU_PERCENT": "90",
    "MAX_BANDWIDTH_MBPS": "1000",
    "MIN_ADJUSTMENT_THRESHOLD": "5",
    "MONITOR_INTERVAL": "5",
    "ADJUSTMENT_INTERVAL": "30",
    "REPORT_INTERVAL": "60",
    "DOWNLOAD_URLS": "",
    "NET_INTERFACE": "auto",
    "PER_SERVER_EXPECTED_MBPS": "650",
    "SAFETY_VIOLATION_LIMIT": "3",
    "SHUTDOWN_GRACE_SEC": "1",
    "STATE_FILE": "/var/lib/loadgen/state.json",
    "METRICS_DB": "/var/lib/loadgen/metrics.db",
    "METRICS_RETENTION_DAYS": "7",
    "STATUS_ENABLED": "true",
    "STATUS_HOST": "127.0.0.1",
    "STATUS_PORT": "8080",
    "LOG_LEVEL": "INFO",
}

# (min, max) accepted for interval and sizing keys
_POSITIVE_BOUNDS = {
    'MONITOR_INTERVAL': (0.5, 3600.0),
    'ADJUSTMENT_INTERVAL': (1.0, 3600.0),
    'REPORT_INTERVAL': (1.0, 86400.0),
    'PER_SERVER_EXPECTED_MBPS': (1.0, 100000.0),
    'SHUTDOWN_GRACE_SEC': (0.1, 60.0),
}

_INT_BOUNDS = {
    'SAFETY_VIOLATION_LIMIT': (1, 1000),
    'METRICS_RETENTION_DAYS': (1, 365),
    'STATUS_PORT': (1024, 65535),
}

_NON_NEGATIVE_KEYS = ('BANDWIDTH_TARGET_MBPS', 'MAX_BANDWIDTH_MBPS', 'MIN_ADJUSTMENT_THRESHOLD')

_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'WARN', 'ERROR', 'CRITICAL')


def _validate_config_value(key, value):
    """
    Validate a single configuration value.

    Args:
        key (str): Configuration key name
        value (str): Raw configuration value

    Raises:
        ValueError: If value is invalid for the given key
    """
    if key.endswith('_PERCENT'):
        try:
            pct = float(value)
        except ValueError:
            raise ValueError(f"{key}={value} must be a valid number (percentage)")
        if not 0 <= pct <= 100:
            raise ValueError(f"{key}={value} must be between 0-100 (percentage)")

    elif key in _NON_NEGATIVE_KEYS:
        try:
            num = float(value)
        except ValueError:
            raise ValueError(f"{key}={value} must be a valid number")
        if num < 0 or not math.isfinite(num):
            raise ValueError(f"{key}={value} must be a finite number >= 0")

    elif key in _POSITIVE_BOUNDS:
        try:
            num = float(value)
        except ValueError:
            raise ValueError(f"{key}={value} must be a valid positive number")
        min_val, max_val = _POSITIVE_BOUNDS[key]
        if not min_val <= num <= max_val:
            raise ValueError(f"{key}={value} must be between {min_val}-{max_val}")

    elif key in _INT_BOUNDS:
        try:
            int_value = int(float(value))
        except (ValueError, OverflowError):
            raise ValueError(f"{key}={value} must be a valid integer")
        if int_value != float(value):
            raise ValueError(f"{key}={value} must be an integer")
        min_val, max_val = _INT_BOUNDS[key]
        if not min_val <= int_value <= max_val:
            raise ValueError(f"{key}={value} must be integer between {min_val}-{max_val}")

    elif key.endswith('_ENABLED'):
        if value.lower() not in ['true', 'false', '1', '0', 'yes', 'no']:
            raise ValueError(f"{key}={value} must be true/false or 1/0")

    elif key == 'LOG_LEVEL':
        if value.upper() not in _LOG_LEVELS:
            raise ValueError(f"{key}={value} must be one of: {', '.join(_LOG_LEVELS)}")

    elif key == 'DOWNLOAD_URLS':
        for url in _split_list(value):
            if urlparse(url).scheme not in ('http', 'https', 'ftp'):
                raise ValueError(f"{key} contains invalid URL '{url}'. Use http(s):// or ftp:// URLs")

    elif key == 'NET_INTERFACE':
        if '/' in value or value.startswith('.'):
            raise ValueError(f"{key}={value} is not a valid interface name")


def _split_list(value):
    """Split a whitespace or comma separated list, dropping empty items."""
    return [item for item in value.replace(",", " ").split() if item]


def _parse_boolean(value):
    """Parse a boolean value from string with consistent truthy/falsy handling."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on", "enabled"}


def load_config_file(config_file, required=False):
    """
    Load KEY=VALUE pairs from a loadgen configuration file.

    Comments, blank lines and ``[SECTION]`` headers are ignored, inline
    comments are stripped and surrounding quotes removed. Each value is
    validated; invalid values are logged and skipped so one bad line does
    not take the whole file down.

    Args:
        config_file (str): Path to the configuration file
        required (bool): Raise ConfigError when the file cannot be read

    Returns:
        dict: Validated configuration values keyed by name

    Raises:
        ConfigError: If ``required`` and the file is missing or unreadable
    """
    config = {}
    try:
        with open(config_file, "r", encoding='utf-8') as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()

                # Skip comments, empty lines and section headers
                if not line or line.startswith("#") or line.startswith("["):
                    continue

                if "=" not in line:
                    logger.warning(f"Invalid config format at {config_file}:{line_num}: {line}")
                    continue

                key, value = line.split("=", 1)
                key = key.strip()
                value = value.strip()

                # Remove inline comments, then quotes
                if "#" in value and not value.startswith(('"', "'")):
                    value = value.split("#", 1)[0].strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
                    value = value[1:-1].strip()

                if not key:
                    continue

                try:
                    _validate_config_value(key, value)
                except ValueError as validation_error:
                    logger.warning(f"Invalid config value at {config_file}:{line_num}: {validation_error}")
                    continue
                config[key] = value

    except (IOError, OSError, UnicodeDecodeError) as e:
        if required:
            raise ConfigError(f"Could not load configuration file {config_file}: {e}")
        logger.debug(f"No configuration file at {config_file}, using defaults and environment: {e}")

    return config


def getenv_with_file(name, file_values):
    """
    Resolve a configuration value with three-tier priority.

    Priority Order:
        1. Environment variable (highest priority)
        2. Configuration file
        3. Built-in default

    An environment value that fails validation is ignored with a warning.
    """
    env_val = os.getenv(name)
    if env_val is not None:
        env_val = env_val.strip()
        try:
            _validate_config_value(name, env_val)
            return env_val
        except ValueError as e:
            logger.warning(f"Ignoring environment override: {e}")

    file_val = file_values.get(name)
    if file_val is not None:
        return file_val

    return CONFIG_DEFAULTS[name]


@dataclass(frozen=True)
class ControlTarget:
    """Targets and ceilings the controller steers towards."""
    cpu_target_percent: float
    bandwidth_target_mbps: float
    max_cpu_percent: float
    max_bandwidth_mbps: float
    min_adjustment_threshold: float

    def validate(self):
        """Raise ConfigError unless every value is >= 0 and each maximum covers its target."""
        for f in fields(self):
            value = getattr(self, f.name)
            if value < 0 or not math.isfinite(value):
                raise ConfigError(f"{f.name}={value} must be a finite number >= 0")
        if self.max_cpu_percent < self.cpu_target_percent:
            raise ConfigError(f"MAX_CPU_PERCENT={self.max_cpu_percent} is below "
                              f"CPU_TARGET_PERCENT={self.cpu_target_percent}")
        if self.max_bandwidth_mbps < self.bandwidth_target_mbps:
            raise ConfigError(f"MAX_BANDWIDTH_MBPS={self.max_bandwidth_mbps} is below "
                              f"BANDWIDTH_TARGET_MBPS={self.bandwidth_target_mbps}")
        return self


@dataclass(frozen=True)
class Config:
    """Immutable configuration snapshot. Reload swaps the whole object."""
    target: ControlTarget
    monitor_interval_s: float = 5.0
    adjustment_interval_s: float = 30.0
    report_interval_s: float = 60.0
    download_url_pool: Tuple[str, ...] = ()
    net_interface: Optional[str] = None
    per_server_expected_mbps: float = 650.0
    safety_violation_limit: int = 3
    shutdown_grace_s: float = 1.0
    state_file: str = CONFIG_DEFAULTS["STATE_FILE"]
    metrics_db: str = CONFIG_DEFAULTS["METRICS_DB"]
    metrics_retention_days: int = 7
    status_enabled: bool = True
    status_host: str = "127.0.0.1"
    status_port: int = 8080
    log_level: str = "INFO"
    source: Optional[str] = None


def load_config(config_file=None):
    """
    Build a Config snapshot from environment, config file and defaults.

    When ``config_file`` is None the path comes from ``LOADGEN_CONFIG``; an
    explicitly named file must be readable, the default
    ``/etc/loadgen.conf`` is optional.

    Raises:
        ConfigError: If a named file cannot be read or the targets are inconsistent
    """
    required = True
    if config_file is None:
        config_file = os.getenv("LOADGEN_CONFIG")
        if config_file is None:
            config_file = DEFAULT_CONFIG_FILE
            required = False

    values = load_config_file(config_file, required=required)

    def get(name):
        return getenv_with_file(name, values)

    target = ControlTarget(
        cpu_target_percent=float(get("CPU_TARGET_PERCENT")),
        bandwidth_target_mbps=float(get("BANDWIDTH_TARGET_MBPS")),
        max_cpu_percent=float(get("MAX_CPU_PERCENT")),
        max_bandwidth_mbps=float(get("MAX_BANDWIDTH_MBPS")),
        min_adjustment_threshold=float(get("MIN_ADJUSTMENT_THRESHOLD")),
    ).validate()

    iface = get("NET_INTERFACE").strip()
    log_level = get("LOG_LEVEL").upper()
    config = Config(
        target=target,
        monitor_interval_s=float(get("MONITOR_INTERVAL")),
        adjustment_interval_s=float(get("ADJUSTMENT_INTERVAL")),
        report_interval_s=float(get("REPORT_INTERVAL")),
        download_url_pool=tuple(_split_list(get("DOWNLOAD_URLS"))),
        net_interface=None if iface.lower() in ("", "auto") else iface,
        per_server_expected_mbps=float(get("PER_SERVER_EXPECTED_MBPS")),
        safety_violation_limit=int(float(get("SAFETY_VIOLATION_LIMIT"))),
        shutdown_grace_s=float(get("SHUTDOWN_GRACE_SEC")),
        state_file=get("STATE_FILE"),
        metrics_db=get("METRICS_DB"),
        metrics_retention_days=int(float(get("METRICS_RETENTION_DAYS"))),
        status_enabled=_parse_boolean(get("STATUS_ENABLED")),
        status_host=get("STATUS_HOST"),
        status_port=int(float(get("STATUS_PORT"))),
        log_level="WARNING" if log_level == "WARN" else log_level,
        source=config_file if values or required else None,
    )

    if target.bandwidth_target_mbps > 0 and not config.download_url_pool:
        logger.warning("BANDWIDTH_TARGET_MBPS is set but DOWNLOAD_URLS is empty; "
                       "bandwidth load cannot be generated")
    if config.adjustment_interval_s < config.monitor_interval_s:
        logger.warning(f"ADJUSTMENT_INTERVAL={config.adjustment_interval_s}s is shorter than "
                       f"MONITOR_INTERVAL={config.monitor_interval_s}s; control cycles will "
                       f"reuse the same sample")

    logger.info(f"Configuration loaded from {config.source or 'defaults/environment'}")
    return config


# ---------------------------
# Data model
# ---------------------------
# Order of the aggregate "cpu " line in /proc/stat that we track
CPU_BUCKET_NAMES = ("user", "nice", "system", "idle", "iowait", "irq", "softirq")
IDLE_BUCKET = CPU_BUCKET_NAMES.index("idle")


@dataclass(frozen=True)
class CounterSnapshot:
    """Raw cumulative counters at one monotonic instant.

    A part that could not be read is None.
    """
    cpu_buckets: Optional[Tuple[int, ...]]
    rx_bytes: Optional[int]
    tx_bytes: Optional[int]
    timestamp: float

    @property
    def has_cpu(self):
        return self.cpu_buckets is not None

    @property
    def has_net(self):
        return self.rx_bytes is not None and self.tx_bytes is not None


@dataclass(frozen=True)
class RateSample:
    """Instantaneous rates derived from two snapshots.

    ``primed`` is False for the zero reading returned while a sampler is
    only storing its baseline, which is how callers tell it from a real 0%.
    """
    cpu_percent: float = 0.0
    rx_mbps: float = 0.0
    tx_mbps: float = 0.0
    total_mbps: float = 0.0
    primed: bool = False

    @classmethod
    def zero(cls):
        return cls()


@dataclass(frozen=True)
class SyntheticLoadState:
    """What synthetic load is currently commanded.

    This is the only record shared between the monitor, control and report
    cycles; see StateStore.
    """
    cpu_percent: float = 0.0
    cpu_workers: int = 0
    cpu_load_percent_per_worker: int = 0
    bw_total_mbps: float = 0.0
    bw_rx_mbps: float = 0.0
    bw_tx_mbps: float = 0.0
    bw_downloaders: int = 0
    bw_rate_per_downloader_mbps: float = 0.0
    version: int = 0
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyntheticLoadState":
        """Build a state from a record, ignoring unknown keys and clamping negatives to 0."""
        values = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            raw = data[f.name]
            try:
                value = int(raw) if f.type in (int, 'int') else float(raw)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid state field {f.name}={raw!r}")
                continue
            values[f.name] = max(0, value) if f.name != 'updated_at' else value
        if 'cpu_load_percent_per_worker' in values:
            values['cpu_load_percent_per_worker'] = min(100, values['cpu_load_percent_per_worker'])
        return cls(**values)

    @property
    def is_zero(self):
        return (self.cpu_percent == 0 and self.cpu_workers == 0 and
                self.bw_total_mbps == 0 and self.bw_downloaders == 0)


@dataclass(frozen=True)
class CpuCommand:
    """Parameters for the CPU actuator (stress-ng)."""
    workers: int = 0
    load_percent: int = 0

    @property
    def active(self):
        return self.workers > 0

    def describe(self):
        return f"workers={self.workers}, load={self.load_percent}%"


@dataclass(frozen=True)
class BandwidthCommand:
    """Parameters for the bandwidth actuator (looping wget downloaders).

    A rate of 0 means unlimited.
    """
    downloaders: int = 0
    rate_mbps_per_downloader: float = 0.0

    @property
    def active(self):
        return self.downloaders > 0

    @property
    def unlimited(self):
        return self.active and self.rate_mbps_per_downloader <= 0

    def describe(self):
        rate = "UNLIMITED" if self.unlimited else f"{self.rate_mbps_per_downloader:.2f}Mbps"
        return f"rate={rate}, downloaders={self.downloaders}"


class MetricsRecord(NamedTuple):
    """Per-cycle export row consumed by reporting collaborators."""
    timestamp: float
    cpu_target: float
    cpu_organic: float
    cpu_synthetic: float
    cpu_total: float
    bw_target: float
    bw_organic: float
    bw_synthetic: float
    bw_total: float


# ---------------------------
# Sampler: counters -> rates
# ---------------------------
def read_cpu_buckets(path="/proc/stat") -> Tuple[int, ...]:
    """Read the aggregate CPU tick buckets from /proc/stat.

    Returns:
        tuple: (user, nice, system, idle, iowait, irq, softirq) cumulative ticks

    Raises:
        MeasurementUnavailable: If the file is missing, unreadable or malformed
    """
    try:
        with open(path, "r") as f:
            line = f.readline()
    except OSError as e:
        raise MeasurementUnavailable(f"Could not read {path}: {e}")
    if not line.startswith("cpu "):
        raise MeasurementUnavailable(f"Unexpected {path} format")
    parts = line.split()[1:1 + len(CPU_BUCKET_NAMES)]
    if len(parts) < len(CPU_BUCKET_NAMES):
        raise MeasurementUnavailable(f"Too few CPU buckets in {path}")
    try:
        return tuple(int(x) for x in parts)
    except ValueError:
        raise MeasurementUnavailable(f"Non-numeric CPU counters in {path}")


def read_nic_bytes(iface: str, sys_net_root="/sys/class/net", proc_net_dev="/proc/net/dev") -> Tuple[int, int]:
    """Read cumulative (rx_bytes, tx_bytes) for a network interface.

    Prefers /sys/class/net/<iface>/statistics and falls back to
    /proc/net/dev, which is what a container sees.

    Raises:
        MeasurementUnavailable: If neither source has the interface
    """
    base = os.path.join(sys_net_root, iface, "statistics")
    try:
        with open(os.path.join(base, "rx_bytes"), "r") as f:
            rx = int(f.read().strip())
        with open(os.path.join(base, "tx_bytes"), "r") as f:
            tx = int(f.read().strip())
        return rx, tx
    except (OSError, ValueError):
        pass

    try:
        with open(proc_net_dev, "r") as f:
            for line in f:
                if ":" not in line:
                    continue
                name, rest = [x.strip() for x in line.split(":", 1)]
                if name == iface:
                    parts = rest.split()
                    return int(parts[0]), int(parts[8])
    except (OSError, ValueError, IndexError) as e:
        raise MeasurementUnavailable(f"Could not read counters for {iface}: {e}")
    raise MeasurementUnavailable(f"Interface {iface} not found")


def detect_primary_interface(route_path="/proc/net/route", default="eth0"):
    """Return the interface carrying the default route, or ``default``."""
    try:
        with open(route_path, "r") as f:
            next(f, None)  # header
            for line in f:
                parts = line.split()
                if len(parts) >= 2 and parts[1] == "00000000":
                    return parts[0]
    except OSError:
        pass
    return default


def cpu_percent_between(prev: Tuple[int, ...], cur: Tuple[int, ...]) -> Optional[float]:
    """CPU busy percentage between two bucket tuples.

    Returns 0.0 when no ticks elapsed and None when any counter went
    backwards, which callers treat as a fresh baseline.
    """
    deltas = [c - p for p, c in zip(prev, cur)]
    if any(d < 0 for d in deltas):
        return None
    total = sum(deltas)
    if total == 0:
        return 0.0
    idle = deltas[IDLE_BUCKET]
    return max(0.0, min(100.0, 100.0 * (total - idle) / total))


def bandwidth_between(prev: Tuple[int, int], cur: Tuple[int, int], dt_sec: float) -> Optional[Tuple[float, float, float]]:
    """Return (rx_mbps, tx_mbps, total_mbps) between two (rx, tx) byte readings.

    Zero rates when no time elapsed, None when a counter went backwards.
    """
    if dt_sec <= 0:
        return 0.0, 0.0, 0.0
    drx = cur[0] - prev[0]
    dtx = cur[1] - prev[1]
    if drx < 0 or dtx < 0:
        return None
    rx_mbps = drx * 8.0 / dt_sec / 1_000_000.0
    tx_mbps = dtx * 8.0 / dt_sec / 1_000_000.0
    return rx_mbps, tx_mbps, rx_mbps + tx_mbps


class Sampler:
    """
    Turns successive counter snapshots into instantaneous rates.

    Baselines belong to the Sampler instance. An execution context that
    never calls initialize() gets a zero reading (``primed=False``) from its
    first sample() while the baseline is stored.

    Errors reading counters are logged and the last known rate for that
    metric is reused; sample() never raises.
    """

    def __init__(self, interface=None, stat_path="/proc/stat", sys_net_root="/sys/class/net",
                 proc_net_dev="/proc/net/dev", clock=time.monotonic):
        self.interface = interface or detect_primary_interface()
        self.stat_path = stat_path
        self.sys_net_root = sys_net_root
        self.proc_net_dev = proc_net_dev
        self._clock = clock
        self._prev_cpu: Optional[CounterSnapshot] = None
        self._prev_net: Optional[CounterSnapshot] = None
        self._last = RateSample.zero()
        self._cpu_unavailable = False
        self._net_unavailable = False

    def snapshot(self) -> CounterSnapshot:
        """Read all counters once."""
        cpu = None
        rx = tx = None
        try:
            cpu = read_cpu_buckets(self.stat_path)
            if self._cpu_unavailable:
                logger.info("CPU counters available again")
            self._cpu_unavailable = False
        except MeasurementUnavailable as e:
            if not self._cpu_unavailable:
                logger.warning(f"CPU measurement unavailable, reusing last known value: {e}")
            self._cpu_unavailable = True
        try:
            rx, tx = read_nic_bytes(self.interface, self.sys_net_root, self.proc_net_dev)
            if self._net_unavailable:
                logger.info(f"Network counters for {self.interface} available again")
            self._net_unavailable = False
        except MeasurementUnavailable as e:
            if not self._net_unavailable:
                logger.warning(f"Network measurement unavailable, reusing last known value: {e}")
            self._net_unavailable = True
        return CounterSnapshot(cpu, rx, tx, self._clock())

    @property
    def has_baseline(self):
        return self._prev_cpu is not None or self._prev_net is not None

    def initialize(self):
        """Capture baseline snapshots; the next sample() yields real rates."""
        snap = self.snapshot()
        self._prev_cpu = snap if snap.has_cpu else None
        self._prev_net = snap if snap.has_net else None
        self._last = RateSample.zero()
        logger.debug(f"Sampler initialized for interface: {self.interface}")

    def sample(self) -> RateSample:
        snap = self.snapshot()

        if not self.has_baseline:
            self._prev_cpu = snap if snap.has_cpu else None
            self._prev_net = snap if snap.has_net else None
            logger.debug("Sampler has no baseline yet; returning zero reading")
            return RateSample.zero()

        cpu_pct = self._cpu_rate(snap)
        rx, tx, total = self._net_rate(snap)
        self._last = RateSample(cpu_percent=round(cpu_pct, 2), rx_mbps=round(rx, 3),
                                tx_mbps=round(tx, 3), total_mbps=round(total, 3), primed=True)
        return self._last

    def _cpu_rate(self, snap):
        if not snap.has_cpu:
            return self._last.cpu_percent
        prev, self._prev_cpu = self._prev_cpu, snap
        if prev is None:
            return 0.0
        pct = cpu_percent_between(prev.cpu_buckets, snap.cpu_buckets)
        if pct is None:
            logger.warning("CPU counters went backwards; treating as fresh baseline")
            return 0.0
        return pct

    def _net_rate(self, snap):
        if not snap.has_net:
            return self._last.rx_mbps, self._last.tx_mbps, self._last.total_mbps
        prev, self._prev_net = self._prev_net, snap
        if prev is None:
            return 0.0, 0.0, 0.0
        rates = bandwidth_between((prev.rx_bytes, prev.tx_bytes), (snap.rx_bytes, snap.tx_bytes),
                                  snap.timestamp - prev.timestamp)
        if rates is None:
            logger.warning(f"Byte counters on {self.interface} went backwards "
                           f"(interface reset?); treating as fresh baseline")
            return 0.0, 0.0, 0.0
        return rates


class SampleBoard:
    """Latest RateSample published by the monitor task, read by everyone else."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sample = RateSample.zero()
        self._version = 0
        self._published_at = None

    def publish(self, sample: RateSample):
        with self._lock:
            self._sample = sample
            self._version += 1
            self._published_at = time.time()

    def latest(self) -> RateSample:
        with self._lock:
            return self._sample

    @property
    def version(self):
        with self._lock:
            return self._version

    @property
    def published_at(self):
        with self._lock:
            return self._published_at


# ---------------------------
# Load decomposition
# ---------------------------
@dataclass(frozen=True)
class LoadBreakdown:
    cpu_total: float
    cpu_synthetic: float
    cpu_organic: float
    rx_total: float
    rx_synthetic: float
    rx_organic: float
    tx_total: float
    tx_synthetic: float
    tx_organic: float
    bw_total: float
    bw_synthetic: float
    bw_organic: float


def organic(total, synthetic):
    """Organic share of a total: never negative."""
    return max(0.0, float(total) - float(synthetic))


def decompose(sample: RateSample, state: SyntheticLoadState) -> LoadBreakdown:
    """Split measured totals using the last committed synthetic state.

    Synthetic load is asserted from the commanded state rather than measured
    per process.
    """
    return LoadBreakdown(
        cpu_total=sample.cpu_percent,
        cpu_synthetic=state.cpu_percent,
        cpu_organic=organic(sample.cpu_percent, state.cpu_percent),
        rx_total=sample.rx_mbps,
        rx_synthetic=state.bw_rx_mbps,
        rx_organic=organic(sample.rx_mbps, state.bw_rx_mbps),
        tx_total=sample.tx_mbps,
        tx_synthetic=state.bw_tx_mbps,
        tx_organic=organic(sample.tx_mbps, state.bw_tx_mbps),
        bw_total=sample.total_mbps,
        bw_synthetic=state.bw_total_mbps,
        bw_organic=organic(sample.total_mbps, state.bw_total_mbps),
    )


# ---------------------------
# Shared state store
# ---------------------------
class StateStore:
    """
    Durable SyntheticLoadState record shared across cycles and processes.

    Every read goes to disk so consumers always see the latest commit. Writes
    go to a temporary file that is atomically renamed over the record, so a
    reader never observes a partial write. Writers in this process serialise
    on a lock across read-modify-write.
    """

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()

    def read(self) -> SyntheticLoadState:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return SyntheticLoadState()
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read synthetic load state from {self.path}: {e}")
            return SyntheticLoadState()
        if not isinstance(data, dict):
            logger.warning(f"Ignoring malformed synthetic load state in {self.path}")
            return SyntheticLoadState()
        return SyntheticLoadState.from_dict(data)

    def commit(self, state: SyntheticLoadState) -> SyntheticLoadState:
        """Persist ``state`` as the new record, bumping the version."""
        with self._lock:
            return self._write_next(state)

    def update(self, **changes) -> SyntheticLoadState:
        """Apply field changes on top of the current record and persist."""
        with self._lock:
            return self._write_next(replace(self.read(), **changes))

    def reset(self) -> SyntheticLoadState:
        return self.commit(SyntheticLoadState())

    def _write_next(self, state):
        current = self.read()
        state = replace(state, version=current.version + 1, updated_at=time.time())
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        temp_path = f"{self.path}.tmp.{os.getpid()}"
        try:
            with open(temp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.path)
        except (OSError, TypeError, ValueError):
            if os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
            raise
        logger.debug(f"State saved: CPU={state.cpu_percent}%, BW={state.bw_total_mbps}Mbps "
                     f"(version {state.version})")
        return state


# ---------------------------
# Gap calculation & safety clamp
# ---------------------------
def compute_gap(target, current):
    """Signed distance from the current total to the target."""
    return float(target) - float(current)


def should_adjust(gap, threshold):
    """Hysteresis band: only act when |gap| reaches the threshold."""
    return abs(gap) >= threshold


def propose_total(current, gap):
    """Proportional-step law: jump straight to the target."""
    return float(current) + float(gap)


def clamp_synthetic(proposed_total, organic_load, maximum, label="load"):
    """
    Convert a proposed total into a synthetic share under the ceiling.

    Returns ``maximum - organic`` when the proposal exceeds ``maximum``,
    otherwise ``proposed_total - organic``; never negative.
    """
    if proposed_total > maximum:
        logger.warning(f"Proposed {label} {proposed_total:.2f} exceeds max {maximum:.2f}")
        return max(0.0, float(maximum) - float(organic_load))
    return max(0.0, float(proposed_total) - float(organic_load))


# ---------------------------
# Parameter translation
# ---------------------------
# Below this, a single downloader out-runs the target, so streams are rate limited
BW_UNLIMITED_THRESHOLD_MBPS = 600.0
DEFAULT_PER_SERVER_EXPECTED_MBPS = 650.0
MAX_DOWNLOADERS = 6
# (floor Mbps, downloaders) for rate-limited mode, checked top down
BW_RATE_LIMITED_STEPS = ((200.0, 4), (100.0, 3), (50.0, 2))


def translate_cpu(synthetic_pct, cores) -> CpuCommand:
    """
    Translate a system-wide synthetic CPU percentage into stress-ng parameters.

    One worker per core, so the per-worker load equals the system-wide
    share: system% ~= workers * load_percent / cores.
    """
    if synthetic_pct <= 0:
        return CpuCommand()
    load_percent = max(0, min(100, int(round(synthetic_pct))))
    if load_percent == 0:
        return CpuCommand()
    return CpuCommand(workers=max(1, int(cores)), load_percent=load_percent)


def translate_bandwidth(synthetic_mbps, per_server_expected_mbps=DEFAULT_PER_SERVER_EXPECTED_MBPS) -> BandwidthCommand:
    """
    Translate a synthetic bandwidth target into downloader parameters.

    Below BW_UNLIMITED_THRESHOLD_MBPS the downloaders are rate limited for
    precise control. At or above it, the count is sized from the expected
    per-server throughput and the rate is left unlimited; the resulting
    overshoot is accepted.
    """
    if synthetic_mbps <= 0:
        return BandwidthCommand()

    if synthetic_mbps < BW_UNLIMITED_THRESHOLD_MBPS:
        count = 1
        for floor, downloaders in BW_RATE_LIMITED_STEPS:
            if synthetic_mbps >= floor:
                count = downloaders
                break
        rate = max(0.01, round(synthetic_mbps / count, 2))
        return BandwidthCommand(downloaders=count, rate_mbps_per_downloader=rate)

    count = int(math.ceil(synthetic_mbps / per_server_expected_mbps))
    count = max(1, min(MAX_DOWNLOADERS, count))
    return BandwidthCommand(downloaders=count, rate_mbps_per_downloader=0.0)


def synthetic_for_cpu(command: CpuCommand, cores) -> float:
    """System-wide CPU percentage asserted for a running command."""
    if not command.active:
        return 0.0
    return round(command.workers * command.load_percent / max(1, int(cores)), 2)


def synthetic_for_bandwidth(command: BandwidthCommand, requested_mbps) -> float:
    """Bandwidth asserted for a running command.

    Rate-limited downloaders contribute rate x count. Unlimited ones cannot
    be predicted, so the requested synthetic bandwidth is asserted instead.
    """
    if not command.active:
        return 0.0
    if command.unlimited:
        return round(max(0.0, float(requested_mbps)), 2)
    return round(command.rate_mbps_per_downloader * command.downloaders, 2)


# ---------------------------
# Actuators (external load generators)
# ---------------------------
STRESS_NG = "stress-ng"
WGET = "wget"

CPU = "cpu"
BANDWIDTH = "bandwidth"


def build_stress_command(workers, load_percent):
    return [STRESS_NG, "--cpu", str(int(workers)), "--cpu-load", str(int(load_percent)),
            "--timeout", "0", "--quiet"]


def build_wget_command(url, rate_mbps):
    """wget invocation for one download; rate 0 means unlimited."""
    cmd = [WGET, "--quiet", "--output-document=/dev/null"]
    if rate_mbps > 0:
        # wget takes bytes/s; whole bytes avoid locale issues with fractional suffixes
        cmd.append(f"--limit-rate={max(1, int(rate_mbps * 1_000_000 / 8))}")
    cmd.extend(["--tries=1", "--timeout=10", "--no-check-certificate", url])
    return cmd


def downloader_loop(url, rate_mbps, pause_sec=0.1):
    """
    Download ``url`` to /dev/null forever.

    Runs in its own process and is stopped by terminating that process and
    its wget child.
    """
    # Forked from the service: drop its shutdown/reload handlers
    for signum in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
        signal.signal(signum, signal.SIG_DFL)
    cmd = build_wget_command(url, rate_mbps)
    while True:
        subprocess.run(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                       stderr=subprocess.DEVNULL, check=False)
        time.sleep(pause_sec)


def _descendants(pid):
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.Error:
        return []


def _signal_procs(procs, kill=False):
    for proc in procs:
        try:
            if kill:
                proc.kill()
            else:
                proc.terminate()
        except psutil.Error:
            pass


class ActuatorSupervisor:
    """
    Starts and stops the external load generating processes.

    CPU load is a single stress-ng process (subprocess.Popen handle).
    Bandwidth load is one multiprocessing.Process per downloader, each
    looping wget. Stopping always covers the whole process tree.
    """

    def __init__(self, grace_sec=1.0, downloader_pause_sec=0.1):
        self.grace_sec = grace_sec
        self.downloader_pause_sec = downloader_pause_sec

    def check_available(self, dimension, url_pool=None):
        """Raise ActuatorUnavailable if ``dimension`` cannot be actuated."""
        if dimension == CPU:
            if shutil.which(STRESS_NG) is None:
                raise ActuatorUnavailable(f"{STRESS_NG} not found, cannot generate CPU load")
        elif dimension == BANDWIDTH:
            if shutil.which(WGET) is None:
                raise ActuatorUnavailable(f"{WGET} not found, cannot generate bandwidth load")
            if not url_pool:
                raise ActuatorUnavailable("No download URLs configured, cannot generate bandwidth load")
        else:
            raise ValueError(f"Unknown dimension: {dimension}")

    def start_cpu(self, workers, load_percent):
        self.check_available(CPU)
        cmd = build_stress_command(workers, load_percent)
        try:
            handle = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL,
                                      stderr=subprocess.DEVNULL, start_new_session=True)
        except OSError as e:
            raise ActuatorUnavailable(f"Failed to start {STRESS_NG}: {e}")
        logger.info(f"Started CPU load: workers={workers}, load={load_percent}%, PID={handle.pid}")
        return handle

    def stop_cpu(self, handle):
        if handle is None:
            return
        logger.info(f"Stopping CPU load: PID={handle.pid}")
        self._stop_handles([handle])

    def start_bandwidth(self, downloaders, rate_mbps, url_pool):
        self.check_available(BANDWIDTH, url_pool)
        if rate_mbps > 0:
            logger.info(f"Starting bandwidth load: rate={rate_mbps:.2f}Mbps per downloader, "
                        f"downloaders={downloaders}")
        else:
            logger.info(f"Starting bandwidth load: UNLIMITED rate, downloaders={downloaders}")

        handles = []
        try:
            for i in range(downloaders):
                # Round-robin over the URL pool by downloader index
                url = url_pool[i % len(url_pool)]
                proc = Process(target=downloader_loop, args=(url, rate_mbps, self.downloader_pause_sec),
                               name=f"loadgen-downloader-{i}", daemon=True)
                proc.start()
                handles.append(proc)
                logger.debug(f"Started downloader {i}: URL={url}, PID={proc.pid}")
        except OSError as e:
            self._stop_handles(handles)
            raise ActuatorUnavailable(f"Failed to start downloader: {e}")
        return handles

    def stop_bandwidth(self, handles):
        if not handles:
            return
        logger.info(f"Stopping bandwidth load: {len(handles)} downloaders")
        self._stop_handles(handles)

    def is_alive(self, handle):
        if handle is None:
            return False
        if isinstance(handle, subprocess.Popen):
            return handle.poll() is None
        return handle.is_alive()

    def kill(self, handles):
        """Immediately kill handles and their descendants, no grace period."""
        for handle in handles:
            _signal_procs(_descendants(handle.pid), kill=True)
            if self.is_alive(handle):
                handle.kill()
            self._reap(handle, timeout=self.grace_sec)

    def terminate_residual(self):
        """Terminate any process still descending from this service. Returns how many."""
        procs = _descendants(os.getpid())
        if not procs:
            return 0
        logger.warning(f"Terminating {len(procs)} residual child processes")
        _signal_procs(procs)
        _, alive = psutil.wait_procs(procs, timeout=self.grace_sec)
        _signal_procs(alive, kill=True)
        return len(procs)

    def _stop_handles(self, handles):
        """Terminate, wait a bounded grace period, then kill what remains."""
        descendants = []
        for handle in handles:
            # Collect children before the parent goes away and they get reparented
            descendants.extend(_descendants(handle.pid))
            if self.is_alive(handle):
                handle.terminate()
        _signal_procs(descendants)

        deadline = time.monotonic() + self.grace_sec
        for handle in handles:
            self._reap(handle, timeout=max(0.0, deadline - time.monotonic()))
        _, alive = psutil.wait_procs(descendants, timeout=max(0.0, deadline - time.monotonic()))

        for handle in handles:
            if self.is_alive(handle):
                logger.warning(f"Process {handle.pid} ignored SIGTERM, killing")
                handle.kill()
                self._reap(handle, timeout=self.grace_sec)
        _signal_procs(alive, kill=True)

    @staticmethod
    def _reap(handle, timeout):
        if isinstance(handle, subprocess.Popen):
            try:
                handle.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                pass
        else:
            handle.join(timeout=timeout)


# ---------------------------
# Controller
# ---------------------------
class ActuatorState(Enum):
    """Per-dimension actuator states."""
    IDLE = "IDLE"
    ACTUATING = "ACTUATING"
    STEADY = "STEADY"
    DEGRADED = "DEGRADED"
    RECOVERING = "RECOVERING"


class DimensionStatus:
    """Bookkeeping for one resource dimension: last issued command and its processes."""

    MAX_RECOVERY_ATTEMPTS = 3

    def __init__(self, name, idle_command):
        self.name = name
        self.idle_command = idle_command
        self.state = ActuatorState.IDLE
        self.command = idle_command
        self.requested = 0.0
        self.handles = []
        self.last_change = time.monotonic()
        self.recovery_attempts = 0
        self.total_recoveries = 0
        # Set when restarts are exhausted; cleared by reload
        self.held = False

    @property
    def label(self):
        return "CPU" if self.name == CPU else "Bandwidth"

    def transition(self, new_state, reason=None):
        if new_state == self.state:
            return
        suffix = f" ({reason})" if reason else ""
        logger.info(f"{self.label} actuator {self.state.value} -> {new_state.value}{suffix}")
        self.state = new_state
        self.last_change = time.monotonic()

    def get_status(self):
        return {
            'state': self.state.value,
            'command': asdict(self.command),
            'requested': self.requested,
            'processes': len(self.handles),
            'recovery_attempts': self.recovery_attempts,
            'held': self.held,
            'total_recoveries': self.total_recoveries,
        }


class LoadController:
    """
    Closed-loop controller for CPU and bandwidth.

    Each control cycle decomposes the latest sample against the committed
    synthetic state, applies the hysteresis band, clamps under the
    configured maxima, translates to actuator parameters and re-actuates
    only when the parameters changed. Every successful start or stop is
    committed to the StateStore before the cycle returns.
    """

    def __init__(self, config: Config, supervisor: ActuatorSupervisor, store: StateStore, cores=None):
        self.config = config
        self.supervisor = supervisor
        self.store = store
        self.cores = cores or os.cpu_count() or 1
        self._lock = threading.RLock()
        self.cpu = DimensionStatus(CPU, CpuCommand())
        self.bandwidth = DimensionStatus(BANDWIDTH, BandwidthCommand())
        self.safety_violations = 0
        self.emergency = False
        self.emergency_reason = None
        self.cycles = 0
        self.last_breakdown: Optional[LoadBreakdown] = None

    @property
    def dimensions(self):
        return (self.cpu, self.bandwidth)

    def control_cycle(self, sample: RateSample) -> bool:
        """Run one control decision. Returns True if any actuator changed."""
        with self._lock:
            if self.emergency:
                logger.debug("Controller latched after emergency shutdown; waiting for reload")
                return False
            if not sample.primed:
                logger.debug("Skipping control cycle: sampler has no baseline yet")
                return False

            self.cycles += 1
            logger.debug(f"=== Control decision cycle {self.cycles} ===")
            target = self.config.target
            state = self.store.read()
            breakdown = decompose(sample, state)
            self.last_breakdown = breakdown

            if self._check_safety(breakdown, state):
                return True

            cpu_changed = self._control_cpu(breakdown, target)
            bw_changed = self._control_bandwidth(breakdown, target)
            return cpu_changed or bw_changed

    def _control_cpu(self, b: LoadBreakdown, target: ControlTarget):
        gap = compute_gap(target.cpu_target_percent, b.cpu_total)
        logger.debug(f"CPU: target={target.cpu_target_percent}%, total={b.cpu_total:.1f}%, "
                     f"organic={b.cpu_organic:.1f}%, synthetic={b.cpu_synthetic:.1f}%, gap={gap:.1f}%")
        if not should_adjust(gap, target.min_adjustment_threshold):
            logger.debug(f"CPU within threshold: gap={gap:.1f}%")
            return False

        logger.info(f"CPU adjustment needed: gap={gap:.1f}%")
        new_total = propose_total(b.cpu_total, gap)
        synthetic = clamp_synthetic(new_total, b.cpu_organic, target.max_cpu_percent, "CPU %")
        command = translate_cpu(synthetic, self.cores)
        return self._actuate(self.cpu, command, synthetic)

    def _control_bandwidth(self, b: LoadBreakdown, target: ControlTarget):
        gap = compute_gap(target.bandwidth_target_mbps, b.bw_total)
        logger.debug(f"Bandwidth: target={target.bandwidth_target_mbps}Mbps, total={b.bw_total:.2f}Mbps, "
                     f"organic={b.bw_organic:.2f}Mbps, synthetic={b.bw_synthetic:.2f}Mbps, gap={gap:.2f}Mbps")
        if not should_adjust(gap, target.min_adjustment_threshold):
            logger.debug(f"Bandwidth within threshold: gap={gap:.2f}Mbps")
            return False

        logger.info(f"Bandwidth adjustment needed: gap={gap:.2f}Mbps")
        new_total = propose_total(b.bw_total, gap)
        synthetic = clamp_synthetic(new_total, b.bw_organic, target.max_bandwidth_mbps, "bandwidth Mbps")
        command = translate_bandwidth(synthetic, self.config.per_server_expected_mbps)
        return self._actuate(self.bandwidth, command, synthetic)

    def _actuate(self, status: DimensionStatus, command, requested) -> bool:
        if status.held:
            logger.debug(f"{status.label} actuator held after repeated failures; waiting for reload")
            return False

        if command == status.command:
            logger.debug(f"{status.label} parameters unchanged ({command.describe()}); no re-actuation")
            return False

        if not command.active:
            self._stop_dimension(status, reason="target reached zero")
            return True

        # A missing tool must not tear down the running load
        try:
            self.supervisor.check_available(status.name, self.config.download_url_pool)
        except ActuatorUnavailable as e:
            logger.error(f"Cannot adjust {status.label} load: {e}")
            return False

        logger.info(f"Adjusting {status.label}: {command.describe()}")
        if status.handles:
            self._halt(status)
        status.transition(ActuatorState.ACTUATING)
        try:
            status.handles = self._launch(status, command)
        except ActuatorUnavailable as e:
            logger.error(f"Failed to start {status.label} load: {e}")
            self._stop_dimension(status, reason="start failed")
            return False

        status.command = command
        status.requested = requested
        status.recovery_attempts = 0
        self._commit(status)
        return True

    def _launch(self, status, command):
        if status.name == CPU:
            return [self.supervisor.start_cpu(command.workers, command.load_percent)]
        return self.supervisor.start_bandwidth(command.downloaders, command.rate_mbps_per_downloader,
                                               self.config.download_url_pool)

    def _halt(self, status):
        if status.name == CPU:
            for handle in status.handles:
                self.supervisor.stop_cpu(handle)
        else:
            self.supervisor.stop_bandwidth(status.handles)
        status.handles = []

    def _commit(self, status):
        """Persist the committed command of ``status`` into the shared state."""
        command = status.command
        if status.name == CPU:
            self.store.update(cpu_percent=synthetic_for_cpu(command, self.cores),
                              cpu_workers=command.workers,
                              cpu_load_percent_per_worker=command.load_percent)
        else:
            total = synthetic_for_bandwidth(command, status.requested)
            # Downloads are receive traffic
            self.store.update(bw_total_mbps=total, bw_rx_mbps=total, bw_tx_mbps=0.0,
                              bw_downloaders=command.downloaders,
                              bw_rate_per_downloader_mbps=command.rate_mbps_per_downloader)

    def _stop_dimension(self, status, reason=None):
        if status.handles:
            self._halt(status)
        status.command = status.idle_command
        status.requested = 0.0
        status.recovery_attempts = 0
        self._commit(status)
        status.transition(ActuatorState.IDLE, reason)

    def health_check(self) -> bool:
        """Check actuator processes; restart dead ones. Returns True if all healthy."""
        with self._lock:
            issues = 0
            for status in self.dimensions:
                if not status.handles:
                    continue
                dead = [h for h in status.handles if not self.supervisor.is_alive(h)]
                if not dead:
                    if status.state in (ActuatorState.ACTUATING, ActuatorState.RECOVERING):
                        status.transition(ActuatorState.STEADY)
                    status.recovery_attempts = 0
                    continue

                issues += 1
                logger.warning(f"{status.label} load generator: {len(dead)} of {len(status.handles)} "
                               f"processes not running")
                status.transition(ActuatorState.DEGRADED)
                self._recover(status)

            if issues == 0:
                logger.debug("Health check passed: all generators running")
            else:
                logger.warning(f"Health check found {issues} issues")
            return issues == 0

    def _recover(self, status):
        if status.recovery_attempts >= status.MAX_RECOVERY_ATTEMPTS:
            logger.error(f"{status.label} load generator keeps dying after "
                         f"{status.recovery_attempts} restarts; giving up")
            self._stop_dimension(status, reason="recovery exhausted")
            status.held = True
            return False

        status.transition(ActuatorState.RECOVERING)
        status.recovery_attempts += 1
        status.total_recoveries += 1
        self._halt(status)
        try:
            status.handles = self._launch(status, status.command)
        except ActuatorUnavailable as e:
            logger.error(f"Recovery of {status.label} load failed: {e}")
            self._stop_dimension(status, reason="recovery failed")
            return False
        logger.info(f"Restarted {status.label} load: {status.command.describe()}")
        return True

    def _check_safety(self, b: LoadBreakdown, state: SyntheticLoadState) -> bool:
        """Count consecutive ceiling violations while synthetic load runs.

        Returns True when the violation limit triggered an emergency shutdown.
        """
        target = self.config.target
        violations = []
        if b.cpu_total > target.max_cpu_percent:
            violations.append(f"cpu={b.cpu_total:.1f}%>{target.max_cpu_percent:.1f}%")
        if b.bw_total > target.max_bandwidth_mbps:
            violations.append(f"bw={b.bw_total:.1f}Mbps>{target.max_bandwidth_mbps:.1f}Mbps")

        synthetic_running = not state.is_zero or any(s.command.active for s in self.dimensions)
        if not violations or not synthetic_running:
            if self.safety_violations:
                logger.info("Safety limits respected again")
            self.safety_violations = 0
            return False

        self.safety_violations += 1
        limit = self.config.safety_violation_limit
        logger.warning(f"SAFETY LIMIT exceeded ({self.safety_violations}/{limit}): {' '.join(violations)}")
        if self.safety_violations >= limit:
            self.emergency_shutdown(f"safety limits exceeded {self.safety_violations} consecutive cycles: "
                                    f"{' '.join(violations)}")
            return True
        return False

    def emergency_shutdown(self, reason="safety limits exceeded"):
        """Kill every actuator, zero the shared state and latch until reload."""
        with self._lock:
            logger.error(f"EMERGENCY: {reason}; shutting down all load generators")
            for status in self.dimensions:
                if status.handles:
                    self.supervisor.kill(status.handles)
                    status.handles = []
                status.command = status.idle_command
                status.requested = 0.0
                status.recovery_attempts = 0
                status.transition(ActuatorState.IDLE, "emergency")
            self.store.reset()
            self.emergency = True
            self.emergency_reason = reason
            self.safety_violations = 0

    def stop_all(self, reason=None):
        with self._lock:
            logger.info("Stopping all load generators")
            for status in self.dimensions:
                self._stop_dimension(status, reason)

    def reload(self, config: Config):
        """Stop current actuators, then adopt ``config``; clears an emergency latch."""
        with self._lock:
            self.stop_all("reload")
            self.config = config
            for status in self.dimensions:
                if status.held:
                    logger.info(f"{status.label} actuator hold cleared by reload")
                status.held = False
            if self.emergency:
                logger.info("Emergency latch cleared by reload")
            self.emergency = False
            self.emergency_reason = None
            self.safety_violations = 0
            logger.info(f"Configuration reloaded: CPU target={config.target.cpu_target_percent}%, "
                        f"bandwidth target={config.target.bandwidth_target_mbps}Mbps")

    def shutdown(self):
        """Stop actuators, clean up stragglers and persist an all-zero state."""
        with self._lock:
            logger.info("Graceful shutdown initiated")
            for status in self.dimensions:
                if status.handles:
                    self._halt(status)
                status.command = status.idle_command
                status.requested = 0.0
                status.transition(ActuatorState.IDLE, "shutdown")
            self.supervisor.terminate_residual()
            self.store.reset()
            logger.info("Synthetic load state reset")

    def get_status(self):
        with self._lock:
            return {
                'cycles': self.cycles,
                'emergency': self.emergency,
                'emergency_reason': self.emergency_reason,
                'safety_violations': self.safety_violations,
                'cores': self.cores,
                'cpu': self.cpu.get_status(),
                'bandwidth': self.bandwidth.get_status(),
            }


# ---------------------------
# Metrics export storage
# ---------------------------
def build_metrics_record(target: ControlTarget, breakdown: LoadBreakdown, timestamp=None) -> MetricsRecord:
    return MetricsRecord(
        timestamp=time.time() if timestamp is None else timestamp,
        cpu_target=target.cpu_target_percent,
        cpu_organic=round(breakdown.cpu_organic, 2),
        cpu_synthetic=round(breakdown.cpu_synthetic, 2),
        cpu_total=round(breakdown.cpu_total, 2),
        bw_target=target.bandwidth_target_mbps,
        bw_organic=round(breakdown.bw_organic, 3),
        bw_synthetic=round(breakdown.bw_synthetic, 3),
        bw_total=round(breakdown.bw_total, 3),
    )


class MetricsStorage:
    def __init__(self, db_path):
        """Initialize metrics storage with SQLite database.

        Args:
            db_path: Path to SQLite database file; its directory is created if missing

        Raises:
            PermissionError: If the directory is not writable
            RuntimeError: If the schema cannot be created
        """
        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
            if not os.access(db_dir, os.W_OK):
                raise PermissionError(f"Cannot write to metrics directory: {db_dir}")

        self.db_path = db_path
        self.lock = threading.Lock()

        # Storage degradation tracking
        self.consecutive_failures = 0
        self.max_consecutive_failures = 5
        self.last_failure_time = None

        logger.info(f"Metrics database initialized at: {self.db_path}")
        self._init_db()

    def _init_db(self):
        with self.lock:
            try:
                with sqlite3.connect(self.db_path, timeout=10) as conn:
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.execute("PRAGMA synchronous=NORMAL")
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS metrics (
                            timestamp REAL PRIMARY KEY,
                            cpu_target REAL,
                            cpu_organic REAL,
                            cpu_synthetic REAL,
                            cpu_total REAL,
                            bw_target REAL,
                            bw_organic REAL,
                            bw_synthetic REAL,
                            bw_total REAL
                        )
                    """)
                    conn.commit()
            except sqlite3.Error as e:
                logger.error(f"Failed to initialize metrics database at {self.db_path}: {e}")
                raise RuntimeError(f"Cannot create metrics database at {self.db_path}")

    def store_record(self, record: MetricsRecord):
        """Store one metrics record.

        Returns:
            bool: True if stored successfully, False otherwise
        """
        with self.lock:
            try:
                with sqlite3.connect(self.db_path, timeout=10) as conn:
                    conn.execute(
                        "INSERT OR REPLACE INTO metrics (timestamp, cpu_target, cpu_organic, cpu_synthetic, "
                        "cpu_total, bw_target, bw_organic, bw_synthetic, bw_total) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        tuple(record)
                    )
                    conn.commit()
                self.consecutive_failures = 0
                return True
            except sqlite3.Error as e:
                logger.error(f"Failed to store metrics record: {e}")
                self.consecutive_failures += 1
                self.last_failure_time = time.time()
                if self.consecutive_failures >= self.max_consecutive_failures:
                    logger.warning(f"Storage degraded: {self.consecutive_failures} consecutive failures")
                return False

    def get_recent(self, limit=100) -> List[MetricsRecord]:
        """Most recent records, oldest first."""
        with self.lock:
            try:
                with sqlite3.connect(self.db_path, timeout=10) as conn:
                    rows = conn.execute(
                        "SELECT timestamp, cpu_target, cpu_organic, cpu_synthetic, cpu_total, "
                        "bw_target, bw_organic, bw_synthetic, bw_total "
                        "FROM metrics ORDER BY timestamp DESC LIMIT ?", (int(limit),)
                    ).fetchall()
            except sqlite3.Error as e:
                logger.error(f"Failed to read recent metrics: {e}")
                return []
        return [MetricsRecord(*row) for row in reversed(rows)]

    def get_summary(self, days_back=7):
        """Average organic/synthetic/total per dimension over the period.

        Returns:
            dict or None: Averages and sample count, None if no data
        """
        cutoff_time = time.time() - (days_back * 24 * 3600)
        with self.lock:
            try:
                with sqlite3.connect(self.db_path, timeout=10) as conn:
                    row = conn.execute(
                        "SELECT COUNT(*), AVG(cpu_total), AVG(cpu_organic), AVG(cpu_synthetic), "
                        "AVG(bw_total), AVG(bw_organic), AVG(bw_synthetic) "
                        "FROM metrics WHERE timestamp >= ?", (cutoff_time,)
                    ).fetchone()
            except sqlite3.Error as e:
                logger.error(f"Failed to summarize metrics: {e}")
                return None
        if not row or not row[0]:
            return None
        keys = ('cpu_total', 'cpu_organic', 'cpu_synthetic', 'bw_total', 'bw_organic', 'bw_synthetic')
        summary = {f"avg_{k}": round(v, 2) for k, v in zip(keys, row[1:])}
        summary['samples'] = row[0]
        return summary

    def cleanup_old(self, days_to_keep=7):
        """Remove records older than ``days_to_keep``. Returns rows deleted."""
        cutoff_time = time.time() - (days_to_keep * 24 * 3600)
        with self.lock:
            try:
                with sqlite3.connect(self.db_path, timeout=10) as conn:
                    cursor = conn.execute("DELETE FROM metrics WHERE timestamp < ?", (cutoff_time,))
                    deleted = cursor.rowcount
                    conn.commit()
                return deleted
            except sqlite3.Error as e:
                logger.error(f"Failed to cleanup old metrics: {e}")
                return 0

    def get_sample_count(self, days_back=7):
        cutoff_time = time.time() - (days_back * 24 * 3600)
        with self.lock:
            try:
                with sqlite3.connect(self.db_path, timeout=10) as conn:
                    return conn.execute("SELECT COUNT(*) FROM metrics WHERE timestamp >= ?",
                                        (cutoff_time,)).fetchone()[0]
            except sqlite3.Error as e:
                logger.error(f"Failed to get sample count: {e}")
                return 0

    def is_storage_degraded(self):
        return self.consecutive_failures >= self.max_consecutive_failures

    def get_storage_status(self):
        return {
            'consecutive_failures': self.consecutive_failures,
            'is_degraded': self.is_storage_degraded(),
            'last_failure_time': self.last_failure_time,
            'max_consecutive_failures': self.max_consecutive_failures
        }


# ---------------------------
# Status HTTP endpoints
# ---------------------------
class StatusHandler(BaseHTTPRequestHandler):
    """HTTP request handler exposing health, metrics and the shared state record"""

    def __init__(self, *args, service=None, **kwargs):
        self.service = service
        super().__init__(*args, **kwargs)

    def _sanitize_error(self, error_msg: str) -> str:
        """Sanitize error messages to prevent information disclosure"""
        if "Permission denied" in error_msg or "permission" in error_msg.lower():
            return "Access denied"
        elif "No such file" in error_msg or "not found" in error_msg.lower():
            return "Resource not found"
        elif "database" in error_msg.lower() or "sqlite" in error_msg.lower():
            return "Storage service temporarily unavailable"
        return "Internal service error"

    def log_message(self, format, *args):
        """Suppress HTTP access logs."""
        pass

    def do_GET(self):
        path = urlparse(self.path).path
        if path == "/health":
            self._handle_health()
        elif path == "/metrics":
            self._handle_metrics()
        elif path == "/state":
            self._handle_state()
        else:
            self._send_error(404, "Not Found")

    def do_POST(self):
        self._send_method_not_allowed()

    def do_PUT(self):
        self._send_method_not_allowed()

    def do_DELETE(self):
        self._send_method_not_allowed()

    def do_PATCH(self):
        self._send_method_not_allowed()

    def _send_method_not_allowed(self):
        error_data = {
            "error": "Method not allowed",
            "message": "Only GET requests are supported",
            "allowed_methods": ["GET"],
            "status_code": 405,
            "timestamp": time.time()
        }
        self._send_json_response(405, error_data, extra_headers={'Allow': 'GET'})

    def _handle_health(self):
        try:
            controller = self.service.controller
            status = controller.get_status()
            checks = []
            if status['emergency']:
                checks.append("emergency_shutdown")
            for name in (CPU, BANDWIDTH):
                if status[name]['state'] in (ActuatorState.DEGRADED.value, ActuatorState.RECOVERING.value):
                    checks.append(f"{name}_actuator_degraded")
                if status[name]['held']:
                    checks.append(f"{name}_actuator_held")
            storage = self.service.storage
            if storage is not None and storage.is_storage_degraded():
                checks.append("storage_degraded")
            if not self.service.board.latest().primed:
                checks.append("sampler_warming_up")

            is_healthy = not [c for c in checks if c != "sampler_warming_up"]
            health_data = {
                "status": "healthy" if is_healthy else "unhealthy",
                "uptime_seconds": round(time.time() - self.service.start_time, 1),
                "timestamp": time.time(),
                "checks": checks if checks else ["all_systems_operational"],
                "actuators": {CPU: status[CPU]['state'], BANDWIDTH: status[BANDWIDTH]['state']},
                "metrics_storage": "available" if storage is not None else "disabled",
            }
            self._send_json_response(200 if is_healthy else 503, health_data)
        except Exception as e:
            self._send_error(500, f"Health check failed: {self._sanitize_error(str(e))}")

    def _handle_metrics(self):
        try:
            service = self.service
            config = service.config
            sample = service.board.latest()
            state = service.store.read()
            breakdown = decompose(sample, state)
            metrics_data = {
                "timestamp": time.time(),
                "current": asdict(sample),
                "breakdown": asdict(breakdown),
                "targets": asdict(config.target),
                "controller": service.controller.get_status(),
                "synthetic_state": state.to_dict(),
            }
            if service.storage is not None:
                metrics_data["summary_7d"] = service.storage.get_summary(config.metrics_retention_days)
            self._send_json_response(200, metrics_data)
        except Exception as e:
            self._send_error(500, f"Metrics retrieval failed: {self._sanitize_error(str(e))}")

    def _handle_state(self):
        try:
            self._send_json_response(200, self.service.store.read().to_dict())
        except Exception as e:
            self._send_error(500, f"State retrieval failed: {self._sanitize_error(str(e))}")

    def _send_json_response(self, status_code, data, extra_headers=None):
        response_body = json.dumps(data, indent=2).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(response_body)))
        self.send_header('Cache-Control', 'no-cache, no-store, must-revalidate')
        for key, value in (extra_headers or {}).items():
            self.send_header(key, value)
        self.end_headers()
        self.wfile.write(response_body)

    def _send_error(self, status_code, message):
        error_data = {
            "error": message,
            "status_code": status_code,
            "timestamp": time.time()
        }
        self._send_json_response(status_code, error_data)


def status_server_thread(stop_evt: threading.Event, service, host, port):
    """Serve status endpoints until ``stop_evt`` is set."""

    def handler_factory(*args, **kwargs):
        return StatusHandler(*args, service=service, **kwargs)

    server = None
    try:
        server = HTTPServer((host, port), handler_factory)
        server.timeout = 1.0  # Short timeout for responsive shutdown
        logger.info(f"Status server starting on {host}:{port}")
        while not stop_evt.is_set():
            server.handle_request()
    except OSError as e:
        logger.error(f"Failed to start status server on port {port}: {e}")
    finally:
        if server is not None:
            server.server_close()
        logger.info("Status server stopped")


# ---------------------------
# Scheduling & service
# ---------------------------
class PeriodicTask(threading.Thread):
    """
    Runs ``body`` every ``interval()`` seconds until ``stop_evt`` is set.

    The interval is a callable so a reloaded configuration takes effect on
    the next tick. A failing cycle is logged and the loop carries on.
    """

    def __init__(self, name, interval, body, stop_evt, run_immediately=False):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.body = body
        self.stop_evt = stop_evt
        self.run_immediately = run_immediately
        self.cycles = 0
        self.failures = 0

    def run(self):
        logger.info(f"Started {self.name} task (interval {self.interval()}s)")
        if not self.run_immediately and self.stop_evt.wait(self.interval()):
            return
        while not self.stop_evt.is_set():
            try:
                self.body()
            except Exception as e:
                self.failures += 1
                logger.error(f"{self.name} cycle {self.cycles} failed: {type(e).__name__}: {e}")
                logger.debug(f"{self.name} failure details", exc_info=True)
            self.cycles += 1
            if self.stop_evt.wait(self.interval()):
                break
        logger.debug(f"{self.name} task stopped after {self.cycles} cycles")


# (config key, Config attribute) read only once at startup
RESTART_ONLY_SETTINGS = (
    ("STATE_FILE", "state_file"),
    ("METRICS_DB", "metrics_db"),
    ("STATUS_ENABLED", "status_enabled"),
    ("STATUS_HOST", "status_host"),
    ("STATUS_PORT", "status_port"),
)


class LoadgenService:
    """
    Wires sampler, controller, reporter and status server together.

    Three periodic tasks run independently: monitor (samples and publishes
    the latest rates), control (decides and actuates, then health-checks)
    and report (exports a MetricsRecord). They share nothing but the
    SampleBoard, the StateStore and the controller's own lock.
    """

    CLEANUP_EVERY_REPORTS = 100

    def __init__(self, config: Config, config_path=None, supervisor=None, sampler=None,
                 storage=None, cores=None):
        self.config = config
        self.config_path = config_path
        self.store = StateStore(config.state_file)
        self.supervisor = supervisor or ActuatorSupervisor(grace_sec=config.shutdown_grace_s)
        self.controller = LoadController(config, self.supervisor, self.store, cores=cores)
        self.sampler = sampler or Sampler(config.net_interface)
        self.board = SampleBoard()
        self.storage = storage
        self.stop_evt = threading.Event()
        self.reload_requested = threading.Event()
        self.start_time = time.time()
        self.tasks: List[threading.Thread] = []
        self._reports = 0

    def monitor_tick(self):
        sample = self.sampler.sample()
        self.board.publish(sample)
        logger.debug(f"Sample: cpu={sample.cpu_percent:.1f}% rx={sample.rx_mbps:.2f}Mbps "
                     f"tx={sample.tx_mbps:.2f}Mbps total={sample.total_mbps:.2f}Mbps")

    def control_tick(self):
        if self.controller.control_cycle(self.board.latest()):
            logger.debug("Adjustments made in control cycle")
        self.controller.health_check()

    def report_tick(self):
        sample = self.board.latest()
        if not sample.primed:
            logger.debug("Skipping report: no sample yet")
            return
        config = self.config
        breakdown = decompose(sample, self.store.read())
        record = build_metrics_record(config.target, breakdown)
        if self.storage is not None:
            self.storage.store_record(record)
            self._reports += 1
            if self._reports % self.CLEANUP_EVERY_REPORTS == 0:
                deleted = self.storage.cleanup_old(config.metrics_retention_days)
                if deleted > 0:
                    logger.info(f"Cleaned up {deleted} old metrics records")
        logger.info(f"Status: CPU: {record.cpu_total:.1f}%/{record.cpu_target:.1f}% "
                    f"(organic {record.cpu_organic:.1f}%, synthetic {record.cpu_synthetic:.1f}%) | "
                    f"BW: {record.bw_total:.2f}Mbps/{record.bw_target:.2f}Mbps "
                    f"(organic {record.bw_organic:.2f}, synthetic {record.bw_synthetic:.2f})")
        return record

    def reload(self):
        """Re-read configuration; keep the current snapshot if that fails."""
        try:
            new_config = load_config(self.config_path)
        except ConfigError as e:
            logger.error(f"Reload failed, keeping current configuration: {e}")
            return False
        old_config = self.config
        self.controller.reload(new_config)

        if new_config.net_interface != old_config.net_interface:
            sampler = Sampler(new_config.net_interface)
            sampler.initialize()
            self.sampler = sampler
            # Rates from the old interface no longer apply
            self.board.publish(RateSample.zero())
            logger.info(f"Sampling interface switched to {sampler.interface}")
        self.supervisor.grace_sec = new_config.shutdown_grace_s

        restart_only = [key for key, attr in RESTART_ONLY_SETTINGS
                        if getattr(new_config, attr) != getattr(old_config, attr)]
        if restart_only:
            logger.warning(f"Changed settings take effect after restart: {', '.join(restart_only)}")

        self.config = new_config
        logging.getLogger().setLevel(new_config.log_level)
        return True

    def start(self):
        logger.info(f"=== Load Generator Service Starting (v{__version__}, PID {os.getpid()}) ===")
        logger.info(f"CPU Target: {self.config.target.cpu_target_percent}% "
                    f"(max {self.config.target.max_cpu_percent}%), "
                    f"Bandwidth Target: {self.config.target.bandwidth_target_mbps} Mbps "
                    f"(max {self.config.target.max_bandwidth_mbps} Mbps), "
                    f"cores={self.controller.cores}, interface={self.sampler.interface}")

        self.store.reset()
        self.sampler.initialize()

        if self.storage is None:
            try:
                self.storage = MetricsStorage(self.config.metrics_db)
            except (OSError, RuntimeError) as e:
                logger.error(f"Metrics export disabled: {e}")

        self.tasks = [
            PeriodicTask("monitor", lambda: self.config.monitor_interval_s, self.monitor_tick,
                         self.stop_evt),
            PeriodicTask("control", lambda: self.config.adjustment_interval_s, self.control_tick,
                         self.stop_evt),
            PeriodicTask("report", lambda: self.config.report_interval_s, self.report_tick,
                         self.stop_evt),
        ]
        if self.config.status_enabled:
            self.tasks.append(threading.Thread(
                target=status_server_thread,
                args=(self.stop_evt, self, self.config.status_host, self.config.status_port),
                name="status", daemon=True))
        for task in self.tasks:
            task.start()
        logger.info("Initialization complete")

    def stop(self):
        self.stop_evt.set()
        logger.info("Shutting down tasks...")
        for task in self.tasks:
            if task.is_alive():
                task.join(timeout=5.0)
        self.controller.shutdown()
        logger.info("Shutdown complete")

    def install_signal_handlers(self):
        def handle_shutdown(signum, frame):
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.stop_evt.set()

        def handle_reload(signum, frame):
            logger.info("Received reload signal, reloading configuration")
            self.reload_requested.set()

        signal.signal(signal.SIGTERM, handle_shutdown)
        signal.signal(signal.SIGINT, handle_shutdown)
        signal.signal(signal.SIGHUP, handle_reload)

    def run(self) -> int:
        """Run until signalled. Returns the process exit code."""
        self.install_signal_handlers()
        exit_code = 0
        self.start()
        try:
            while not self.stop_evt.is_set():
                if self.reload_requested.is_set():
                    self.reload_requested.clear()
                    self.reload()
                dead = [t.name for t in self.tasks if not t.is_alive()]
                if dead:
                    logger.error(f"Background task(s) died: {', '.join(dead)}")
                    exit_code = 1
                    break
                self.stop_evt.wait(1.0)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()
        return exit_code


# ---------------------------
# CLI
# ---------------------------
def run_check(config: Config, out=sys.stdout):
    """Report configuration, tool availability and a one-second sample."""
    ok = True
    out.write("Configuration:\n")
    for key, value in asdict(config.target).items():
        out.write(f"  {key} = {value}\n")
    out.write(f"  download_url_pool = {', '.join(config.download_url_pool) or '(empty)'}\n")

    out.write("\nDependencies:\n")
    for tool, purpose in ((STRESS_NG, "CPU load"), (WGET, "bandwidth load")):
        path = shutil.which(tool)
        if path:
            out.write(f"  ok       {tool} ({path})\n")
        else:
            ok = False
            out.write(f"  MISSING  {tool} (required for {purpose})\n")

    sampler = Sampler(config.net_interface)
    sampler.initialize()
    time.sleep(1.0)
    sample = sampler.sample()
    out.write(f"\nMonitoring:\n  cores = {os.cpu_count() or 1}\n  interface = {sampler.interface}\n"
              f"  cpu = {sample.cpu_percent:.1f}%\n  bandwidth = {sample.total_mbps:.2f} Mbps\n")
    return 0 if ok else 1


def main(argv=None):
    parser = argparse.ArgumentParser(prog="loadgen",
                                     description="Keep CPU and bandwidth utilisation at a target level.")
    parser.add_argument("command", nargs="?", default="run", choices=("run", "check", "status"),
                        help="run the service (default), check configuration, or print the shared state")
    parser.add_argument("-c", "--config", default=None,
                        help=f"configuration file (default: $LOADGEN_CONFIG or {DEFAULT_CONFIG_FILE})")
    args = parser.parse_args(argv)

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper(),
                        format="[%(asctime)s] [%(levelname)s] %(message)s",
                        datefmt="%Y-%m-%d %H:%M:%S")
    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    logging.getLogger().setLevel(config.log_level)

    if args.command == "check":
        return run_check(config)
    if args.command == "status":
        print(json.dumps(StateStore(config.state_file).read().to_dict(), indent=2))
        return 0
    return LoadgenService(config, config_path=args.config).run()


if __name__ == "__main__":
    sys.exit(main())
