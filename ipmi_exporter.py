#!/usr/bin/env python3

import enum
import logging
import os
import subprocess
from collections import namedtuple
from wsgiref.simple_server import WSGIRequestHandler, make_server

from dotenv import load_dotenv
from prometheus_client import (CollectorRegistry, Gauge, generate_latest,
                               make_wsgi_app)
from prometheus_client.exposition import ThreadingWSGIServer

log = logging.getLogger("ipmi_exporter")

DEFAULT_PORT = 9101
DEFAULT_NETWORK_CARD_DEVICE = "bnxt_en-pci-0200"
DEFAULT_COMMAND_TIMEOUT = 30.0
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


########################################
# 1) Settings (environment / .env)
########################################
def _env_bool(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_number(name, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


class Settings:
    def __init__(self, addr="", port=DEFAULT_PORT, log_file=None,
                 log_level="INFO", use_sudo=True,
                 network_card_device=DEFAULT_NETWORK_CARD_DEVICE,
                 command_timeout=DEFAULT_COMMAND_TIMEOUT):
        self.addr = addr
        self.port = port
        self.log_file = log_file
        self.log_level = log_level
        self.use_sudo = use_sudo
        self.network_card_device = network_card_device
        # None means wait for the child forever
        self.command_timeout = command_timeout

    @classmethod
    def from_env(cls):
        timeout = _env_number("COMMAND_TIMEOUT", DEFAULT_COMMAND_TIMEOUT, float)
        return cls(
            addr=os.getenv("IPMI_EXPORTER_ADDR", ""),
            port=_env_number("IPMI_EXPORTER_PORT", DEFAULT_PORT, int),
            log_file=os.getenv("IPMI_EXPORTER_LOG_FILE") or None,
            log_level=os.getenv("IPMI_EXPORTER_LOG_LEVEL", "INFO").upper(),
            use_sudo=_env_bool("IPMI_USE_SUDO", True),
            network_card_device=os.getenv("NETWORK_CARD_DEVICE",
                                          DEFAULT_NETWORK_CARD_DEVICE),
            command_timeout=timeout if timeout > 0 else None,
        )

    @property
    def ipmi_command(self):
        argv = ["ipmitool", "sensor"]
        if self.use_sudo:
            argv.insert(0, "sudo")
        return argv

    @property
    def sensors_command(self):
        return ["sensors"]


def setup_logging(settings: Settings):
    if settings.log_file:
        handlers = [logging.FileHandler(settings.log_file)]
    else:
        handlers = [logging.StreamHandler()]
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT,
                        handlers=handlers, force=True)


########################################
# 2) Command runner
########################################
class RunFailure(Exception):
    """An external command could not be run or exited non-zero."""

    def __init__(self, argv, message):
        super().__init__(f"{' '.join(argv)}: {message}")
        self.argv = list(argv)
        self.message = message


class CommandTimeout(RunFailure):
    pass


def run_command(argv, timeout=None):
    """Run argv to completion and return its stdout as text.

    Raises RunFailure when the command is missing, exits non-zero or
    (as CommandTimeout) runs longer than timeout seconds.
    """
    try:
        proc = subprocess.run(argv,
                              stdout=subprocess.PIPE,
                              stderr=subprocess.PIPE,
                              encoding="utf-8",
                              errors="replace",
                              timeout=timeout)
    except subprocess.TimeoutExpired:
        raise CommandTimeout(argv, f"timed out after {timeout}s") from None
    except OSError as e:
        raise RunFailure(argv, str(e)) from e

    if proc.returncode != 0:
        stderr = (proc.stderr or "").strip()
        message = f"exit status {proc.returncode}"
        if stderr:
            message = f"{message}: {stderr}"
        raise RunFailure(argv, message)
    return proc.stdout


########################################
# 3) Parsers
########################################
SensorReading = namedtuple("SensorReading", ["name", "value"])


def parse_ipmi_output(text):
    # e.g:
    # CPU1_TEMP        | 45.000     | degrees C  | ok    | na | ...
    # PSU1_STATUS      | na         | discrete   | na    | na | ...
    readings = []
    for line in text.splitlines():
        fields = line.split("|")
        if len(fields) < 2:
            continue
        name = fields[0].strip()
        value_str = fields[1].strip()
        try:
            value = float(value_str)
        except ValueError:
            log.warning("Failed to parse sensor value for %s: %r", name, value_str)
            continue
        readings.append(SensorReading(name, value))
    return readings


def parse_sensors_output(text, device=DEFAULT_NETWORK_CARD_DEVICE):
    # e.g:
    # bnxt_en-pci-0200
    # Adapter: PCI adapter
    # temp1:        +45.0°C  (high = +110.0°C, crit = +120.0°C)
    readings = []
    current_device = None

    for line in text.splitlines():
        line = line.strip()
        if line == device:
            current_device = line
        elif current_device is not None and "temp1" in line:
            fields = line.split()
            if len(fields) < 2:
                continue
            temp_str = fields[1].strip("+°C")
            try:
                temp = float(temp_str)
            except ValueError:
                log.warning("Failed to parse temperature for device %s: %r",
                            current_device, fields[1])
                continue
            readings.append(SensorReading(current_device, temp))
            # only the first temp1 line of a stanza counts
            current_device = None
    return readings


########################################
# 4) Classifier
########################################
class Category(enum.Enum):
    DIMM = "dimm"
    VR_DIMM = "vr_dimm"
    CPU = "cpu"
    ENV = "env"
    HIC = "hic"
    NETWORK_CARD = "network_card"
    UNKNOWN = "unknown"


def _contains(*parts):
    return lambda name: all(part in name for part in parts)


# First match wins. VR_DIMMG has to come before DIMMG.
IPMI_RULES = [
    (_contains("VR_DIMMG"), Category.VR_DIMM),
    (_contains("DIMMG"), Category.DIMM),
    (_contains("CPU", "TEMP"), Category.CPU),
    (_contains("M2_AMB_TEMP"), Category.ENV),
    (_contains("HIC_TEMP"), Category.HIC),
]


def classify(name, rules=IPMI_RULES):
    for matches, category in rules:
        if matches(name):
            return category
    return Category.UNKNOWN


########################################
# 5) Metric registry
########################################
METRICS = {
    Category.DIMM: ("ipmi_temp_dimm_sensor", "IPMI DIMM sensor values"),
    Category.VR_DIMM: ("ipmi_temp_vrdimm_sensor", "IPMI VR DIMM sensor values"),
    Category.CPU: ("ipmi_temp_cpu_sensor", "IPMI CPU sensor values"),
    Category.ENV: ("ipmi_temp_env_sensor", "IPMI environment sensor values"),
    Category.HIC: ("ipmi_temp_hic_sensor", "IPMI HIC sensor values"),
    Category.NETWORK_CARD: ("network_card_temp_sensor", "Network card temp sensor"),
}


class MetricRegistry:
    """One labeled gauge per category, owned by its own CollectorRegistry.

    Series are only ever overwritten, never removed: a sensor that stops
    reporting keeps its last value.
    """

    def __init__(self):
        self.registry = CollectorRegistry(auto_describe=True)
        self.gauges = {
            category: Gauge(name, doc, ["sensor_name"], registry=self.registry)
            for category, (name, doc) in METRICS.items()
        }

    def set(self, category, sensor_name, value):
        if category not in self.gauges:
            raise ValueError(f"category {category} is not published")
        self.gauges[category].labels(sensor_name=sensor_name).set(value)

    def get(self, category, sensor_name):
        name, _ = METRICS[category]
        return self.registry.get_sample_value(name, {"sensor_name": sensor_name})

    def expose(self):
        return generate_latest(self.registry)


########################################
# 6) Collector
########################################
SourceResult = namedtuple("SourceResult", ["source", "ok", "published", "error"])


class TemperatureCollector:
    def __init__(self, registry: MetricRegistry, settings=None, runner=run_command):
        self.registry = registry
        self.settings = settings or Settings()
        self.runner = runner

    def _run(self, tool, argv):
        log.info("Executing %s command", tool)
        output = self.runner(argv, timeout=self.settings.command_timeout)
        log.debug("%s output:\n%s", " ".join(argv), output)
        return output

    def collect_ipmi(self):
        try:
            output = self._run("ipmitool", self.settings.ipmi_command)
        except RunFailure as e:
            log.error("Failed to execute ipmitool: %s", e)
            return SourceResult("ipmi", False, 0, str(e))

        published = 0
        for reading in parse_ipmi_output(output):
            category = classify(reading.name)
            if category is Category.UNKNOWN:
                log.info("Unknown sensor %s with value %f", reading.name, reading.value)
                continue
            log.debug("Setting %s metric for %s: %f",
                      category.name, reading.name, reading.value)
            self.registry.set(category, reading.name, reading.value)
            published += 1
        return SourceResult("ipmi", True, published, None)

    def collect_sensors(self):
        try:
            output = self._run("sensors", self.settings.sensors_command)
        except RunFailure as e:
            log.error("Failed to execute sensors: %s", e)
            return SourceResult("sensors", False, 0, str(e))

        published = 0
        for reading in parse_sensors_output(output, self.settings.network_card_device):
            log.debug("Setting temperature for device %s: %f",
                      reading.name, reading.value)
            self.registry.set(Category.NETWORK_CARD, reading.name, reading.value)
            published += 1
        return SourceResult("sensors", True, published, None)

    def collect(self):
        return [self.collect_ipmi(), self.collect_sensors()]


########################################
# 7) HTTP
########################################
class ScrapeHandler:
    """WSGI app: every GET /metrics collects fresh readings, then exposes.

    Exposition (content negotiation, compression, name[] filtering) is
    left to prometheus_client's own WSGI app.
    """

    def __init__(self, collector: TemperatureCollector, registry: MetricRegistry):
        self.collector = collector
        self.registry = registry
        self.metrics_app = make_wsgi_app(registry.registry)

    def __call__(self, environ, start_response):
        if environ.get("PATH_INFO") != "/metrics":
            start_response("404 Not Found", [("Content-Type", "text/plain")])
            return [b"Not Found\n"]

        if environ.get("REQUEST_METHOD", "GET") == "GET":
            log.info("Handling /metrics request")
            self.collector.collect()
        return self.metrics_app(environ, start_response)


class _DebugLogHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        log.debug("%s - %s", self.address_string(), format % args)


def make_app(settings=None, runner=run_command):
    registry = MetricRegistry()
    collector = TemperatureCollector(registry, settings, runner)
    return ScrapeHandler(collector, registry)


########################################
# 8) Main
########################################
def main():
    load_dotenv()
    settings = Settings.from_env()
    setup_logging(settings)

    app = make_app(settings)
    httpd = make_server(settings.addr, settings.port, app,
                        ThreadingWSGIServer, handler_class=_DebugLogHandler)
    log.info("Starting ipmi_node_exporter on port %d", settings.port)
    try:
        httpd.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        httpd.server_close()


if __name__ == "__main__":
    main()
