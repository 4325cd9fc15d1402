#!/usr/bin/env python3
"""
Conntrack Stats Exporter for Prometheus
Version: 1.0.0
Republishes the per-CPU counters of `conntrack --stats` as Prometheus metrics

Counters are exposed with the `_total` suffix added by prometheus_client,
e.g. `conntrack_stats_found_total{cpu="0"}` and
`conntrack_stats_ctxtimeout_total`. Dashboards and alerts written against
the unsuffixed names (`conntrack_stats_found`) must be updated.
"""

import subprocess
import re
import time
import os
import shutil
import signal
import sys
import threading
from typing import Dict, List, Iterable, Optional
from prometheus_client import start_http_server, Counter, Info
from prometheus_client.core import CollectorRegistry, CounterMetricFamily
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] %(message)s'
)
logger = logging.getLogger(__name__)

__version__ = '1.0.0'

# Configuration
EXPORTER_PORT = int(os.environ.get('EXPORTER_PORT', 9371))
EXPORTER_ADDRESS = os.environ.get('EXPORTER_ADDRESS', '0.0.0.0')
DEBUG_MODE = os.environ.get('DEBUG_MODE', '').lower() in ('true', '1', 'yes')

if DEBUG_MODE:
    logger.setLevel(logging.DEBUG)

CONNTRACK_COMMAND = ['conntrack', '--stats']
CONNTRACK_TIMEOUT = 5

PROM_NAMESPACE = 'conntrack'
PROM_SUBSYSTEM = 'stats'

METRIC_NAMES = [
    'found',
    'invalid',
    'ignore',
    'insert',
    'insert_failed',
    'drop',
    'early_drop',
    'error',
    'search_restart',
]

# ASCII digits only, values in other scripts are not conntrack counters
KEY_VALUE_RE = re.compile(r'([a-z_]+)=(\d+)', re.ASCII)


class ConntrackError(Exception):
    """Base error for conntrack collection failures"""


class ConntrackTimeout(ConntrackError):
    """The conntrack command did not finish before the deadline"""


class ConntrackExecutionError(ConntrackError):
    """The conntrack command could not be started or exited with an error"""


class MalformedOutputError(ConntrackError):
    """The conntrack output cannot be read as UTF-8 text"""


def build_fq_name(*parts):
    """Join non-empty name parts with underscores"""
    return '_'.join(part for part in parts if part)


def call_conntrack_tool(command=CONNTRACK_COMMAND, timeout=CONNTRACK_TIMEOUT) -> List[str]:
    """Run the conntrack command and return its stdout lines"""
    try:
        result = subprocess.run(command, capture_output=True,
                                timeout=timeout, check=True)
    except subprocess.TimeoutExpired as e:
        raise ConntrackTimeout(f"{' '.join(command)} timed out after {timeout}s") from e
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or b'').decode('utf-8', errors='replace').strip()
        raise ConntrackExecutionError(
            f"{' '.join(command)} exited with status {e.returncode}: {stderr}"
        ) from e
    except OSError as e:
        raise ConntrackExecutionError(f"Cannot run {' '.join(command)}: {e}") from e

    try:
        output = result.stdout.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedOutputError(f"{' '.join(command)} printed non UTF-8 output: {e}") from e

    return output.splitlines()


def parse_line(line: str) -> Dict[str, int]:
    """Extract all key=value pairs of one output line"""
    sample = {}
    for key, value in KEY_VALUE_RE.findall(line):
        sample[key] = int(value)
    return sample


def aggregate(samples: Iterable[Dict[str, int]]) -> Dict[int, Dict[str, int]]:
    """Index per-line samples by their cpu field, the last line for a CPU wins"""
    table = {}
    for sample in samples:
        if 'cpu' not in sample:
            continue
        table[sample['cpu']] = sample
    return table


def get_metrics(run_tool=call_conntrack_tool) -> Dict[int, Dict[str, int]]:
    """Run conntrack and parse its output into a per-CPU sample table"""
    lines = run_tool()
    return aggregate(parse_line(line) for line in lines)


class ConntrackStatsExporter:
    """Custom collector exporting conntrack_stats_* counters per CPU.

    The collector is stateless between scrapes apart from the timeout
    counter, which is the only object shared by concurrent collect() calls.
    """

    def __init__(self, timeout_counter: Optional[Counter] = None, run_tool=call_conntrack_tool):
        self.run_tool = run_tool
        self._lock = threading.Lock()

        self.help_texts = {name: f'Total of conntrack {name}' for name in METRIC_NAMES}

        if timeout_counter is None:
            timeout_counter = Counter(
                'ctxtimeout',
                "Context timeouts calling 'conntrack' command",
                namespace=PROM_NAMESPACE,
                subsystem=PROM_SUBSYSTEM,
                registry=None,
            )
        self.timeout_counter = timeout_counter

    def _family(self, metric_name):
        return CounterMetricFamily(
            build_fq_name(PROM_NAMESPACE, PROM_SUBSYSTEM, metric_name),
            self.help_texts[metric_name],
            labels=['cpu'],
        )

    def describe(self):
        """Yield the metric families without samples"""
        for metric_name in METRIC_NAMES:
            yield self._family(metric_name)
        yield from self.timeout_counter.describe()

    def _collect_timeout_counter(self, increment=False):
        with self._lock:
            if increment:
                self.timeout_counter.inc()
            return self.timeout_counter.collect()

    def collect(self):
        """Run conntrack and yield one counter family per statistic"""
        try:
            metrics = get_metrics(self.run_tool)
        except ConntrackTimeout as e:
            logger.warning(f"{e}, only the timeout counter is exported")
            yield from self._collect_timeout_counter(increment=True)
            return
        except ConntrackError as e:
            logger.error(f"Error collecting conntrack stats: {e}")
            raise

        logger.debug(f"Collected conntrack stats for {len(metrics)} CPU(s)")

        for metric_name in METRIC_NAMES:
            family = self._family(metric_name)
            for cpu in sorted(metrics):
                value = metrics[cpu].get(metric_name)
                if value is None:
                    continue
                family.add_metric([str(cpu)], value)
            if family.samples:
                yield family

        yield from self._collect_timeout_counter()


def build_registry(exporter: Optional[ConntrackStatsExporter] = None) -> CollectorRegistry:
    """Create a registry holding the conntrack collector and exporter info"""
    registry = CollectorRegistry()
    if exporter is None:
        exporter = ConntrackStatsExporter()
    registry.register(exporter)

    exporter_info = Info(build_fq_name(PROM_NAMESPACE, PROM_SUBSYSTEM, 'exporter'),
                         'Exporter information', registry=registry)
    exporter_info.info({
        'version': __version__,
        'command': ' '.join(CONNTRACK_COMMAND),
    })
    return registry


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}")
    sys.exit(0)


def main():
    """Main entry point"""
    try:
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        # conntrack needs CAP_NET_ADMIN to read the kernel statistics
        if os.geteuid() != 0:
            logger.warning("Not running as root. conntrack may fail to read statistics.")
        if shutil.which(CONNTRACK_COMMAND[0]) is None:
            logger.warning(f"{CONNTRACK_COMMAND[0]} not found in PATH, scrapes will fail")

        registry = build_registry()
        start_http_server(EXPORTER_PORT, addr=EXPORTER_ADDRESS, registry=registry)
        logger.info(f"Conntrack Stats Exporter started on {EXPORTER_ADDRESS}:{EXPORTER_PORT}")
        logger.info(f"Metrics available at http://{EXPORTER_ADDRESS}:{EXPORTER_PORT}/metrics")

        while True:
            time.sleep(60)

    except KeyboardInterrupt:
        logger.info("Exporter stopped by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        raise


if __name__ == '__main__':
    main()
