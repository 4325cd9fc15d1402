"""Shared pytest configuration and fixtures."""

import subprocess

import pytest
from prometheus_client import Counter

from conntrack_stats_exporter import ConntrackStatsExporter, CONNTRACK_COMMAND


CONNTRACK_OUTPUT = """\
cpu=0   \tfound=10 invalid=263 ignore=0 insert=0 insert_failed=0 drop=0 early_drop=0 error=5 search_restart=29
cpu=1   \tfound=3 invalid=120 ignore=0 insert=0 insert_failed=0 drop=1 early_drop=0 error=0 search_restart=7
"""


@pytest.fixture
def conntrack_output():
    """Two-CPU output as printed by conntrack --stats."""
    return CONNTRACK_OUTPUT


@pytest.fixture
def completed():
    """Factory for fake subprocess.run results."""
    def _completed(stdout, returncode=0):
        return subprocess.CompletedProcess(CONNTRACK_COMMAND, returncode,
                                           stdout=stdout.encode('utf-8'), stderr=b'')
    return _completed


@pytest.fixture
def timeout_counter():
    """Unregistered timeout counter, isolated per test."""
    return Counter('ctxtimeout', "Context timeouts calling 'conntrack' command",
                   namespace='conntrack', subsystem='stats', registry=None)


@pytest.fixture
def exporter(timeout_counter):
    """Exporter wired to the isolated timeout counter."""
    return ConntrackStatsExporter(timeout_counter=timeout_counter)
