import sys
import os
import itertools

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from loadgen import (
    Config, ControlTarget, ActuatorUnavailable, StateStore, LoadController, BANDWIDTH
)


class FakeHandle:
    """Stands in for a Popen/Process handle."""
    _pids = itertools.count(1000)

    def __init__(self):
        self.pid = next(self._pids)
        self.alive = True


class FakeSupervisor:
    """Records actuator calls instead of spawning processes."""

    def __init__(self):
        self.available = True
        self.fail_start = False
        self.calls = []

    def check_available(self, dimension, url_pool=None):
        if not self.available:
            raise ActuatorUnavailable(f"{dimension} tool not found")
        if dimension == BANDWIDTH and not url_pool:
            raise ActuatorUnavailable("No download URLs configured")

    def start_cpu(self, workers, load_percent):
        if self.fail_start:
            raise ActuatorUnavailable("stress-ng failed to start")
        self.calls.append(("start_cpu", workers, load_percent))
        return FakeHandle()

    def stop_cpu(self, handle):
        self.calls.append(("stop_cpu", handle.pid))
        handle.alive = False

    def start_bandwidth(self, downloaders, rate_mbps, url_pool):
        if self.fail_start:
            raise ActuatorUnavailable("wget failed to start")
        self.calls.append(("start_bandwidth", downloaders, rate_mbps))
        return [FakeHandle() for _ in range(downloaders)]

    def stop_bandwidth(self, handles):
        self.calls.append(("stop_bandwidth", len(handles)))
        for handle in handles:
            handle.alive = False

    def is_alive(self, handle):
        return handle.alive

    def kill(self, handles):
        self.calls.append(("kill", len(handles)))
        for handle in handles:
            handle.alive = False

    def terminate_residual(self):
        self.calls.append(("terminate_residual",))
        return 0

    def names(self):
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()


@pytest.fixture
def make_config(tmp_path):
    """Factory for Config snapshots writing state under tmp_path."""
    def factory(cpu_target=50.0, bw_target=0.0, max_cpu=90.0, max_bw=1000.0, threshold=5.0,
                urls=("http://mirror.example.com/10GB.bin",), **kwargs):
        target = ControlTarget(cpu_target_percent=cpu_target, bandwidth_target_mbps=bw_target,
                               max_cpu_percent=max_cpu, max_bandwidth_mbps=max_bw,
                               min_adjustment_threshold=threshold)
        kwargs.setdefault('state_file', str(tmp_path / "state.json"))
        kwargs.setdefault('metrics_db', str(tmp_path / "metrics.db"))
        return Config(target=target, download_url_pool=tuple(urls), **kwargs)
    return factory


@pytest.fixture
def make_controller(make_config, fake_supervisor):
    """Factory for a LoadController wired to the fake supervisor; returns (controller, store)."""
    def factory(cores=4, **config_kwargs):
        config = make_config(**config_kwargs)
        store = StateStore(config.state_file)
        return LoadController(config, fake_supervisor, store, cores=cores), store
    return factory
