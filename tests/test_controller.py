#!/usr/bin/env python3
"""
Tests for the closed-loop controller: actuation decisions, idempotent
re-actuation, actuator state machine, safety violations, reload and
shutdown.
"""

import sys
import os
from dataclasses import replace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from loadgen import RateSample, ActuatorState, CpuCommand, BandwidthCommand, DimensionStatus


def cpu_sample(cpu, bw=0.0):
    return RateSample(cpu_percent=cpu, rx_mbps=bw, tx_mbps=0.0, total_mbps=bw, primed=True)


class TestCpuControl:
    def test_raises_cpu_towards_target(self, make_controller, fake_supervisor):
        controller, store = make_controller(cores=4, cpu_target=50.0, threshold=5.0)

        assert controller.control_cycle(cpu_sample(30.0)) is True

        assert fake_supervisor.calls == [("start_cpu", 4, 20)]
        state = store.read()
        assert state.cpu_percent == 20.0
        assert state.cpu_workers == 4
        assert state.cpu_load_percent_per_worker == 20
        assert controller.cpu.state == ActuatorState.ACTUATING
        assert controller.cpu.command == CpuCommand(4, 20)

    def test_health_check_confirms_steady(self, make_controller):
        controller, _ = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        assert controller.health_check() is True
        assert controller.cpu.state == ActuatorState.STEADY

    def test_within_threshold_does_nothing(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0, threshold=5.0)
        assert controller.control_cycle(cpu_sample(46.0)) is False
        assert fake_supervisor.calls == []
        assert store.read().version == 0

    def test_unprimed_sample_is_ignored(self, make_controller, fake_supervisor):
        controller, _ = make_controller(cpu_target=50.0)
        assert controller.control_cycle(RateSample.zero()) is False
        assert fake_supervisor.calls == []
        assert controller.cycles == 0

    def test_unchanged_command_is_not_reissued(self, make_controller, fake_supervisor):
        controller, store = make_controller(cores=4, cpu_target=50.0, threshold=0.0)
        controller.control_cycle(cpu_sample(30.0))
        version = store.read().version

        # organic 30.4 -> synthetic 19.6 -> load still rounds to 20
        assert controller.control_cycle(cpu_sample(50.4)) is False
        assert fake_supervisor.names() == ["start_cpu"]
        assert store.read().version == version

    def test_changed_command_replaces_running_load(self, make_controller, fake_supervisor):
        controller, store = make_controller(cores=4, cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        # Organic load dropped: 35% total with 20% synthetic
        controller.control_cycle(cpu_sample(35.0))
        assert fake_supervisor.names() == ["start_cpu", "stop_cpu", "start_cpu"]
        assert fake_supervisor.calls[-1] == ("start_cpu", 4, 35)
        assert store.read().cpu_percent == 35.0

    def test_clamps_under_maximum(self, make_controller, fake_supervisor):
        controller, _ = make_controller(cores=2, cpu_target=80.0, max_cpu=80.0, threshold=5.0)
        controller.control_cycle(cpu_sample(70.0))
        assert fake_supervisor.calls == [("start_cpu", 2, 10)]

    def test_target_zero_stops_load(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))

        target = replace(controller.config.target, cpu_target_percent=0.0)
        controller.config = replace(controller.config, target=target)
        assert controller.control_cycle(cpu_sample(25.0)) is True

        assert fake_supervisor.names() == ["start_cpu", "stop_cpu"]
        assert controller.cpu.state == ActuatorState.IDLE
        assert store.read().cpu_percent == 0.0

    def test_unavailable_tool_leaves_state_unchanged(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        before = store.read()

        fake_supervisor.available = False
        assert controller.control_cycle(cpu_sample(35.0)) is False

        assert fake_supervisor.names() == ["start_cpu"]
        assert store.read() == before
        assert controller.cpu.command == CpuCommand(4, 20)

    def test_unavailable_tool_from_idle(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        fake_supervisor.available = False
        assert controller.control_cycle(cpu_sample(30.0)) is False
        assert store.read().is_zero
        assert controller.cpu.state == ActuatorState.IDLE


class TestBandwidthControl:
    def test_rate_limited_bandwidth(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=0.0, bw_target=100.0, threshold=5.0)
        controller.control_cycle(cpu_sample(0.0, bw=0.0))

        assert fake_supervisor.calls == [("start_bandwidth", 3, 33.33)]
        state = store.read()
        assert state.bw_total_mbps == pytest.approx(99.99)
        assert state.bw_rx_mbps == pytest.approx(99.99)
        assert state.bw_tx_mbps == 0.0
        assert state.bw_downloaders == 3

    def test_unlimited_bandwidth_asserts_requested(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=0.0, bw_target=2000.0, max_bw=3000.0)
        controller.control_cycle(cpu_sample(0.0, bw=0.0))

        assert fake_supervisor.calls == [("start_bandwidth", 4, 0.0)]
        assert controller.bandwidth.command == BandwidthCommand(4, 0.0)
        assert store.read().bw_total_mbps == 2000.0

        # Short of target but same downloader count: no re-actuation
        assert controller.control_cycle(cpu_sample(0.0, bw=1500.0)) is False
        assert fake_supervisor.names() == ["start_bandwidth"]

    def test_no_urls_means_no_bandwidth_load(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=0.0, bw_target=100.0, urls=())
        assert controller.control_cycle(cpu_sample(0.0)) is False
        assert fake_supervisor.calls == []
        assert store.read().is_zero


class TestHealthCheck:
    def test_dead_actuator_is_restarted(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        controller.health_check()
        controller.cpu.handles[0].alive = False

        assert controller.health_check() is False
        assert fake_supervisor.names() == ["start_cpu", "stop_cpu", "start_cpu"]
        assert controller.cpu.state == ActuatorState.RECOVERING
        assert store.read().cpu_percent == 20.0

        assert controller.health_check() is True
        assert controller.cpu.state == ActuatorState.STEADY
        assert controller.cpu.total_recoveries == 1

    def test_failed_recovery_goes_idle(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        controller.cpu.handles[0].alive = False
        fake_supervisor.fail_start = True

        controller.health_check()
        assert controller.cpu.state == ActuatorState.IDLE
        assert controller.cpu.command == CpuCommand(0, 0)
        assert store.read().cpu_percent == 0.0

    def test_recovery_gives_up_after_repeated_deaths(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        for _ in range(DimensionStatus.MAX_RECOVERY_ATTEMPTS + 1):
            controller.cpu.handles[0].alive = False
            controller.health_check()

        assert controller.cpu.state == ActuatorState.IDLE
        assert fake_supervisor.names().count("start_cpu") == DimensionStatus.MAX_RECOVERY_ATTEMPTS + 1
        assert store.read().cpu_percent == 0.0

    def test_exhausted_dimension_is_held_until_reload(self, make_controller, make_config, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        for _ in range(DimensionStatus.MAX_RECOVERY_ATTEMPTS + 1):
            controller.cpu.handles[0].alive = False
            controller.health_check()
        assert controller.cpu.held
        assert controller.get_status()['cpu']['held']
        starts = fake_supervisor.names().count("start_cpu")

        for _ in range(3):
            assert not controller.control_cycle(cpu_sample(30.0))
        assert fake_supervisor.names().count("start_cpu") == starts
        assert store.read().cpu_percent == 0.0

        controller.reload(make_config(cpu_target=50.0))
        assert not controller.cpu.held
        assert controller.control_cycle(cpu_sample(30.0))
        assert fake_supervisor.names().count("start_cpu") == starts + 1
        assert controller.cpu.state == ActuatorState.STEADY

    def test_idle_dimensions_are_healthy(self, make_controller):
        controller, _ = make_controller()
        assert controller.health_check() is True


class TestSafety:
    def test_repeated_violations_trigger_emergency(self, make_controller, fake_supervisor):
        controller, store = make_controller(cores=4, cpu_target=50.0, max_cpu=60.0, threshold=30.0,
                                            safety_violation_limit=3)
        controller.control_cycle(cpu_sample(10.0))
        assert fake_supervisor.calls == [("start_cpu", 4, 40)]

        controller.control_cycle(cpu_sample(65.0))
        controller.control_cycle(cpu_sample(65.0))
        assert controller.safety_violations == 2
        assert not controller.emergency

        controller.control_cycle(cpu_sample(65.0))
        assert controller.emergency
        assert fake_supervisor.names()[-1] == "kill"
        assert controller.cpu.state == ActuatorState.IDLE
        assert store.read().is_zero

        # Latched until reload
        assert controller.control_cycle(cpu_sample(10.0)) is False
        assert fake_supervisor.names().count("start_cpu") == 1

    def test_compliant_cycle_resets_count(self, make_controller):
        controller, _ = make_controller(cpu_target=50.0, max_cpu=60.0, threshold=30.0)
        controller.control_cycle(cpu_sample(10.0))
        controller.control_cycle(cpu_sample(65.0))
        controller.control_cycle(cpu_sample(55.0))
        assert controller.safety_violations == 0
        controller.control_cycle(cpu_sample(65.0))
        assert controller.safety_violations == 1

    def test_bandwidth_violation_counts(self, make_controller):
        controller, _ = make_controller(cpu_target=50.0, max_bw=100.0, threshold=30.0)
        controller.control_cycle(cpu_sample(10.0))
        controller.control_cycle(cpu_sample(45.0, bw=150.0))
        assert controller.safety_violations == 1

    def test_no_violation_without_synthetic_load(self, make_controller):
        controller, _ = make_controller(cpu_target=50.0, max_cpu=60.0)
        controller.control_cycle(cpu_sample(95.0))
        assert controller.safety_violations == 0


class TestLifecycle:
    def test_reload_stops_then_swaps_config(self, make_controller, make_config, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        controller.emergency = True

        new_config = make_config(cpu_target=40.0)
        controller.reload(new_config)

        assert fake_supervisor.names() == ["start_cpu", "stop_cpu"]
        assert controller.config is new_config
        assert not controller.emergency
        assert controller.cpu.state == ActuatorState.IDLE
        assert store.read().is_zero

    def test_shutdown_resets_state(self, make_controller, fake_supervisor):
        controller, store = make_controller(cpu_target=50.0, bw_target=20.0)
        controller.control_cycle(cpu_sample(30.0))
        assert not store.read().is_zero

        controller.shutdown()
        assert fake_supervisor.names() == ["start_cpu", "start_bandwidth", "stop_cpu",
                                           "stop_bandwidth", "terminate_residual"]
        assert store.read().is_zero
        assert all(d.state == ActuatorState.IDLE for d in controller.dimensions)

    def test_get_status(self, make_controller):
        controller, _ = make_controller(cpu_target=50.0)
        controller.control_cycle(cpu_sample(30.0))
        status = controller.get_status()
        assert status['cpu']['state'] == 'ACTUATING'
        assert status['cpu']['command'] == {'workers': 4, 'load_percent': 20}
        assert status['bandwidth']['state'] == 'IDLE'
        assert status['emergency'] is False
