"""
Unit tests for the attribution engine

Run with: python -m pytest pod_gpu_agent/tests/test_attribution.py
"""

import logging

import pytest

from conftest import FakeEnumerator, make_device, make_pod
from pod_gpu_agent.attribution import (
    attribute,
    build_ownership,
    collect_pid_sets,
    run_attribution,
)
from pod_gpu_agent.models import PodKey

POD_A = PodKey("default", "a")
POD_B = PodKey("default", "b")


def as_set(records):
    return {
        (r.pid, str(r.pod), r.device_index, r.used_memory_bytes, r.percent_of_device_total)
        for r in records
    }


def test_end_to_end_scenario():
    """Two owned processes are attributed, the host process is dropped"""
    device = make_device(total=1000, processes={5: 250, 6: 100, 7: 50})

    result = run_attribution({POD_A: {5}, POD_B: {6}}, [device])

    got = {(r.pid, r.pod.name, r.used_memory_bytes, r.percent_of_device_total)
           for r in result.records}
    assert got == {(5, "a", 250, 25.0), (6, "b", 100, 10.0)}
    assert result.unmatched == 1


def test_percent_of_device_total():
    device = make_device(total=3 * 1024 ** 3, processes={10: 1024 ** 3})

    [record] = attribute({10: POD_A}, [device]).records

    assert record.percent_of_device_total == pytest.approx(100 / 3)
    assert record.device_total_bytes == 3 * 1024 ** 3


def test_unmatched_process_is_not_an_error():
    device = make_device(processes={4242: 500})

    result = attribute({1: POD_A}, [device])

    assert result.records == []
    assert result.unmatched == 1


def test_match_by_pid_value_not_position():
    """PID 1234 sits at index 1 of the enumerated list, it must still match"""
    pod_a = make_pod("podA", container_ids=("c1",))
    # Raw tokens as a ps listing would print them
    enumerator = FakeEnumerator({"c1": ["9999", "1234"]})

    pid_sets, failed = collect_pid_sets([pod_a], enumerator)
    device = make_device(total=1000, processes={1234: 100})
    result = run_attribution(pid_sets, [device])

    assert failed == 0
    assert [(r.pid, r.pod.name) for r in result.records] == [(1234, "podA")]


def test_positional_index_does_not_match():
    """A driver PID equal to a list position must not match"""
    device = make_device(total=1000, processes={1: 100})

    result = run_attribution({PodKey("default", "podA"): ["9999", "1234"]}, [device])

    assert result.records == []
    assert result.unmatched == 1


def test_idempotent_on_identical_snapshots():
    pid_sets = {POD_A: {1, 2, 3}, POD_B: {4}}
    devices = [
        make_device(0, 1000, {1: 10, 4: 40, 9: 90}),
        make_device(1, 2000, {2: 20, 3: 30}),
    ]

    first = run_attribution(pid_sets, devices)
    second = run_attribution(pid_sets, devices)

    assert as_set(first.records) == as_set(second.records)
    assert len(first.records) == 4


def test_output_independent_of_input_order():
    devices = [make_device(0, 1000, {1: 10, 4: 40}), make_device(1, 1000, {2: 20})]
    forward = run_attribution({POD_A: {1, 2}, POD_B: {4}}, devices)
    backward = run_attribution({POD_B: {4}, POD_A: {2, 1}}, list(reversed(devices)))

    assert as_set(forward.records) == as_set(backward.records)


def test_tie_break_is_deterministic(caplog):
    """PID 42 claimed by two pods always goes to the later pod in sorted order"""
    pod_a = PodKey("default", "podA")
    pod_b = PodKey("default", "podB")

    winners = set()
    for pid_sets in ({pod_a: {42}, pod_b: {42}}, {pod_b: {42}, pod_a: {42}}) * 3:
        with caplog.at_level(logging.WARNING):
            ownership, conflicts = build_ownership(pid_sets)
        assert conflicts == 1
        winners.add(ownership[42])

    assert winners == {pod_b}
    assert "PID 42 claimed by both" in caplog.text


def test_tie_break_orders_by_namespace_first():
    early = PodKey("aaa", "zzz")
    late = PodKey("bbb", "aaa")

    ownership, _ = build_ownership({late: {7}, early: {7}})

    assert ownership[7] == late


def test_same_pod_twice_is_not_a_conflict():
    ownership, conflicts = build_ownership({POD_A: [5, 5, "5"]})

    assert ownership == {5: POD_A}
    assert conflicts == 0


def test_zero_total_memory_skips_percentage(caplog):
    device = make_device(total=0, processes={5: 250})

    with caplog.at_level(logging.WARNING):
        [record] = attribute({5: POD_A}, [device]).records

    assert record.used_memory_bytes == 250
    assert record.percent_of_device_total is None
    assert "skipping percentage" in caplog.text


def test_same_pid_on_two_devices_yields_two_records():
    devices = [make_device(0, 1000, {5: 100}), make_device(1, 4000, {5: 400})]

    result = attribute({5: POD_A}, devices)

    assert sorted((r.device_index, r.percent_of_device_total) for r in result.records) == [
        (0, 10.0),
        (1, 10.0),
    ]


def test_collect_pid_sets_unions_containers():
    pod = make_pod("a", container_ids=("c1", "c2"))
    enumerator = FakeEnumerator({"c1": {1, 2}, "c2": {2, 3}})

    pid_sets, failed = collect_pid_sets([pod], enumerator)

    assert pid_sets == {POD_A: {1, 2, 3}}
    assert failed == 0


def test_collect_pid_sets_isolates_container_failure(caplog):
    pod_a = make_pod("a", container_ids=("c1", "bad"))
    pod_b = make_pod("b", container_ids=("c2",))
    enumerator = FakeEnumerator({"c1": {1}, "c2": {2}}, failing={"bad"})

    with caplog.at_level(logging.WARNING):
        pid_sets, failed = collect_pid_sets([pod_a, pod_b], enumerator)

    assert pid_sets == {POD_A: {1}, POD_B: {2}}
    assert failed == 1
    assert "Failed to get PIDs for container bad in pod default/a" in caplog.text



def test_collect_pid_sets_isolates_unexpected_errors(caplog):
    pod_a = make_pod("a", container_ids=("denied", "garbled"))
    pod_b = make_pod("b", container_ids=("c2",))
    enumerator = FakeEnumerator({"c2": {2}}, failing={
        "denied": PermissionError(13, "Permission denied", "kubectl"),
        "garbled": UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
    })

    with caplog.at_level(logging.WARNING):
        pid_sets, failed = collect_pid_sets([pod_a, pod_b], enumerator)

    assert pid_sets == {POD_A: set(), POD_B: {2}}
    assert failed == 2
    assert "Failed to get PIDs for container denied in pod default/a" in caplog.text


def test_collect_pid_sets_times_out_slow_container():
    import threading

    release = threading.Event()

    class SlowEnumerator(FakeEnumerator):
        def pids_for_container(self, container):
            if container.container_id == "slow":
                release.wait(5)
            return super().pids_for_container(container)

    pod = make_pod("a", container_ids=("fast", "slow"))
    enumerator = SlowEnumerator({"fast": {1}, "slow": {2}})

    try:
        pid_sets, failed = collect_pid_sets([pod], enumerator, timeout=0.2, max_workers=2)
    finally:
        release.set()

    assert pid_sets == {POD_A: {1}}
    assert failed == 1


def test_pods_without_containers_own_nothing():
    pid_sets, failed = collect_pid_sets([make_pod("a", container_ids=())], FakeEnumerator({}))

    assert pid_sets == {POD_A: set()}
    assert run_attribution(pid_sets, [make_device(processes={1: 1})]).records == []
