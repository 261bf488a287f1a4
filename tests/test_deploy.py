import asyncio

import pytest

from archpipe.core.config import DeploymentSettings
from archpipe.core.models import DeploymentDescriptor, HealthCheck
from archpipe.core.services.deploy import DeploymentDriver, Rollout
from archpipe.core.services.service import InMemoryService, always


OLD_IMAGE = "registry.example/app:v1"
NEW_IMAGE = "registry.example/app:v2"


def _descriptor():
    return DeploymentDescriptor(container_name="app", image_uri=NEW_IMAGE)


def _settings(**overrides):
    values = dict(
        grace_period=60.0,
        deployment_timeout=300.0,
        health_check=HealthCheck(
            path="/health",
            interval=30.0,
            timeout=10.0,
            healthy_threshold=2,
            unhealthy_threshold=3,
        ),
    )
    values.update(overrides)
    return DeploymentSettings(**values)


@pytest.mark.asyncio
async def test_never_healthy_rollout_times_out_and_keeps_old_instances(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE, health=always(500))
    old_ids = list(service.traffic)
    driver = DeploymentDriver(_settings(), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service)

    assert outcome.state == "TimedOut"
    assert clock.now == pytest.approx(300.0)
    assert service.traffic == old_ids
    assert service.serving_images == {OLD_IMAGE}
    # все новые инстансы погашены, замены были
    assert set(service.instances) == set(old_ids)
    assert outcome.replaced >= 1


@pytest.mark.asyncio
async def test_healthy_rollout_shifts_traffic_then_stops_old(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE, desired_count=2)
    old_ids = list(service.traffic)
    driver = DeploymentDriver(_settings(desired_count=2), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service)

    assert outcome.state == "Succeeded"
    assert service.serving_images == {NEW_IMAGE}
    assert len(service.traffic) == 2
    assert all(old in service.stopped for old in old_ids)


@pytest.mark.asyncio
async def test_instances_are_not_probed_during_grace_period(clock):
    probes_at = []

    def health(image_uri, attempt):
        probes_at.append(clock.now)
        return 200

    service = InMemoryService(name="app", image_uri=OLD_IMAGE, health=health)
    driver = DeploymentDriver(_settings(grace_period=120.0), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service)

    assert outcome.state == "Succeeded"
    assert min(probes_at) >= 120.0


@pytest.mark.asyncio
async def test_unhealthy_instance_is_replaced(clock):
    # первый инстанс нездоров, следующий за ним — здоров
    stopped_ids = []

    def health(image_uri, attempt):
        return 503 if not stopped_ids else 200

    service = InMemoryService(name="app", image_uri=OLD_IMAGE, health=health)
    original_stop = service.stop_instance

    async def stop_instance(instance):
        stopped_ids.append(instance.instance_id)
        await original_stop(instance)

    service.stop_instance = stop_instance
    driver = DeploymentDriver(_settings(), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service)

    assert outcome.state == "Succeeded"
    assert outcome.replaced == 1
    assert service.serving_images == {NEW_IMAGE}


@pytest.mark.asyncio
async def test_rejected_update_fails_without_touching_service(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE, rejected_images={NEW_IMAGE})
    old_ids = list(service.traffic)
    driver = DeploymentDriver(_settings(), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service)

    assert outcome.state == "Failed"
    assert service.traffic == old_ids


@pytest.mark.asyncio
async def test_explicit_timeout_overrides_settings(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE, health=always(None))
    driver = DeploymentDriver(_settings(grace_period=0.0), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service, timeout=45.0)

    assert outcome.state == "TimedOut"
    assert clock.now <= 45.0


def test_rollout_terminal_states_are_final():
    rollout = Rollout()
    rollout.advance("RollingOut")
    rollout.advance("TimedOut")

    assert rollout.is_terminal
    with pytest.raises(RuntimeError):
        rollout.advance("Succeeded")


@pytest.mark.asyncio
async def test_refused_probes_count_as_failures_and_time_out(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE)
    old_ids = set(service.instances)

    async def refused(instance, health_check):
        raise ConnectionRefusedError("connection refused")

    service.probe = refused
    driver = DeploymentDriver(_settings(grace_period=0.0), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service, timeout=60.0)

    assert outcome.state == "TimedOut"
    assert set(service.instances) == old_ids
    assert service.serving_images == {OLD_IMAGE}


@pytest.mark.asyncio
async def test_booting_instance_becomes_healthy_after_refused_probes(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE)
    original_probe = service.probe

    async def booting(instance, health_check):
        if instance.probes < 2:
            instance.probes += 1
            raise OSError("not listening yet")
        return await original_probe(instance, health_check)

    service.probe = booting
    driver = DeploymentDriver(_settings(grace_period=0.0), clock=clock, sleep=clock.sleep)

    outcome = await driver.deploy(_descriptor(), service)

    assert outcome.state == "Succeeded"
    assert outcome.replaced == 0
    assert service.serving_images == {NEW_IMAGE}


@pytest.mark.asyncio
async def test_unexpected_service_error_stops_new_instances(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE, desired_count=2)
    old_ids = list(service.traffic)
    original_start = service.start_instance
    started = []

    async def start_instance(descriptor):
        if started:
            raise RuntimeError("capacity provider unavailable")
        instance = await original_start(descriptor)
        started.append(instance.instance_id)
        return instance

    service.start_instance = start_instance
    driver = DeploymentDriver(_settings(desired_count=2), clock=clock, sleep=clock.sleep)

    with pytest.raises(RuntimeError):
        await driver.deploy(_descriptor(), service)

    assert set(service.instances) == set(old_ids)
    assert service.traffic == old_ids
    assert started[0] in service.stopped


@pytest.mark.asyncio
async def test_cancelled_rollout_stops_new_instances_and_keeps_old(clock):
    service = InMemoryService(name="app", image_uri=OLD_IMAGE)
    old_ids = list(service.traffic)
    probing = asyncio.Event()

    async def hanging(instance, health_check):
        probing.set()
        await asyncio.sleep(3600)

    service.probe = hanging
    driver = DeploymentDriver(_settings(grace_period=0.0), clock=clock, sleep=clock.sleep)

    task = asyncio.create_task(driver.deploy(_descriptor(), service))
    await asyncio.wait_for(probing.wait(), timeout=5.0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert service.traffic == old_ids
    assert set(service.instances) == set(old_ids)
    assert len(service.stopped) == 1
