from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, List, Literal, Optional

import click
from pydantic import BaseModel, Field

from archpipe.core.config import DeploymentSettings
from archpipe.core.models import DeploymentDescriptor, HealthCheck

from .service import DeployableService, Instance, ServiceError


RolloutState = Literal["Pending", "RollingOut", "Succeeded", "TimedOut", "Failed"]
TERMINAL_ROLLOUT_STATES = ("Succeeded", "TimedOut", "Failed")

_TRANSITIONS = {
    "Pending": ("RollingOut",),
    "RollingOut": TERMINAL_ROLLOUT_STATES,
}


class DeploymentOutcome(BaseModel):
    state: RolloutState
    image_uri: str
    instances: List[str] = Field(default_factory=list)
    replaced: int = 0
    elapsed: float = 0.0
    logs: List[str] = Field(default_factory=list)


class _DeadlineReached(Exception):
    pass


class Rollout:
    """
    Одна раскатка: Pending -> RollingOut -> {Succeeded | TimedOut | Failed}.
    Терминальные состояния не меняются.
    """

    def __init__(self) -> None:
        self.state: RolloutState = "Pending"

    def advance(self, new_state: RolloutState) -> None:
        allowed = _TRANSITIONS.get(self.state, ())
        if new_state not in allowed:
            raise RuntimeError(f"Rollout transition {self.state} -> {new_state} is not allowed")
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ROLLOUT_STATES


class DeploymentDriver:
    """
    Rolling update сервиса на новый образ с проверкой здоровья.

    - новые инстансы не пробуются, пока идёт grace period;
    - трафик переключается только когда каждый новый инстанс набрал
      healthy_threshold успешных проб подряд; после этого гасятся старые;
    - инстанс, набравший unhealthy_threshold неудач подряд, заменяется новым;
    - не сошлось до deployment_timeout -> TimedOut, новые инстансы гасятся,
      старые продолжают обслуживать трафик. Автоматического отката нет.

    clock/sleep подменяются в тестах.
    """

    def __init__(
        self,
        settings: Optional[DeploymentSettings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings or DeploymentSettings()
        self._clock = clock
        self._sleep = sleep

    async def deploy(
        self,
        descriptor: DeploymentDescriptor,
        service: DeployableService,
        timeout: Optional[float] = None,
        health_check: Optional[HealthCheck] = None,
    ) -> DeploymentOutcome:
        timeout = self.settings.deployment_timeout if timeout is None else timeout
        health_check = health_check or self.settings.health_check
        rollout = Rollout()
        logs: List[str] = []
        started: List[Instance] = []
        replaced = [0]
        begin = self._clock()
        deadline = begin + timeout

        def outcome(instances: List[Instance]) -> DeploymentOutcome:
            return DeploymentOutcome(
                state=rollout.state,
                image_uri=descriptor.image_uri,
                instances=[i.instance_id for i in instances],
                replaced=replaced[0],
                elapsed=self._clock() - begin,
                logs=logs,
            )

        old = await service.serving()
        logs.append(
            f"Сервис {service.name}: {len(old)} инстанс(ов) в трафике, "
            f"раскатываем {descriptor.image_uri} (timeout {timeout}s)"
        )
        rollout.advance("RollingOut")

        try:
            healthy = await self._converge(
                descriptor, service, health_check, deadline, started, replaced, logs
            )
        except _DeadlineReached:
            logs.append(f"Раскатка не сошлась за {timeout}s — старые инстансы остаются в трафике")
            await self._stop_all(service, started, logs)
            rollout.advance("TimedOut")
            click.echo(f"Деплой {descriptor.image_uri}: TimedOut", err=True)
            return outcome([])
        except ServiceError as e:
            logs.append(f"Сервис отклонил обновление: {e.description}")
            await self._stop_all(service, started, logs)
            rollout.advance("Failed")
            click.echo(f"Деплой {descriptor.image_uri}: Failed", err=True)
            return outcome([])
        except asyncio.CancelledError:
            await self._stop_all(service, started, logs)
            raise
        except Exception as e:
            logs.append(f"Раскатка прервана ошибкой: {e!r}")
            await self._stop_all(service, started, logs)
            rollout.advance("Failed")
            click.echo(f"Деплой {descriptor.image_uri}: Failed ({e!r})", err=True)
            raise

        await service.shift_traffic(healthy)
        logs.append("Трафик переключён на новые инстансы: " + ", ".join(i.instance_id for i in healthy))
        for inst in old:
            await service.stop_instance(inst)
        logs.append(f"Остановлено старых инстансов: {len(old)}")
        rollout.advance("Succeeded")
        click.echo(f"Деплой {descriptor.image_uri}: Succeeded")
        return outcome(healthy)

    async def _converge(
        self,
        descriptor: DeploymentDescriptor,
        service: DeployableService,
        health_check: HealthCheck,
        deadline: float,
        started: List[Instance],
        replaced: List[int],
        logs: List[str],
    ) -> List[Instance]:
        tasks = [
            asyncio.create_task(
                self._healthy_instance(descriptor, service, health_check, deadline, started, replaced, logs)
            )
            for _ in range(self.settings.desired_count)
        ]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if task.exception() is not None:
                raise task.exception()
        return [task.result() for task in tasks]

    async def _healthy_instance(
        self,
        descriptor: DeploymentDescriptor,
        service: DeployableService,
        health_check: HealthCheck,
        deadline: float,
        started: List[Instance],
        replaced: List[int],
        logs: List[str],
    ) -> Instance:
        while True:
            self._check_deadline(deadline)
            instance = await service.start_instance(descriptor)
            started.append(instance)
            logs.append(f"Запущен инстанс {instance.instance_id}")

            if self.settings.grace_period > 0:
                await self._wait(self.settings.grace_period, deadline)

            successes = failures = 0
            while True:
                status = await self._probe(service, instance, health_check, deadline)
                if health_check.is_healthy_status(status):
                    successes += 1
                    failures = 0
                    if successes >= health_check.healthy_threshold:
                        logs.append(f"Инстанс {instance.instance_id} здоров ({successes} проб подряд)")
                        return instance
                else:
                    failures += 1
                    successes = 0
                    if failures >= health_check.unhealthy_threshold:
                        logs.append(
                            f"Инстанс {instance.instance_id} нездоров "
                            f"({failures} проб подряд, последний статус {status}) — заменяем"
                        )
                        started.remove(instance)
                        await service.stop_instance(instance)
                        replaced[0] += 1
                        break
                await self._wait(health_check.interval, deadline)

    async def _probe(
        self,
        service: DeployableService,
        instance: Instance,
        health_check: HealthCheck,
        deadline: float,
    ) -> Optional[int]:
        remaining = self._check_deadline(deadline)
        try:
            return await asyncio.wait_for(
                service.probe(instance, health_check),
                timeout=min(health_check.timeout, remaining),
            )
        except asyncio.TimeoutError:
            return None
        except Exception:
            # инстанс ещё поднимается (connection refused и т.п.) — проба неудачна
            return None

    def _check_deadline(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise _DeadlineReached()
        return remaining

    async def _wait(self, seconds: float, deadline: float) -> None:
        remaining = self._check_deadline(deadline)
        await self._sleep(min(seconds, remaining))
        self._check_deadline(deadline)

    async def _stop_all(self, service: DeployableService, started: List[Instance], logs: List[str]) -> None:
        for inst in list(started):
            await service.stop_instance(inst)
            logs.append(f"Остановлен новый инстанс {inst.instance_id}")
        started.clear()
