from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Set

from archpipe.core.models import DeploymentDescriptor, HealthCheck
from archpipe.exception import PipelineException


class ServiceError(PipelineException):
    """Сервис отклонил операцию (нет прав, неверный образ, нет ёмкости)."""

    kind = "ServiceError"


@dataclass
class Instance:
    instance_id: str
    image_uri: str
    container_name: str
    probes: int = 0


class DeployableService(Protocol):
    """
    Контракт сервиса, в который раскатываем образ.
    Старые инстансы обслуживают трафик, пока не вызван shift_traffic.
    """

    name: str

    async def serving(self) -> List[Instance]: ...

    async def start_instance(self, descriptor: DeploymentDescriptor) -> Instance: ...

    async def probe(self, instance: Instance, health_check: HealthCheck) -> Optional[int]: ...

    async def shift_traffic(self, instances: List[Instance]) -> None: ...

    async def stop_instance(self, instance: Instance) -> None: ...


# (image_uri, номер пробы инстанса) -> HTTP-статус или None (нет ответа)
HealthPolicy = Callable[[str, int], Optional[int]]


def always(status: Optional[int]) -> HealthPolicy:
    return lambda image_uri, attempt: status


@dataclass
class InMemoryService:
    """
    Флот инстансов в памяти: локальные прогоны и тесты.
    health — политика ответов на health-пробу для новых инстансов.
    """

    name: str
    image_uri: Optional[str] = None
    desired_count: int = 1
    health: HealthPolicy = field(default=always(200))
    rejected_images: Set[str] = field(default_factory=set)
    instances: Dict[str, Instance] = field(default_factory=dict)
    traffic: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._ids = itertools.count(1)
        if self.image_uri:
            for _ in range(self.desired_count):
                inst = self._new(self.image_uri, self.name)
                self.traffic.append(inst.instance_id)

    def _new(self, image_uri: str, container_name: str) -> Instance:
        inst = Instance(
            instance_id=f"{self.name}-{next(self._ids)}",
            image_uri=image_uri,
            container_name=container_name,
        )
        self.instances[inst.instance_id] = inst
        return inst

    @property
    def serving_images(self) -> Set[str]:
        return {self.instances[i].image_uri for i in self.traffic}

    async def serving(self) -> List[Instance]:
        return [self.instances[i] for i in self.traffic]

    async def start_instance(self, descriptor: DeploymentDescriptor) -> Instance:
        if descriptor.image_uri in self.rejected_images:
            raise ServiceError(
                description=f"Service {self.name} rejected image {descriptor.image_uri}",
                reason="image_rejected",
            )
        return self._new(descriptor.image_uri, descriptor.container_name)

    async def probe(self, instance: Instance, health_check: HealthCheck) -> Optional[int]:
        instance.probes += 1
        return self.health(instance.image_uri, instance.probes)

    async def shift_traffic(self, instances: List[Instance]) -> None:
        self.traffic = [inst.instance_id for inst in instances]
        self.image_uri = instances[0].image_uri if instances else self.image_uri

    async def stop_instance(self, instance: Instance) -> None:
        if instance.instance_id in self.traffic:
            self.traffic.remove(instance.instance_id)
        self.instances.pop(instance.instance_id, None)
        self.stopped.append(instance.instance_id)
