from __future__ import annotations

from typing import Any, Generic, Iterable, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clusterdeck.core.errors import ConflictError, NotFoundError
from clusterdeck.db import Base
from clusterdeck.models.credential_resource import CredentialResource
from clusterdeck.models.kubernetes_cluster import KubernetesCluster

ModelT = TypeVar("ModelT", bound=Base)


def snapshot(record: Base) -> dict[str, Any]:
    """Column values of ``record``; enough to put the row back exactly."""
    mapper = inspect(record.__class__)
    values: dict[str, Any] = {}
    for attr in mapper.column_attrs:
        value = getattr(record, attr.key)
        values[attr.key] = dict(value) if isinstance(value, dict) else value
    return values


class _SqlStore(Generic[ModelT]):
    model: type[ModelT]
    label: str

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create(self, record: ModelT) -> ModelT:
        async with self._session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConflictError(
                    f"{self.label} '{getattr(record, 'name', record)}' already exists"
                ) from exc
            await session.refresh(record)
            return record

    async def restore(self, values: Mapping[str, Any]) -> ModelT:
        return await self.create(self.model(**dict(values)))

    async def get(self, record_id: str) -> ModelT:
        async with self._session_factory() as session:
            record = await session.get(self.model, record_id)
            if record is None:
                raise NotFoundError(f"{self.label} '{record_id}' not found")
            return record

    async def get_by_name(self, name: str) -> Optional[ModelT]:
        async with self._session_factory() as session:
            result = await session.execute(select(self.model).where(self.model.name == name))  # type: ignore[attr-defined]
            return result.scalar_one_or_none()

    async def list(self) -> list[ModelT]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(self.model).order_by(self.model.created_at.asc())  # type: ignore[attr-defined]
            )
            rows: Sequence[ModelT] = result.scalars().all()
            return list(rows)

    async def update(self, record_id: str, values: Mapping[str, Any]) -> ModelT:
        async with self._session_factory() as session:
            record = await session.get(self.model, record_id)
            if record is None:
                raise NotFoundError(f"{self.label} '{record_id}' not found")
            for key, value in values.items():
                setattr(record, key, value)
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as exc:
                raise ConflictError(f"{self.label} '{record_id}' conflicts with an existing record") from exc
            await session.refresh(record)
            return record

    async def delete(self, record_id: str) -> None:
        async with self._session_factory() as session:
            record = await session.get(self.model, record_id)
            if record is None:
                raise NotFoundError(f"{self.label} '{record_id}' not found")
            await session.delete(record)
            await session.commit()


class KubernetesClusterStore(_SqlStore[KubernetesCluster]):
    model = KubernetesCluster
    label = "Kubernetes cluster"


class CredentialResourceStore(_SqlStore[CredentialResource]):
    model = CredentialResource
    label = "Credential resource"

    async def list_kinds(self, kinds: Iterable[str]) -> list[CredentialResource]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CredentialResource)
                .where(CredentialResource.kind.in_(list(kinds)))
                .order_by(CredentialResource.created_at.asc())
            )
            return list(result.scalars().all())
