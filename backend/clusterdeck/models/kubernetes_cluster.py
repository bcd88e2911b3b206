from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from clusterdeck.db import Base


class KubernetesCluster(Base):
    """A registered remote cluster.

    The connection profile lives in the secret vault under the same id as the
    row, so ``id`` doubles as the connection secret reference.
    """

    __tablename__ = "kubernetes_clusters"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    namespace: Mapped[str] = mapped_column(String(128), nullable=False)
    uid: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    @property
    def connection_secret_ref(self) -> str:
        return self.id
