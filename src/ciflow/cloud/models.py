from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Run(Base):
    __tablename__ = "runs"
    id: Mapped[str] = mapped_column(sa.String(32), primary_key=True)
    workflow: Mapped[str] = mapped_column(sa.Text, nullable=False)
    group_key: Mapped[str] = mapped_column(sa.Text, nullable=False, index=True)
    trigger: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    ref: Mapped[str] = mapped_column(sa.Text, nullable=False)
    sha: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    exit_code: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime(timezone=True), nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(sa.DateTime(timezone=True), nullable=True)

    jobs: Mapped[list["Job"]] = relationship(back_populates="run", cascade="all, delete-orphan", order_by="Job.position")


class Job(Base):
    __tablename__ = "jobs"
    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(sa.String(32), sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    job_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    instance_id: Mapped[str] = mapped_column(sa.Text, nullable=False)
    status: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    result_json: Mapped[dict] = mapped_column(sa.JSON, nullable=False, default=dict)

    run: Mapped[Run] = relationship(back_populates="jobs")
