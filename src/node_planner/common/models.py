"""
SQLAlchemy ORM 模型 (3 张表)。

时间戳为 epoch 毫秒 (BigInteger), 时长为毫秒。
"""
from __future__ import annotations
from datetime import datetime

from sqlalchemy import (
    BigInteger, CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, Text,
    UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class NodePlan(Base):
    """一个节点的一段预留窗口。"""
    __tablename__ = "node_plan"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    node_id: Mapped[str] = mapped_column(Text, nullable=False)
    source_file: Mapped[str] = mapped_column(Text, nullable=False)
    start_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    stop_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    invoice_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    compute_class: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    jobs: Mapped[list[PlanJob]] = relationship(
        back_populates="plan", lazy="noload", order_by="PlanJob.order_index")

    __table_args__ = (
        CheckConstraint("stop_at >= start_at", name="ck_node_plan_window"),
        Index("idx_node_plan_status", "status"),
        Index("idx_node_plan_node", "node_id"),
        Index("idx_node_plan_source", "source_file"),
    )


class PlanJob(Base):
    """计划窗口中的一个有界切片, 按 order_index 顺序执行。"""
    __tablename__ = "node_plan_job"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("node_plan.id"), nullable=False)
    node_id: Mapped[str] = mapped_column(Text, nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    duration_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    invoice_amount: Mapped[float] = mapped_column(Float, nullable=False)

    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)

    plan: Mapped[NodePlan] = relationship(back_populates="jobs")

    __table_args__ = (
        UniqueConstraint("plan_id", "order_index", name="uq_node_plan_job_order"),
        CheckConstraint("duration_ms > 0", name="ck_node_plan_job_duration"),
        Index("idx_node_plan_job_window", "start_at", "duration_ms"),
    )


class StateTransition(Base):
    """状态变更审计。"""
    __tablename__ = "state_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)  # plan | job
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    from_status: Mapped[str | None] = mapped_column(Text)
    to_status: Mapped[str] = mapped_column(Text, nullable=False)
    trigger: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_transitions_entity", "entity_type", "entity_id"),
    )
