"""
分配窗口批次来源 (暂存目录)。

incoming/*.csv → 导入成功 move 到 imported/, 失败 move 到 failed/。
move 为原子状态迁移, 每个批次只处理一次, 不自动重试。
"""
from __future__ import annotations
import csv
import io
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from node_planner.common.exceptions import IngestionError
import structlog

logger = structlog.get_logger()

# 上游导出文件列名
CSV_KEYS = {
    "node_id": "key.1",
    "start_at": "value.0",
    "stop_at": "value.1",
    "invoice_amount": "value.2",
    "compute_class": "value.5",
}


class AllocationRecord(BaseModel):
    """单条分配窗口 (时间戳为 epoch 毫秒)。"""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    node_id: str = Field(alias=CSV_KEYS["node_id"], min_length=1)
    start_at: int = Field(alias=CSV_KEYS["start_at"])
    stop_at: int = Field(alias=CSV_KEYS["stop_at"])
    invoice_amount: float = Field(alias=CSV_KEYS["invoice_amount"], ge=0)
    compute_class: str = Field(alias=CSV_KEYS["compute_class"], default="")

    @field_validator("start_at", "stop_at", mode="before")
    @classmethod
    def _epoch_ms(cls, value):
        # 导出工具偶尔写成 "1729814400000.0"
        if isinstance(value, str) and "." in value:
            return int(float(value))
        return value

    @model_validator(mode="after")
    def _check_window(self) -> "AllocationRecord":
        if self.stop_at < self.start_at:
            raise ValueError("stop_at must not precede start_at")
        return self

    @property
    def window_ms(self) -> int:
        return self.stop_at - self.start_at


@dataclass(frozen=True)
class Batch:
    path: Path

    @property
    def name(self) -> str:
        return self.path.name


class FileBatchSource:
    def __init__(self, incoming_dir: str, imported_dir: str, failed_dir: str) -> None:
        self._incoming = Path(incoming_dir)
        self._imported = Path(imported_dir)
        self._failed = Path(failed_dir)
        for d in (self._incoming, self._imported, self._failed):
            d.mkdir(parents=True, exist_ok=True)

    def pending(self) -> list[Batch]:
        return [Batch(p) for p in sorted(self._incoming.glob("*.csv")) if p.is_file()]

    async def read(self, batch: Batch) -> list[AllocationRecord]:
        """解析整个批次; 任意一行不合法 → IngestionError (整批失败)。"""
        try:
            async with aiofiles.open(batch.path, "r", encoding="utf-8", newline="") as f:
                content = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise IngestionError(f"Cannot read batch {batch.name}: {e}") from e

        reader = csv.DictReader(io.StringIO(content))
        missing = [k for k in CSV_KEYS.values() if k not in (reader.fieldnames or [])]
        if missing:
            raise IngestionError(f"Batch {batch.name} missing columns: {', '.join(missing)}")

        records: list[AllocationRecord] = []
        try:
            for line_no, row in enumerate(reader, start=2):
                records.append(AllocationRecord.model_validate(row))
        except ValidationError as e:
            raise IngestionError(
                f"Batch {batch.name} line {line_no}: {e.errors()[0]['msg']}") from e
        except csv.Error as e:
            raise IngestionError(f"Batch {batch.name}: {e}") from e
        return records

    def mark_imported(self, batch: Batch) -> Path:
        return self._move(batch, self._imported)

    def mark_failed(self, batch: Batch) -> Path:
        return self._move(batch, self._failed)

    @staticmethod
    def _move(batch: Batch, target_dir: Path) -> Path:
        target = target_dir / batch.name
        if target.exists():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
            target = target_dir / f"{batch.path.stem}.{stamp}{batch.path.suffix}"
        # 同一文件系统内 rename 为原子操作
        shutil.move(str(batch.path), str(target))
        logger.debug("batch_moved", batch=batch.name, target=str(target))
        return target
