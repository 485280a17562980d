"""
异常体系。
每个异常携带 code + severity。
"""
from __future__ import annotations


class NodePlannerError(Exception):
    """基类异常。"""
    code: str = "UNKNOWN_ERROR"
    severity: str = "error"

    def __init__(self, message: str = "", code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error_code": self.code, "message": self.message, "severity": self.severity}


# === 配置 ===
class DurationFormatError(NodePlannerError, ValueError):
    code = "DURATION_FORMAT"


# === 导入 ===
class IngestionError(NodePlannerError):
    code = "BATCH_MALFORMED"

class PlanPersistenceError(NodePlannerError):
    code = "PLAN_PERSISTENCE"


# === 远程算力 ===
class ProvisioningError(NodePlannerError):
    code = "PROVISIONING_FAILED"

class ProvisioningTimeoutError(ProvisioningError):
    code = "PROVISIONING_TIMEOUT"

class ProvisioningCancelledError(ProvisioningError):
    code = "PROVISIONING_CANCELLED"; severity = "warning"


# === 生命周期 ===
class StoreCloseError(NodePlannerError):
    code = "STORE_CLOSE_FAILED"; severity = "critical"
