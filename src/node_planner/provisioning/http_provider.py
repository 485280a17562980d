"""
HTTP 算力市场后端。

- POST   /rentals                          租用 (demand + 定价 + 支付网络)
- POST   /rentals/{id}/exec                启动命令
- GET    /rentals/{id}/exec/{exec_id}/stream  JSON lines 输出流, 以 exit 事件结束
- DELETE /rentals/{id}                     停止并结算
"""
from __future__ import annotations
import asyncio
import json
from typing import AsyncIterator

import httpx
import structlog

from node_planner.common.exceptions import ProvisioningError
from node_planner.provisioning.base import (
    ComputeHandle, ComputeProvider, OutputLine, WorkloadSpec, wait_or_cancel,
)

logger = structlog.get_logger()

MS_PER_HOUR = 1000 * 60 * 60


class HttpComputeProvider(ComputeProvider):
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        payment_network: str = "holesky",
        runtime_name: str = "salad",
        image_tag: str = "golem/alpine:latest",
        max_start_price: float = 0.0,
        max_cpu_per_hour_price: float = 1.0,
        max_env_per_hour_price: float = 0.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._payment_network = payment_network
        self._runtime_name = runtime_name
        self._image_tag = image_tag
        self._pricing = {
            "model": "linear",
            "maxStartPrice": max_start_price,
            "maxCpuPerHourPrice": max_cpu_per_hour_price,
            "maxEnvPerHourPrice": max_env_per_hour_price,
        }
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
                transport=self._transport,
            )
            logger.info("provider_connected", provider=self.provider, url=self._base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("provider_disconnected", provider=self.provider)

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            raise ProvisioningError("Provider not connected")
        return self._client

    def build_demand(self, compute_class: str, budget_ms: int) -> dict:
        return {
            "demand": {
                "workload": {
                    "runtime": {"name": self._runtime_name},
                    "imageTag": self._image_tag,
                    "computeClass": compute_class,
                },
            },
            "market": {
                "rentHours": budget_ms / MS_PER_HOUR,
                "pricing": self._pricing,
            },
            "payment": {"network": self._payment_network},
        }

    async def acquire(
        self,
        compute_class: str,
        budget_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> ComputeHandle:
        payload = self.build_demand(compute_class, budget_ms)
        try:
            resp = await wait_or_cancel(self._http.post("/rentals", json=payload), cancel)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Rental request failed: {e}") from e

        rental_id = str(resp.json().get("id", ""))
        if not rental_id:
            raise ProvisioningError("Rental response missing id")
        logger.info("rental_acquired", rental_id=rental_id, compute_class=compute_class,
                    rent_hours=round(budget_ms / MS_PER_HOUR, 4))
        return ComputeHandle(rental_id=rental_id, compute_class=compute_class,
                             provider=self.provider)

    async def run(
        self,
        handle: ComputeHandle,
        workload: WorkloadSpec,
        budget_ms: int,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[OutputLine]:
        base = f"/rentals/{handle.rental_id}/exec"
        try:
            resp = await wait_or_cancel(
                self._http.post(base, json={"command": workload.command, "args": workload.args}),
                cancel,
            )
            resp.raise_for_status()
            exec_id = str(resp.json().get("id", ""))
            if not exec_id:
                raise ProvisioningError("Exec response missing id")

            # 流式读取不设读超时, 总时长由调用方按 budget 控制
            async with self._http.stream(
                "GET", f"{base}/{exec_id}/stream",
                timeout=httpx.Timeout(self._timeout, read=None),
            ) as stream:
                stream.raise_for_status()
                lines = stream.aiter_lines()
                while True:
                    try:
                        raw = await wait_or_cancel(lines.__anext__(), cancel)
                    except StopAsyncIteration:
                        break
                    if not raw.strip():
                        continue
                    event = self._parse_line(raw)
                    if event.get("event") == "exit":
                        code = event.get("code", 0)
                        if code != 0:
                            raise ProvisioningError(f"Remote process exited with code {code}")
                        return
                    yield OutputLine(stream=event.get("stream", "stdout"),
                                     data=str(event.get("data", "")))
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Remote execution failed: {e}") from e

    async def release(self, handle: ComputeHandle) -> None:
        try:
            resp = await self._http.delete(f"/rentals/{handle.rental_id}")
            if resp.status_code != 404:
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ProvisioningError(f"Rental release failed: {e}") from e
        logger.info("rental_released", rental_id=handle.rental_id)

    @staticmethod
    def _parse_line(raw: str) -> dict:
        try:
            event = json.loads(raw)
        except json.JSONDecodeError:
            return {"stream": "stdout", "data": raw}
        return event if isinstance(event, dict) else {"stream": "stdout", "data": raw}

    @property
    def provider(self) -> str:
        return "http"
