"""Device reconciler: write a segment, then prove it landed.

A write acknowledgement is not proof of applied state. After every
successful write the device is read back and compared with the intended
state; only a matching read-back counts as success. Failed writes and
failed verifications are retried under a bounded backoff policy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from charge_pilot.config.schema import ReconcilerConfig
from charge_pilot.errors import DeviceWriteFailed, VerificationFailed
from charge_pilot.hardware.base import DeviceClient, DeviceSegment
from charge_pilot.retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of an apply or clear, after retries."""

    operation: str  # "apply" or "clear"
    success: bool
    attempts: int
    latency_ms: int
    message: str = ""
    observed: DeviceSegment | None = None

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "success": self.success,
            "attempts": self.attempts,
            "latency_ms": self.latency_ms,
            "message": self.message,
            "observed": self.observed.to_dict() if self.observed else None,
        }


class DeviceReconciler:
    """Applies and clears the automation segment with verified read-back."""

    def __init__(
        self,
        device: DeviceClient,
        policy: RetryPolicy,
        verify_delay_seconds: float = 2.0,
        verify_timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._device = device
        self._policy = policy
        self._verify_delay = verify_delay_seconds
        self._verify_timeout = verify_timeout_seconds
        self._sleep = sleep

    @classmethod
    def from_config(
        cls, device: DeviceClient, config: ReconcilerConfig, policy: RetryPolicy,
    ) -> DeviceReconciler:
        return cls(
            device,
            policy,
            verify_delay_seconds=config.verify_delay_seconds,
            verify_timeout_seconds=config.verify_timeout_seconds,
        )

    async def apply_segment(self, device_id: str, segment: DeviceSegment) -> ReconcileResult:
        return await self._reconcile("apply", device_id, segment)

    async def clear_segment(self, device_id: str) -> ReconcileResult:
        return await self._reconcile("clear", device_id, None)

    async def read_segment(self, device_id: str) -> DeviceSegment | None:
        """Read the device's current automation segment.

        Raises ``VerificationFailed`` if the device cannot be read in time.
        """
        try:
            return await asyncio.wait_for(
                self._device.read_current_segment(device_id),
                timeout=self._verify_timeout,
            )
        except asyncio.TimeoutError as e:
            raise VerificationFailed(
                f"read-back timed out after {self._verify_timeout:.0f}s"
            ) from e
        except VerificationFailed:
            raise
        except Exception as e:
            raise VerificationFailed(f"read-back failed: {e}") from e

    async def _reconcile(
        self, operation: str, device_id: str, intended: DeviceSegment | None,
    ) -> ReconcileResult:
        start = time.monotonic()
        attempts = 0

        async def attempt() -> DeviceSegment | None:
            nonlocal attempts
            attempts += 1
            await self._write(device_id, intended)
            if self._verify_delay > 0:
                await self._sleep(self._verify_delay)
            observed = await self.read_segment(device_id)
            if not _is_verified(intended, observed):
                raise VerificationFailed(
                    f"device shows {_describe(observed)}, expected {_describe(intended)}"
                )
            return observed

        try:
            observed = await retry_async(
                attempt,
                self._policy,
                retry_on=(DeviceWriteFailed, VerificationFailed),
                description=f"{operation} segment on {device_id}",
                sleep=self._sleep,
            )
        except (DeviceWriteFailed, VerificationFailed) as e:
            latency = int((time.monotonic() - start) * 1000)
            logger.error(
                "Device %s %s failed after %d attempt(s): %s",
                device_id, operation, attempts, e,
            )
            return ReconcileResult(
                operation=operation,
                success=False,
                attempts=attempts,
                latency_ms=latency,
                message=str(e),
            )

        latency = int((time.monotonic() - start) * 1000)
        logger.info(
            "Device %s %s verified (attempts=%d, latency=%dms)",
            device_id, operation, attempts, latency,
        )
        return ReconcileResult(
            operation=operation,
            success=True,
            attempts=attempts,
            latency_ms=latency,
            observed=observed,
        )

    async def _write(self, device_id: str, segment: DeviceSegment | None) -> None:
        try:
            result = await self._device.write_segment(device_id, segment)
        except DeviceWriteFailed:
            raise
        except Exception as e:
            raise DeviceWriteFailed(f"write raised: {e}") from e
        if not result.success:
            raise DeviceWriteFailed(result.message or "device rejected the write")


def _is_verified(intended: DeviceSegment | None, observed: DeviceSegment | None) -> bool:
    if intended is None:
        return observed is None or not observed.enabled
    return intended.matches(observed)


def _describe(segment: DeviceSegment | None) -> str:
    if segment is None or not segment.enabled:
        return "no segment"
    return (
        f"{segment.work_mode.value} {segment.start_time.strftime('%H:%M')}Z"
        f"+{segment.duration_minutes}m {segment.target_power_w}W"
    )
