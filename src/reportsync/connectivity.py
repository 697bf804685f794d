"""Connectivity signals consumed by the sync scheduler."""

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], None]


@runtime_checkable
class ConnectivitySignal(Protocol):
    """Online/offline provider with change notifications."""

    def is_online(self) -> bool:
        ...

    def on_change(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Register ``callback`` and return a function that unregisters it."""
        ...


class ManualConnectivity:
    """Connectivity flag set explicitly by the host application."""

    def __init__(self, online: bool = False) -> None:
        self._online = online
        self._callbacks: List[ConnectivityCallback] = []
        self._lock = threading.Lock()

    def is_online(self) -> bool:
        return self._online

    def on_change(self, callback: ConnectivityCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Update the flag and notify subscribers if it changed."""
        with self._lock:
            if online == self._online:
                return
            self._online = online
            callbacks = list(self._callbacks)

        logger.info("Connectivity changed", extra={"online": online})
        for callback in callbacks:
            try:
                callback(online)
            except Exception:  # noqa: BLE001
                logger.error("Connectivity callback failed", exc_info=True)


class HttpProbeConnectivity(ManualConnectivity):
    """Derives connectivity from a lightweight HTTP probe.

    Any response below 500 from ``probe_url`` counts as online; network
    errors and timeouts count as offline. Call :meth:`refresh`
    periodically (the scheduler does this on every timer tick).
    """

    def __init__(
        self,
        probe_url: str,
        *,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        online: bool = False,
    ) -> None:
        super().__init__(online=online)
        self.probe_url = probe_url
        self.timeout = timeout_seconds
        self._client = client

    async def refresh(self) -> bool:
        try:
            if self._client is not None:
                response = await self._client.get(self.probe_url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.probe_url)
            online = response.status_code < 500
        except httpx.HTTPError as exc:
            logger.debug(
                "Connectivity probe failed",
                extra={"probe_url": self.probe_url, "error": str(exc)},
            )
            online = False

        self.set_online(online)
        return online


__all__ = [
    "ConnectivityCallback",
    "ConnectivitySignal",
    "HttpProbeConnectivity",
    "ManualConnectivity",
]
