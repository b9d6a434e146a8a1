"""Runtime settings for the local store and the sync pipeline."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .connectivity import ConnectivityOracle
from .gateway import HttpSyncGateway, InMemoryGateway, RemoteSyncGateway
from .snapshot_store import FileBackend, LocalSnapshotStore
from .sync_queue import OfflineOperationQueue

logger = logging.getLogger(__name__)

ENV_PREFIX = "COURTSIDE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{ENV_PREFIX}{name} must be a boolean, got {raw!r}")


@dataclass(frozen=True)
class SyncSettings:
    storage_dir: Path = Path(".courtside")
    drain_interval_s: float = 30.0
    max_unclassified_attempts: int = 5
    remote_url: Optional[str] = None
    api_key: Optional[str] = None
    request_timeout_s: float = 10.0
    auto_technical_timeout: bool = True

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncSettings":
        """Read COURTSIDE_* variables; unset ones keep their defaults.

        Raises:
            ValueError: if a variable is set to something unparsable
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            raw = env.get(f"{ENV_PREFIX}{name}")
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        kwargs = {}
        storage_dir = get("STORAGE_DIR")
        if storage_dir is not None:
            kwargs["storage_dir"] = Path(storage_dir).expanduser()
        for name, field in (("REMOTE_URL", "remote_url"), ("API_KEY", "api_key")):
            raw = get(name)
            if raw is not None:
                kwargs[field] = raw
        auto_tto = get("AUTO_TECHNICAL_TIMEOUT")
        if auto_tto is not None:
            kwargs["auto_technical_timeout"] = _parse_bool("AUTO_TECHNICAL_TIMEOUT", auto_tto)
        for name, field, cast in (
            ("DRAIN_INTERVAL_S", "drain_interval_s", float),
            ("MAX_UNCLASSIFIED_ATTEMPTS", "max_unclassified_attempts", int),
            ("REQUEST_TIMEOUT_S", "request_timeout_s", float),
        ):
            raw = get(name)
            if raw is None:
                continue
            try:
                value = cast(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}")
            if value <= 0:
                raise ValueError(f"{ENV_PREFIX}{name} must be positive")
            kwargs[field] = value
        return cls(**kwargs)

    def build_gateway(self) -> RemoteSyncGateway:
        if not self.remote_url:
            logger.warning("No remote URL configured, syncing to process memory only")
            return InMemoryGateway()
        return HttpSyncGateway(self.remote_url, self.api_key, timeout_s=self.request_timeout_s)


def build_sync_stack(
    settings: SyncSettings,
    *,
    gateway: Optional[RemoteSyncGateway] = None,
    oracle: Optional[ConnectivityOracle] = None,
) -> Tuple[LocalSnapshotStore, OfflineOperationQueue]:
    """Snapshot store and offline queue sharing one file backend under storage_dir."""
    backend = FileBackend(settings.storage_dir)
    store = LocalSnapshotStore(backend)
    queue = OfflineOperationQueue(
        backend,
        gateway or settings.build_gateway(),
        oracle or ConnectivityOracle(),
        drain_interval_s=settings.drain_interval_s,
        max_unclassified_attempts=settings.max_unclassified_attempts,
    )
    return store, queue
