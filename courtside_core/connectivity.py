"""Online/offline detection and failure classification for remote calls."""
from __future__ import annotations

import logging
import re
from typing import Callable, List, Literal, Optional

import httpx

from .gateway import GatewayError

logger = logging.getLogger(__name__)

ErrorClass = Literal["connectivity", "application", "unknown"]

NETWORK_ERROR_MARKERS = re.compile(
    r"failed to fetch|network error|network request failed|network|offline|fetch"
    r"|timeout|timed out|connection",
    re.IGNORECASE,
)


def looks_like_network_failure(message: str) -> bool:
    """True when the text names a network problem.

    Matches broadly: any message containing "connection", "fetch" or
    "timeout", a server-side one included, counts as connectivity and is
    retried. classify_error only consults it for exceptions without a
    structured GatewayError kind.
    """
    return bool(message) and NETWORK_ERROR_MARKERS.search(message) is not None


class ConnectivityOracle:
    """
    Answers "are we online" from the best signal available.

    The link signal comes from `link_probe` when given (e.g. an OS network
    status check), otherwise from the last value passed to set_link_state().
    Listeners fire on every offline -> online transition.
    """

    def __init__(
        self,
        link_probe: Optional[Callable[[], bool]] = None,
        *,
        online: bool = True,
    ) -> None:
        self._link_probe = link_probe
        self._online = bool(online)
        self._listeners: List[Callable[[], None]] = []

    def is_online(self) -> bool:
        if self._link_probe is None:
            return self._online
        try:
            return bool(self._link_probe())
        except Exception as e:
            logger.warning(f"Link probe failed, using last known state: {e}")
            return self._online

    def set_link_state(self, online: bool) -> None:
        was_online = self._online
        self._online = bool(online)
        if self._online and not was_online:
            logger.info("Connectivity regained")
            self._notify()
        elif was_online and not self._online:
            logger.info("Connectivity lost")

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register an online-transition callback; returns an unsubscribe function."""
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback()
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    def classify_error(self, error: BaseException) -> ErrorClass:
        """Decide whether a failed remote call is worth retrying later.

        Order: current link reading, structured gateway kind, transport
        exceptions, then the error text. Errors matching none of these are
        'unknown' and the caller decides how long to keep retrying them.
        """
        if not self.is_online():
            return "connectivity"
        if isinstance(error, GatewayError):
            return "connectivity" if error.is_connectivity else "application"
        if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
            return "connectivity"
        if looks_like_network_failure(str(error)):
            return "connectivity"
        return "unknown"
