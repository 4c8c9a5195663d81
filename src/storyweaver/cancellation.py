"""Single-channel cancellation.

Only one operation is live at a time. Starting a new one invalidates the
previous token; ``stop`` invalidates the live token without issuing another.
Tokens are compared by generation number, so checking for cancellation is an
ordinary boolean test made before applying any result.
"""

import logging
import threading

from .errors import UserCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Handle given to one long-running operation."""

    def __init__(self, controller: "CancellationController", generation: int) -> None:
        self._controller = controller
        self.generation = generation

    @property
    def cancelled(self) -> bool:
        return not self._controller.is_live(self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise UserCancelled()

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "live"
        return f"<CancellationToken #{self.generation} {state}>"


class CancellationController:
    """Owns at most one live cancellation token."""

    def __init__(self) -> None:
        self._generation = 0
        self._live: int | None = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._live is not None

    def start_operation(self) -> CancellationToken:
        """Invalidate whatever was running and issue a fresh token."""
        with self._lock:
            if self._live is not None:
                logger.debug("Superseding operation #%d", self._live)
            self._generation += 1
            self._live = self._generation
            return CancellationToken(self, self._generation)

    def stop(self) -> bool:
        """Invalidate the live token. Returns False if nothing was running."""
        with self._lock:
            if self._live is None:
                return False
            logger.info("Stopping operation #%d", self._live)
            self._live = None
            return True

    def finish(self, token: CancellationToken) -> None:
        """Release the channel if ``token`` still owns it."""
        with self._lock:
            if self._live == token.generation:
                self._live = None

    def is_live(self, token: CancellationToken) -> bool:
        return self._live is not None and self._live == token.generation
