import asyncio
import logging
import threading
from enum import Enum
from typing import Callable, Optional

from chat_sync.config import REGISTRATION_DEADLINE_SECONDS, SYNC_INTERVAL_SECONDS
from chat_sync.errors import ChatSyncError, LocalStorageError, RegistrationCancelledError
from chat_sync.processor import RequestProcessor
from chat_sync.requests import (
    ErrorResponse,
    PostMessageRequest,
    PostMessageResponse,
    RegisterRequest,
    RegisterResponse,
    SynchronizeRequest,
)

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    STOPPED = "stopped"


class ChatScheduler:
    """
    Drives a RequestProcessor on behalf of the host application.

    Handles:
    - Periodic sync at a fixed interval (no backoff)
    - One-shot registration with a hard deadline, cancellable
    - One-shot message posting
    """

    def __init__(
        self,
        processor: RequestProcessor,
        interval_seconds: float = SYNC_INTERVAL_SECONDS,
        registration_deadline: float = REGISTRATION_DEADLINE_SECONDS,
        on_status_change: Optional[Callable[[SyncStatus], None]] = None
    ):
        self.processor = processor
        self.interval = interval_seconds
        self.registration_deadline = registration_deadline
        self.on_status_change = on_status_change
        self.last_error: Optional[str] = None

        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._status = SyncStatus.IDLE
        self._registration: Optional[tuple[asyncio.AbstractEventLoop, asyncio.Task]] = None
        self._registration_cancelled = False

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # One-shot entry points
    # ------------------------------------------------------------------

    async def run_sync_once(self) -> bool:
        """
        Perform a single sync session.

        Returns:
            True on success (or when there is nothing to do yet)

        Raises:
            LocalStorageError: If the local store fails
        """
        self._set_status(SyncStatus.SYNCING)
        try:
            response = await self.processor.process(SynchronizeRequest())
        except LocalStorageError as e:
            self.last_error = str(e)
            self._set_status(SyncStatus.ERROR)
            raise

        if isinstance(response, ErrorResponse):
            logger.warning(f"Sync failed: {response.error_message}")
            self.last_error = response.error_message
            self._set_status(SyncStatus.ERROR)
            return False

        self.last_error = None
        self._set_status(SyncStatus.IDLE)
        return True

    async def run_registration(self, server_uri: str, chat_name: str) -> RegisterResponse:
        """
        Register this device.

        Raises:
            RegistrationCancelledError: On cancel_registration() or when
                the deadline passes
            ValidationError, NetworkError, ServerError: From the processor
        """
        task = asyncio.ensure_future(
            self.processor.process(RegisterRequest(server_uri, chat_name))
        )
        self._registration_cancelled = False
        self._registration = (asyncio.get_running_loop(), task)
        try:
            return await asyncio.wait_for(task, self.registration_deadline)
        except asyncio.TimeoutError as e:
            logger.error(f"Registration exceeded {self.registration_deadline}s deadline")
            raise RegistrationCancelledError(
                f"deadline of {self.registration_deadline}s exceeded"
            ) from e
        except asyncio.CancelledError:
            if not self._registration_cancelled:
                raise
            logger.info("Registration cancelled")
            raise RegistrationCancelledError("cancelled by caller") from None
        finally:
            self._registration = None

    def cancel_registration(self) -> bool:
        """
        Cancel a running registration. Safe to call from any thread.

        Returns:
            True if a registration was running
        """
        registration = self._registration
        if registration is None:
            return False
        loop, task = registration
        self._registration_cancelled = True
        loop.call_soon_threadsafe(task.cancel)
        return True

    async def run_post_message(self, chatroom: str, text: str) -> PostMessageResponse:
        """Queue a message; delivery happens on the next sync."""
        return await self.processor.process(PostMessageRequest(chatroom, text))

    # ------------------------------------------------------------------
    # Periodic loop
    # ------------------------------------------------------------------

    def start(self, in_background: bool = True):
        """Start the periodic sync loop."""
        if self._running:
            return

        self._running = True

        if in_background:
            self._thread = threading.Thread(target=self._run_thread, daemon=True)
            self._thread.start()
        else:
            # Run in current thread (blocking)
            asyncio.run(self._run_loop())

    def stop(self):
        """Stop the periodic sync loop."""
        self._running = False
        if self._loop and self._stop_event:
            # Thread-safe way to stop
            try:
                self._loop.call_soon_threadsafe(self._stop_event.set)
            except RuntimeError:
                # Loop already closed
                pass
        if self._thread:
            self._thread.join(timeout=5.0)
            self._thread = None

    def _run_thread(self):
        """Entry point for background thread."""
        asyncio.run(self._run_loop())

    async def _run_loop(self):
        """Main async loop."""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        logger.info(f"ChatScheduler started (interval={self.interval}s)")

        storage_failed = False
        while self._running:
            try:
                await self.run_sync_once()
            except LocalStorageError as e:
                logger.error(f"Local store failed, stopping sync loop: {e}")
                storage_failed = True
                break
            except ChatSyncError as e:
                logger.error(f"Sync cycle failed: {e}")
                self.last_error = str(e)
                self._set_status(SyncStatus.ERROR)

            # Wait for interval or stop event
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                if self._stop_event.is_set():
                    break
            except asyncio.TimeoutError:
                continue

        logger.info("ChatScheduler stopped")
        self._running = False
        if not storage_failed:
            self._set_status(SyncStatus.STOPPED)

    def _set_status(self, status: SyncStatus):
        if self._status != status:
            self._status = status
            if self.on_status_change:
                self.on_status_change(status)
