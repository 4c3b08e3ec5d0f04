from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from shared.contracts.enums import ModalAction
from shared.contracts.models import ModalRequest, ModalState


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0

ModalCallback = Callable[[ModalAction], Awaitable[None]]
ModalListener = Callable[[ModalState], None]


class ModalController:
    """Owns the in-app confirmation modal.

    At most one modal is visible. ``show`` cancels the previous timeout
    before installing the new callback, and a timeout only fires for the
    request it was started for, so a stale timer can never act on another
    medication.
    """

    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds
        self.state = ModalState()
        self._callback: ModalCallback | None = None
        self._timer: asyncio.Task[None] | None = None
        self._listeners: list[ModalListener] = []

    def subscribe(self, listener: ModalListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def show(self, request: ModalRequest, callback: ModalCallback) -> None:
        self._cancel_timer()
        self.state = ModalState(visible=True, request=request)
        self._callback = callback
        self._timer = asyncio.get_running_loop().create_task(self._expire(request, callback))
        self._publish()

    async def confirm(self) -> bool:
        request, callback = self.state.request, self._callback
        if not self.state.visible or request is None or callback is None:
            return False
        self._cancel_timer()
        self._callback = None
        try:
            await callback(ModalAction.CONFIRM)
        except Exception:
            logger.exception("modal confirm callback failed", extra={"medication_id": request.medication_id})
        finally:
            if self.state.request is request:
                self.hide()
        return True

    def hide(self) -> None:
        self._cancel_timer()
        self.state = ModalState()
        self._callback = None
        self._publish()

    async def _expire(self, request: ModalRequest, callback: ModalCallback) -> None:
        await asyncio.sleep(self.timeout_seconds)
        if not self.state.visible or self.state.request is not request:
            return
        # a confirm arriving while the timeout callback runs is refused
        self._timer = None
        self._callback = None
        try:
            await callback(ModalAction.TIMEOUT)
        except Exception:
            logger.exception("modal timeout callback failed", extra={"medication_id": request.medication_id})
        finally:
            if self.state.request is request:
                self.hide()

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if timer is not current:
            timer.cancel()

    def _publish(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("modal listener failed")
