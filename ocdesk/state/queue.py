"""Per-conversation prompt queue and dispatch.

Prompts submitted while a conversation is busy are parked with the
model/agent/variant that were selected at submit time, and sent one at a
time as the conversation goes idle. The queue items themselves live in
the reconciler; this controller only decides when to send.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from ocdesk.adapters.router import CommandResult, EventRouter
from ocdesk.shared.models.message import QueuedPrompt
from ocdesk.state.reconciler import Reconciler

logger = logging.getLogger(__name__)


class PromptQueue:
    """Dispatches queued prompts on busy→idle, one in flight per conversation."""

    def __init__(self, reconciler: Reconciler, router: EventRouter) -> None:
        self._state = reconciler
        self._router = router
        self._in_flight: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        reconciler.on_idle(self._on_idle)

    def in_flight(self, session_id: str) -> bool:
        return session_id in self._in_flight

    def _capture(self, text: str, attachments: Sequence[str]) -> QueuedPrompt:
        return QueuedPrompt(
            text=text,
            attachments=tuple(attachments),
            model=self._state.selected_model,
            agent=self._state.selected_agent,
            variant=self._state.current_variant,
        )

    async def submit(
        self, session_id: str, text: str, attachments: Sequence[str] = (),
    ) -> CommandResult:
        """Send now when idle, otherwise enqueue.

        Returns the dispatch result, or an ok result carrying the
        QueuedPrompt when the prompt was parked.
        """
        prompt = self._capture(text, attachments)
        if self._state.is_busy(session_id) or session_id in self._in_flight:
            self._state.queue_add(session_id, prompt)
            logger.debug("Queued prompt %s for busy session %s", prompt.id, session_id)
            return CommandResult.ok(prompt)
        return await self._dispatch(session_id, prompt)

    async def dispatch_next(self, session_id: str) -> CommandResult | None:
        """Send the oldest queued prompt if the conversation can take it."""
        if session_id in self._in_flight or self._state.is_busy(session_id):
            return None
        head = self._state.queue_shift(session_id)
        if head is None:
            return None
        return await self._dispatch(session_id, head)

    async def _dispatch(self, session_id: str, prompt: QueuedPrompt) -> CommandResult:
        self._in_flight.add(session_id)
        self._state.mark_busy(session_id, True)
        try:
            result = await self._router.prompt(
                session_id,
                prompt.text,
                prompt.attachments,
                model=prompt.model,
                agent=prompt.agent,
                variant=prompt.variant,
            )
        finally:
            self._in_flight.discard(session_id)
        if not result.success:
            logger.warning("Prompt dispatch to %s failed: %s", session_id, result.error)
            self._state.set_error(result.error)
            self._state.mark_busy(session_id, False)
            # Prompts parked behind this one never see a busy→idle edge.
            if self._state.queue_for(session_id):
                self._schedule(session_id)
            return result
        # The run may have finished before the request returned.
        if not self._state.is_busy(session_id) and self._state.queue_for(session_id):
            self._schedule(session_id)
        return result

    def _on_idle(self, session_id: str) -> None:
        if session_id in self._in_flight or not self._state.queue_for(session_id):
            return
        self._schedule(session_id)

    def _schedule(self, session_id: str) -> None:
        task = asyncio.get_running_loop().create_task(self.dispatch_next(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── editing ────────────────────────────────────────────────

    def remove(self, session_id: str, prompt_id: str) -> bool:
        return self._state.queue_remove(session_id, prompt_id) is not None

    def reorder(self, session_id: str, from_index: int, to_index: int) -> bool:
        return self._state.queue_reorder(session_id, from_index, to_index)

    def update(self, session_id: str, prompt_id: str, text: str) -> bool:
        return self._state.queue_update(session_id, prompt_id, text)

    def clear(self, session_id: str) -> None:
        self._state.queue_clear(session_id)

    async def send_now(self, session_id: str, prompt_id: str) -> CommandResult:
        """Skip the line with a queued prompt.

        Idle: the prompt is sent directly. Busy: it moves to the front and
        the running turn is aborted, so the idle transition sends it.
        """
        items = self._state.queue_for(session_id)
        index = next((i for i, p in enumerate(items) if p.id == prompt_id), None)
        if index is None:
            return CommandResult.fail("Queued prompt not found")
        if not self._state.is_busy(session_id) and session_id not in self._in_flight:
            prompt = self._state.queue_remove(session_id, prompt_id)
            return await self._dispatch(session_id, prompt)
        if index:
            self._state.queue_reorder(session_id, index, 0)
        return await self._router.abort(session_id)

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
