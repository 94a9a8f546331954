"""Global FIFO job queue with a single execution slot.

The generation host can work on one request at a time and must be switched
to the right character (and optionally connection profile) before each
one. The queue serializes every Job from every Bot and drives that
handshake:

1. switchchar <character>   (awaited, default 30 s deadline)
2. switchmodel <profile>    (only when the Bot has a profile, 15 s)
3. user_message / execute_command

Step 3 is fire-and-forget: the job stays active until a terminal host
event (final reply, error, command result) calls ``release()``, or until
the host disconnects.
"""

from __future__ import annotations

import asyncio
import base64
import dataclasses
import logging
from collections import deque
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from . import conventions, protocol
from .bots import BotRegistry
from .errors import GatewayError, HandshakeError
from .gateway import MessagingGateway
from .models import (
    ActiveJob,
    CommandPayload,
    Job,
    MessageEntry,
    MessagePayload,
    new_job_id,
)

if TYPE_CHECKING:
    from .connection import HostConnection

logger = logging.getLogger(__name__)

NOT_CONNECTED_NOTICE = (
    "Sorry, I cannot connect to SillyTavern right now. "
    "Please ensure SillyTavern is open and the Telegram extension is enabled."
)
LOST_DURING_PROCESSING_NOTICE = (
    "Connection to SillyTavern was lost during processing. Please try again."
)
LOST_WHILE_QUEUED_NOTICE = (
    "Connection to SillyTavern was lost. Please try again later."
)


class JobQueue:
    """FIFO of Jobs plus the one ActiveJob slot."""

    def __init__(
        self,
        connection: HostConnection,
        bots: BotRegistry,
        *,
        character_switch_timeout: float = conventions.CHARACTER_SWITCH_TIMEOUT,
        profile_switch_timeout: float = conventions.PROFILE_SWITCH_TIMEOUT,
    ) -> None:
        self._connection = connection
        self._bots = bots
        self._character_timeout = character_switch_timeout
        self._profile_timeout = profile_switch_timeout
        self._queue: deque[Job] = deque()
        self._active: ActiveJob | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    # --- Read-only views ---

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    @property
    def is_processing(self) -> bool:
        return self._active is not None

    @property
    def active_job(self) -> Job | None:
        return self._active.job if self._active else None

    @property
    def switch_pending(self) -> bool:
        """Whether the active job is waiting on a switch confirmation."""
        return self._pending_switch() is not None

    def pending_jobs(self) -> list[Job]:
        return list(self._queue)

    # --- Queue operations ---

    def enqueue(self, job: Job) -> Job:
        """Stamp the job with an id and creation time, append it, try to start."""
        job = dataclasses.replace(
            job, id=new_job_id(), created_at=datetime.now(UTC).isoformat()
        )
        self._queue.append(job)
        logger.info(
            f'Job {job.id} ({job.kind}) enqueued for character '
            f'"{job.bot.character_name}" (queue size: {len(self._queue)})'
        )
        self.try_start()
        return job

    def try_start(self) -> None:
        """Start the next job if the slot is free. Safe to call at any time."""
        if self._active is not None or not self._queue:
            return

        if not self._connection.is_connected:
            drained = list(self._queue)
            self._queue.clear()
            logger.warning(
                f"Cannot process queue: generation host not connected "
                f"({len(drained)} jobs dropped)"
            )
            for job in drained:
                self._spawn(
                    self._bots.notify(job.bot.id, job.chat_id, NOT_CONNECTED_NOTICE)
                )
            return

        job = self._queue.popleft()
        active = ActiveJob(job=job)
        self._active = active
        logger.info(f'Processing job {job.id} for bot "{job.bot.character_name}"')
        self._spawn(self._run(active))

    def release(self, bot_id: str | None = None, chat_id: int | None = None) -> bool:
        """Free the slot and start the next job.

        With ``bot_id``/``chat_id`` the release only happens when the active
        job belongs to that conversation. Returns whether a job was released.
        """
        active = self._active
        if active is None:
            return False
        if not active.matches(bot_id, chat_id):
            logger.debug(
                f"Ignoring release for bot {bot_id} chat {chat_id}: "
                f"active job {active.job.id} belongs elsewhere"
            )
            return False

        logger.info(f"Releasing job {active.job.id}")
        self._fail_switch(active, HandshakeError("Job released during switch"))
        self._active = None
        self.try_start()
        return True

    def confirm_switch(self) -> bool:
        future = self._pending_switch()
        if future is None:
            return False
        future.set_result(None)
        return True

    def reject_switch(self, message: str) -> bool:
        future = self._pending_switch()
        if future is None:
            return False
        future.set_exception(HandshakeError(message))
        return True

    async def handle_disconnect(self) -> None:
        """Abort the active job and drain the queue, notifying every origin."""
        active = self._active
        queued = list(self._queue)
        self._queue.clear()
        self._active = None

        notices: list[Coroutine[Any, Any, bool]] = []
        if active is not None:
            logger.warning(f"Generation host lost while processing job {active.job.id}")
            self._fail_switch(active, HandshakeError("Generation host disconnected"))
            notices.append(
                self._bots.notify(
                    active.job.bot.id, active.job.chat_id, LOST_DURING_PROCESSING_NOTICE
                )
            )
        for job in queued:
            notices.append(
                self._bots.notify(job.bot.id, job.chat_id, LOST_WHILE_QUEUED_NOTICE)
            )
        if queued:
            logger.warning(f"Dropped {len(queued)} queued jobs after disconnect")
        await asyncio.gather(*notices)

    async def close(self) -> None:
        """Cancel background work (shutdown)."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._queue.clear()
        self._active = None

    # --- Internals ---

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _pending_switch(self) -> asyncio.Future[None] | None:
        active = self._active
        if active is None or active.switch_future is None:
            return None
        return None if active.switch_future.done() else active.switch_future

    @staticmethod
    def _fail_switch(active: ActiveJob, error: HandshakeError) -> None:
        future = active.switch_future
        if future is not None and not future.done():
            future.set_exception(error)

    async def _run(self, active: ActiveJob) -> None:
        job = active.job
        try:
            await self._switch(
                active,
                conventions.SWITCH_CHARACTER_COMMAND,
                job.bot.character_name,
                self._character_timeout,
                f"Character switch timed out after {self._character_timeout:g} seconds",
            )
            active.switch_confirmed = True

            profile = job.bot.connection_profile
            if profile:
                await self._switch(
                    active,
                    conventions.SWITCH_PROFILE_COMMAND,
                    profile,
                    self._profile_timeout,
                    f'Model switch to "{profile}" timed out',
                )

            await self._execute(active)
        except Exception as exc:
            if self._active is not active:
                logger.info(f"Job {job.id} abandoned: {exc}")
                return
            if isinstance(exc, HandshakeError):
                logger.error(f"Handshake failed for job {job.id}: {exc}")
                notice = str(exc)
            else:
                logger.exception(f"Error processing job {job.id}")
                notice = f"An error occurred: {exc}"
            await self._bots.notify(job.bot.id, job.chat_id, notice)
            if self._active is active:
                self.release()

    async def _switch(
        self,
        active: ActiveJob,
        command: str,
        argument: str,
        timeout: float,
        timeout_message: str,
    ) -> None:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[None] = loop.create_future()
        active.switch_future = future
        logger.info(f'Requesting {command} to "{argument}" for job {active.job.id}')
        try:
            request = protocol.switch_request(active.job, command, argument)
            await self._connection.send(request)
            await asyncio.wait_for(future, timeout)
        except TimeoutError:
            raise HandshakeError(timeout_message) from None
        finally:
            if active.switch_future is future:
                active.switch_future = None

    async def _execute(self, active: ActiveJob) -> None:
        job = active.job
        gateway = self._bots.gateway(job.bot.id)
        if gateway is None:
            raise GatewayError(f"No gateway registered for bot {job.bot.id}")

        try:
            await gateway.send_chat_action(job.chat_id, "typing")
        except GatewayError as exc:
            logger.error(f"Failed to send typing action: {exc}")

        payload = job.payload
        if isinstance(payload, MessagePayload):
            messages = [
                await self._encode_entry(gateway, entry) for entry in payload.entries
            ]
            if self._active is not active:
                logger.info(f"Job {job.id} released during downloads, not sent")
                return
            logger.info(f"Sending {len(messages)} messages to host for job {job.id}")
            await self._connection.send(
                protocol.user_message(job.bot, job.chat_id, messages)
            )
        elif isinstance(payload, CommandPayload):
            if self._active is not active:
                return
            logger.info(f"Executing command /{payload.command} for job {job.id}")
            await self._connection.send(
                protocol.command_request(
                    job.bot, job.chat_id, payload.command, payload.arguments
                )
            )
        else:
            raise TypeError(f"Unsupported job payload: {type(payload).__name__}")

    @staticmethod
    async def _encode_entry(
        gateway: MessagingGateway, entry: MessageEntry
    ) -> dict[str, Any]:
        files: list[dict[str, str]] = []
        for attachment in entry.attachments:
            try:
                data = await gateway.download_file(attachment.file_id)
            except GatewayError as exc:
                logger.error(f"Failed to download {attachment.file_name}: {exc}")
                continue
            files.append(
                {
                    "base64": base64.b64encode(data).decode("ascii"),
                    "mimeType": attachment.mime_type,
                    "fileName": attachment.file_name,
                }
            )
        message: dict[str, Any] = {"text": entry.text}
        if files:
            message["files"] = files
        return message
