"""Chat session: the entry point callers talk to."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Sequence

from toolchat.chat.turn_events import TurnEventCallback
from toolchat.chat.turn_runner import TurnOptions, TurnResult, TurnRunner
from toolchat.config.schema import Config
from toolchat.context.manager import ContextManager
from toolchat.context.message import MessageRole
from toolchat.context.parts import Part, TextPart
from toolchat.context.workspace import WorkspaceProvider
from toolchat.logging import bound_context, get_logger
from toolchat.providers.base import LLMProvider
from toolchat.providers.credentials import KeyRotation, RoundRobinRotation, load_credentials
from toolchat.providers.litellm_provider import LiteLLMProvider
from toolchat.providers.resilient import ResilientClient
from toolchat.status import StatusManager
from toolchat.tools.confirmation import ConfirmationStore
from toolchat.tools.failures import FailureTracker
from toolchat.tools.jobs import JobInfo, JobStatus
from toolchat.tools.orchestrator import ToolOrchestrator
from toolchat.tools.prompter import FunctionPrompter
from toolchat.tools.registry import ToolRegistry

logger = get_logger(__name__)


class Chat:
    """
    One conversation with one model.

    Only one turn runs at a time: :meth:`send_content` while a turn is in
    flight logs a warning and returns None without touching the context.
    """

    def __init__(
        self,
        *,
        client: ResilientClient,
        registry: ToolRegistry,
        prompter: FunctionPrompter,
        options: TurnOptions,
        confirmations: ConfirmationStore | None = None,
        failures: FailureTracker | None = None,
        workspace_providers: Sequence[WorkspaceProvider] = (),
        keep_user_turns: int = 2,
        token_threshold: int = 250_000,
        session_id: str | None = None,
        on_event: TurnEventCallback | None = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.registry = registry
        self.client = client
        self.status: StatusManager = client.status
        self.context = ContextManager(registry, keep_user_turns=keep_user_turns, token_threshold=token_threshold)
        self.orchestrator = ToolOrchestrator(
            registry, prompter, confirmations, failures, on_job_done=self.notify_job_completion
        )
        self.runner = TurnRunner(
            context=self.context,
            client=client,
            orchestrator=self.orchestrator,
            options=options,
            workspace_providers=workspace_providers,
            status=self.status,
        )
        self.on_event = on_event
        self._busy = False
        self._shutdown = False
        self._interrupt = asyncio.Event()
        self._pending_jobs: list[JobInfo] = []

    @classmethod
    def from_config(
        cls,
        config: Config,
        *,
        prompter: FunctionPrompter,
        registry: ToolRegistry | None = None,
        provider: LLMProvider | None = None,
        rotation: KeyRotation | None = None,
        workspace_providers: Sequence[WorkspaceProvider] = (),
        on_event: TurnEventCallback | None = None,
    ) -> Chat:
        """Wire a chat from configuration. Keys come from the config and the keys file."""
        if rotation is None:
            keys = config.credentials.resolved_api_keys + load_credentials(config.credentials.keys_path)
            rotation = RoundRobinRotation(keys)
        provider = provider or LiteLLMProvider(
            api_base=config.credentials.api_base,
            timeout_s=config.retry.timeout_s,
        )
        return cls(
            client=ResilientClient(provider, rotation, config.retry),
            registry=registry or ToolRegistry(),
            prompter=prompter,
            options=TurnOptions(
                model=config.chat.model,
                temperature=config.chat.temperature,
                max_output_tokens=config.chat.max_output_tokens,
                max_iterations=config.chat.max_iterations,
                tools_enabled=config.tools.enabled,
                system_instruction=config.chat.system_instruction,
                core_instructions=config.chat.core_instructions,
                workspace=config.chat.workspace_path,
            ),
            confirmations=ConfirmationStore(config.tools.confirmations_path),
            failures=FailureTracker(config.tools.failures.max_failures, config.tools.failures.window_s),
            workspace_providers=workspace_providers,
            keep_user_turns=config.pruning.keep_user_turns,
            token_threshold=config.pruning.token_threshold,
            on_event=on_event,
        )

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    @property
    def short_id(self) -> str:
        return self.session_id[-7:]

    async def send_text(self, text: str) -> TurnResult | None:
        return await self.send_content([TextPart(text)])

    async def send_content(self, parts: Sequence[Part]) -> TurnResult | None:
        """
        Run one turn for *parts*.

        Returns None when another turn is in flight or the chat is shut down.
        Raises the backend error (fatal, max retries, interrupted) if the turn
        cannot complete.
        """
        if self._busy:
            logger.warning("chat_busy_send_ignored", session_id=self.short_id)
            return None
        if self._shutdown:
            logger.warning("chat_shutdown_send_ignored", session_id=self.short_id)
            return None

        self._busy = True
        self._interrupt.clear()
        try:
            with bound_context(session_id=self.short_id):
                message = self.context.create_message(MessageRole.USER, parts)
                return await self.runner.run(
                    message,
                    chat=self,
                    interrupt=self._interrupt,
                    should_stop=lambda: self._shutdown,
                    on_event=self.on_event,
                    event_source="chat",
                )
        finally:
            self._busy = False
            self._flush_jobs()

    def kill(self) -> None:
        """Abort the in-flight turn at its next backoff sleep."""
        if self._busy:
            logger.info("chat_turn_kill_requested", session_id=self.short_id)
            self._interrupt.set()

    def shutdown(self) -> None:
        """Stop accepting turns; an in-flight turn stops at its next iteration."""
        self._shutdown = True
        self._interrupt.set()
        logger.info("chat_shutdown", session_id=self.short_id)

    async def close(self) -> None:
        """Shut down and cancel background jobs that are still running."""
        self.shutdown()
        cancelled = await self.orchestrator.jobs.cancel_all()
        if cancelled:
            logger.info("chat_jobs_cancelled", session_id=self.short_id, count=cancelled)

    def clear(self) -> None:
        self.context.clear()
        self.status.clear_api_errors()

    def context_window_usage(self) -> float:
        return self.context.context_window_usage()

    def notify_job_completion(self, job: JobInfo) -> None:
        """Add a finished background job to context, or queue it until the current turn ends."""
        if self._busy:
            logger.info("job_completion_queued", job_id=job.job_id)
            self._pending_jobs.append(job)
            return
        self._append_job(job)

    def _flush_jobs(self) -> None:
        jobs, self._pending_jobs = self._pending_jobs, []
        for job in jobs:
            self._append_job(job)

    def _append_job(self, job: JobInfo) -> None:
        payload = json.dumps(job.to_dict(), ensure_ascii=False, default=str)
        message = self.context.create_message(
            MessageRole.USER,
            [TextPart(f"Async job result: {payload}")],
            tool_feedback=True,
        )
        self.context.add(message)
        logger.info("job_completion_added", job_id=job.job_id, status=JobStatus(job.status).value)
