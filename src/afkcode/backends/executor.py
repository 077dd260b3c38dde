from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass

from afkcode.backends.base import (
    AgentBackend,
    AllBackendsExhaustedError,
    BackendDescriptor,
    BackendExecutionError,
    BackendReply,
    BackendTimeoutError,
    TurnOutcome,
)
from afkcode.backends.chain import BackendChain

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnResult:
    backend: str
    output: str
    outcome: TurnOutcome
    exit_code: int | None = None
    diagnostics: str = ""
    duration_seconds: float = 0.0
    retriable: bool = True

    @property
    def succeeded(self) -> bool:
        return self.outcome is TurnOutcome.SUCCESS


def classify_reply(descriptor: BackendDescriptor, reply: BackendReply) -> TurnOutcome:
    """Rate-limit phrases win over exit status; backends often print them and exit 0."""
    if descriptor.is_rate_limited(reply.combined):
        return TurnOutcome.RATE_LIMITED
    if not reply.succeeded:
        return TurnOutcome.CRASHED
    return TurnOutcome.SUCCESS


class TurnExecutor:
    def __init__(
        self,
        backends: Mapping[str, AgentBackend],
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.backends = dict(backends)
        self.timeout_seconds = timeout_seconds

    async def run(
        self,
        descriptor: BackendDescriptor,
        prompt: str,
        model_override: str | None = None,
        *,
        quick: bool = False,
    ) -> TurnResult:
        backend = self.backends.get(descriptor.name)
        if backend is None:
            raise ValueError(f"No backend registered for {descriptor.name}")

        model = model_override or descriptor.model
        started = time.monotonic()
        retriable = True
        try:
            if self.timeout_seconds:
                reply = await asyncio.wait_for(
                    backend.invoke(prompt, model, quick=quick), timeout=self.timeout_seconds
                )
            else:
                reply = await backend.invoke(prompt, model, quick=quick)
        except TimeoutError:
            error = BackendTimeoutError(
                f"Backend request timed out after {self.timeout_seconds:.1f}s",
                backend=descriptor.name,
            )
            reply = BackendReply(output="", exit_code=None, diagnostics=str(error))
        except BackendExecutionError as exc:
            retriable = exc.retriable
            reply = BackendReply(
                output="", exit_code=exc.exit_code or None, diagnostics=str(exc)
            )
        except OSError as exc:
            retriable = False
            reply = BackendReply(
                output="", exit_code=None, diagnostics=f"{type(exc).__name__}: {exc}"
            )

        outcome = classify_reply(descriptor, reply)
        return TurnResult(
            backend=descriptor.name,
            output=reply.output,
            outcome=outcome,
            exit_code=reply.exit_code,
            diagnostics=reply.diagnostics,
            duration_seconds=time.monotonic() - started,
            retriable=retriable,
        )


async def run_with_fallback(
    chain: BackendChain,
    executor: TurnExecutor,
    prompt: str,
    *,
    quick: bool = False,
    avoid: Collection[str] = (),
    on_select: Callable[[BackendDescriptor], None] | None = None,
) -> TurnResult:
    """Run one logical turn, moving down ``chain`` whenever a backend is rate limited.

    Backends in ``avoid`` (those that crashed on earlier turns) are used only when
    nothing else is available. A non-retriable crash, such as a missing binary,
    falls through to the next backend within the same turn.

    Returns a ``SUCCESS`` or ``CRASHED`` result. Raises
    :class:`AllBackendsExhaustedError` once every backend is squelched.
    """
    broken: set[str] = set()
    crashed: TurnResult | None = None
    while True:
        descriptor = chain.next_backend(exclude=broken | set(avoid)) or chain.next_backend(
            exclude=broken
        )
        if descriptor is None:
            if crashed is not None:
                return crashed
            raise AllBackendsExhaustedError(f"All backends rate limited: {', '.join(chain.names)}")
        if on_select is not None:
            on_select(descriptor)
        result = await executor.run(descriptor, prompt, quick=quick)
        chain.report_outcome(descriptor.name, result.outcome)
        if result.outcome is TurnOutcome.CRASHED and not result.retriable:
            logger.warning(
                "Backend %s unusable, trying next: %s", descriptor.name, result.diagnostics[:200]
            )
            broken.add(descriptor.name)
            crashed = result
            continue
        if result.outcome is not TurnOutcome.RATE_LIMITED:
            return result
