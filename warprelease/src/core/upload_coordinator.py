from dataclasses import dataclass, replace
from typing import List, Optional, Sequence

from warprelease.logger import get_console
from warprelease.src.core.errors import CancelledError
from warprelease.src.core.ports import UploadPort
from warprelease.src.core.scheduler import CancellationToken, Clock, SystemClock, poll_until
from warprelease.src.models.upload import (
    StrategyAttempt,
    UploadCredentials,
    UploadOptions,
    UploadResult,
    is_successful_processing_state,
    is_terminal_processing_state,
    normalize_processing_state,
)

console = get_console()

CANCELLED = "Cancelled"
UPLOAD_FAILED = "UploadFailed"
BUDGET_EXHAUSTED = "UploadBudgetExhausted"


@dataclass(frozen=True)
class UploadStrategy:
    """A named upload mechanism (altool, transporter, ...)"""

    name: str
    port: UploadPort


class UploadRetryCoordinator:
    """Runs the upload stage by falling back through upload strategies in order.

    The next strategy is tried only when the current one fails outright; the
    first success wins. Each strategy runs under its own timeout: the
    configured ``attempt_timeout`` or, when unset, an even share of the budget
    left for the strategies not yet tried. A strategy that times out leaves
    budget for the ones after it. ``upload`` never raises: callers check
    ``UploadResult.success``.
    """

    def __init__(
        self,
        strategies: Sequence[UploadStrategy],
        status_port: Optional[UploadPort] = None,
        clock: Optional[Clock] = None,
    ):
        self.strategies = list(strategies)
        self.status_port = status_port
        self.clock = clock or SystemClock()

    @property
    def strategy_names(self) -> List[str]:
        return [strategy.name for strategy in self.strategies]

    def upload(
        self,
        archive_path: str,
        credentials: Optional[UploadCredentials],
        options: UploadOptions,
        cancel_token: Optional[CancellationToken] = None,
    ) -> UploadResult:
        if not self.strategies:
            return UploadResult.failed("No upload strategies configured")

        start = self.clock.monotonic()
        attempts: List[StrategyAttempt] = []
        last: Optional[StrategyAttempt] = None

        for index, strategy in enumerate(self.strategies):
            if cancel_token is not None and cancel_token.is_cancelled:
                return self._cancelled(cancel_token, attempts)

            remaining = options.total_budget - (self.clock.monotonic() - start)
            if remaining <= 0:
                console.print(
                    f"[red]Upload budget of {options.total_budget:.0f}s exhausted "
                    f"before trying {strategy.name}"
                )
                return UploadResult.failed(
                    f"Upload budget of {options.total_budget:.0f}s exhausted after "
                    f"{len(attempts)} attempt(s)",
                    error_kind=BUDGET_EXHAUSTED,
                    strategies_tried=[a.strategy for a in attempts],
                    last_error=last.error if last else None,
                ).with_attempts(attempts)

            if options.attempt_timeout is not None:
                attempt_timeout = min(options.attempt_timeout, remaining)
            else:
                attempt_timeout = remaining / (len(self.strategies) - index)

            console.print(f"[blue]Uploading {archive_path} using {strategy.name}...")
            attempt_start = self.clock.monotonic()
            try:
                result = strategy.port.upload(
                    archive_path,
                    credentials,
                    replace(options, total_budget=remaining, attempt_timeout=attempt_timeout),
                    cancel_token=cancel_token,
                )
            except CancelledError as e:
                attempts.append(
                    StrategyAttempt(
                        strategy=strategy.name,
                        success=False,
                        duration=self.clock.monotonic() - attempt_start,
                        error=str(e),
                        error_kind=CANCELLED,
                    )
                )
                return self._cancelled(cancel_token, attempts, str(e))
            except Exception as e:
                result = UploadResult.failed(
                    str(e) or e.__class__.__name__,
                    error_kind=getattr(e, "kind", None) or e.__class__.__name__,
                )
            if result is None:
                result = UploadResult.failed(f"{strategy.name} returned no result")

            attempt = StrategyAttempt(
                strategy=strategy.name,
                success=result.success,
                duration=self.clock.monotonic() - attempt_start,
                error=None if result.success else (result.error or result.message),
                error_kind=None if result.success else (result.error_kind or UPLOAD_FAILED),
            )
            attempts.append(attempt)

            if result.success:
                console.print(
                    f"[green]Upload successful via {strategy.name} ({attempt.duration:.1f}s)"
                )
                result = result.with_metadata(
                    upload_method=strategy.name,
                    upload_duration=self.clock.monotonic() - start,
                    enhanced_mode=options.enhanced,
                )
                if options.enhanced:
                    result = self._await_processing(result, options, cancel_token)
                return result.with_attempts(attempts)

            console.print(f"[red]{strategy.name} upload failed: {attempt.error}")
            last = attempt

        return UploadResult.failed(
            f"All upload strategies failed. Last error ({last.strategy}): {last.error}",
            error_kind=last.error_kind or UPLOAD_FAILED,
            failed_strategy=last.strategy,
            strategies_tried=[a.strategy for a in attempts],
        ).with_attempts(attempts)

    def _await_processing(
        self,
        result: UploadResult,
        options: UploadOptions,
        cancel_token: Optional[CancellationToken],
    ) -> UploadResult:
        if self.status_port is None:
            console.print("[yellow]No status channel configured, skipping processing wait")
            return result.with_metadata(processing_state=None, processing_complete=False)

        console.print(
            f"[blue]Waiting up to {options.wait_budget:.0f}s for build "
            f"{options.build_number} to finish processing..."
        )

        def fetch():
            return normalize_processing_state(
                self.status_port.get_processing_state(
                    options.app_identifier, options.build_number
                )
            )

        def report(state):
            console.print(f"[cyan]Processing state: {state}")

        try:
            outcome = poll_until(
                fetch,
                is_terminal_processing_state,
                interval=options.poll_interval,
                budget=options.wait_budget,
                clock=self.clock,
                token=cancel_token,
                on_change=report,
            )
        except CancelledError as e:
            cancelled = self._cancelled(cancel_token, result.attempts, str(e))
            return cancelled.with_metadata(**dict(result.metadata))
        except Exception as e:
            console.print(f"[yellow]Could not read processing state: {e}")
            return result.with_metadata(
                processing_state=None,
                processing_complete=False,
                processing_error=str(e),
            )

        if outcome.timed_out:
            console.print(
                f"[yellow]Build still {outcome.value} after {outcome.elapsed:.0f}s, "
                "not waiting any longer"
            )
        elif is_successful_processing_state(outcome.value):
            console.print(f"[green]Build finished processing: {outcome.value}")
        else:
            console.print(f"[red]Build processing failed: {outcome.value}")

        return result.with_metadata(
            processing_state=outcome.value,
            processing_complete=outcome.finished,
            processing_wait=outcome.elapsed,
        )

    @staticmethod
    def _cancelled(
        cancel_token: Optional[CancellationToken],
        attempts: Sequence[StrategyAttempt],
        reason: Optional[str] = None,
    ) -> UploadResult:
        reason = reason or (cancel_token.reason if cancel_token else None) or "Upload cancelled"
        console.print(f"[yellow]Upload cancelled: {reason}")
        return UploadResult.failed(reason, error_kind=CANCELLED).with_attempts(attempts)
