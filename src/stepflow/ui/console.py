"""Console output formatting utilities for stepflow."""

from __future__ import annotations

import sys
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug

    def print_run_started(
        self,
        workflow: str,
        output: str,
        step_count: int,
        start_at: int,
    ) -> None:
        """Print run start information."""
        print("\nRUN STARTED")
        print(f"Workflow: {workflow}")
        print(f"Output: {output}")
        print(f"Steps: {step_count}")
        if start_at != 1:
            print(f"Start at: {start_at}")
        print()

    def print_step(self, order: int, program: str, command: str) -> None:
        """Print step start message."""
        print(f"STEP {order}: {program}")
        self.print_debug(command)

    def print_success(self, order: int) -> None:
        print("STATUS: success")

    def print_fallback(self, order: int, command: str) -> None:
        """Print the shell fallback notice for an external step."""
        print(f"Direct invocation failed; retrying step {order} through the shell")
        self.print_debug(command)

    def print_step_skipped(self, order: int, program: str, reason: str) -> None:
        """Print step skipped in plan."""
        print(f"  step {order}: {program} (skipped: {reason})")

    def print_failure(
        self,
        order: int,
        reason: str,
        exit_code: Optional[int] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            order: Execution order of the failed step
            reason: Failure reason/error message
            exit_code: Optional exit code
        """
        print(f"STEP FAILED: {order}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if self.debug:
            print(f"Error details: {reason}")
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split('\n')[0] if reason else "Unknown error"
            print(f"Error: {error_line}")

    def print_results(self, name: str, log_path: str, succeeded: int, total: int) -> None:
        """Print final results summary."""
        print("\n" + "=" * 40)
        print("RESULTS")
        print("=" * 40)
        print(f"  {name}: {succeeded}/{total} step(s) succeeded")
        print(f"  log: {log_path}")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=sys.stderr)
        print(f"{message}", file=sys.stderr)
        if details:
            for detail in details:
                print(f"  {detail}", file=sys.stderr)
        if suggestion:
            print(f"\n{suggestion}", file=sys.stderr)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {exc}", file=sys.stderr)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message)

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}", file=sys.stderr)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
