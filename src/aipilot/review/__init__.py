from aipilot.review.base import (
    InvocationResult,
    InvocationState,
    LockHeldError,
    ReviewerExecutionError,
    ReviewerProcessError,
    ReviewerTimeoutError,
    ReviewInputError,
    ReviewRequest,
    SessionExpiredError,
)
from aipilot.review.codex import CodexRunner, ProcessOutput, find_codex, preflight
from aipilot.review.invoker import ReviewInvoker, build_placeholder, repair_review_output
from aipilot.review.lock import ReviewLock, lock_path_for
from aipilot.review.prompts import ReviewPrompt, ReviewPromptBuilder
from aipilot.review.sessions import SessionTokenStore

__all__ = [
    "CodexRunner",
    "InvocationResult",
    "InvocationState",
    "LockHeldError",
    "ProcessOutput",
    "ReviewInputError",
    "ReviewInvoker",
    "ReviewLock",
    "ReviewPrompt",
    "ReviewPromptBuilder",
    "ReviewRequest",
    "ReviewerExecutionError",
    "ReviewerProcessError",
    "ReviewerTimeoutError",
    "SessionExpiredError",
    "SessionTokenStore",
    "build_placeholder",
    "find_codex",
    "lock_path_for",
    "preflight",
    "repair_review_output",
]
