"""Prompt text sent to the agent on each iteration."""
from __future__ import annotations

from .config import COMPLETION_SENTINEL

ITERATION_PROMPT_TEMPLATE = """\
You are working through the task described in {task_path}.

1. Read {task_path} and pick the highest priority item that is not done yet.
2. Implement that one item. Keep the change focused.
3. Run the project's checks (tests, type checks, linters) and fix what fails.
4. Mark the item as done in {task_path} and note anything the next run
   should know.
5. Commit your work.

Work on a single item per run. A fresh run will pick up the next one.

When every item in {task_path} is done, reply with exactly:
{sentinel}
"""


def build_iteration_prompt(
    task_path: str, sentinel: str = COMPLETION_SENTINEL
) -> str:
    """Prompt for one iteration against the task artifact at task_path."""
    return ITERATION_PROMPT_TEMPLATE.format(task_path=task_path, sentinel=sentinel)
