"""Startup instructions handed to a freshly spawned worker."""
from __future__ import annotations

import logging

logger = logging.getLogger("autodev.templates")

STARTUP_TEMPLATE = "/auto-dev --task {task_id} --file {file_path}"

RECOVERY_TEMPLATE = """\
/auto-dev --task {task_id} --file {file_path}

## Resuming after an interrupted attempt

Your previous attempt at task `{task_id}` was stopped because the upstream
service rate-limited the session. That attempt had already modified files
in the project.

Before making new changes:
1. Inspect the working tree (e.g. `git status` and `git diff`) to see what
   was already done.
2. Keep the edits that are correct and finish the ones that are partial.
3. Do not start over from scratch or duplicate work that already exists.
"""


def startup_content(task_id: str, file_path: str, *, recovery: bool = False, issues_block: str = "") -> str:
    """Render the first message sent to a worker.

    *recovery* selects the variant used after a rate-limit interruption
    left modified artifacts behind.  *issues_block* (already formatted) is
    prepended for integration tasks that should address collected issues.
    """
    template = RECOVERY_TEMPLATE if recovery else STARTUP_TEMPLATE
    content = template.format(task_id=task_id, file_path=file_path)
    if issues_block:
        content = f"{issues_block}\n\n{content}"
    if recovery:
        logger.info("Using recovery instructions for task %s", task_id)
    return content
