from __future__ import annotations

import json

from boardbot.backends.signals import STATUS_MARKER
from boardbot.models import Task, pr_number_from_url, repo_slug_from_url

STATUS_EXAMPLE = f'{STATUS_MARKER}: {{"EXIT_SIGNAL": true, "COMPLETION_INDICATORS": 2}}'
VERDICT_MARKER = "REVIEW_VERDICT"
REFINED_MARKER = "REFINED_TASK"


def _task_header(task: Task) -> str:
    lines = [
        f"Title: {task.title}",
        f"Description: {task.description or '(none)'}",
        f"Priority: {task.priority.value}",
    ]
    if task.branch_name:
        lines.append(f"Branch: {task.branch_name}")
    if task.labels:
        lines.append(f"Labels: {', '.join(task.labels)}")
    return "\n".join(lines)


def initial_prompt(task: Task, fix_instructions: str | None = None) -> str:
    parts = ["Please complete the following task:", _task_header(task)]
    if fix_instructions:
        parts.append(
            "A reviewer rejected the previous attempt. Address these remarks first:\n"
            + fix_instructions.strip()
        )
    parts.append(
        "List every file you change on its own line as `modified: <path>` "
        "or `created: <path>`. If you open a pull request, print its URL.\n\n"
        "IMPORTANT: When the task is complete, output a status block like this:\n"
        + STATUS_EXAMPLE
    )
    return "\n\n".join(parts)


def continuation_prompt(files_changed: list[str], loop_number: int) -> str:
    return (
        f"Continue working on the task (iteration {loop_number}). "
        f"Progress: {len(files_changed)} files changed so far. "
        f"When complete, output the {STATUS_MARKER} block."
    )


def review_prompt(task: Task, stage_label: str) -> str:
    context = {
        "files_changed": task.files_changed,
        "completion_notes": (task.completion_notes or "")[-2000:],
        "pull_request": task.pr_url,
        "pull_request_number": pr_number_from_url(task.pr_url) if task.pr_url else None,
        "repository": repo_slug_from_url(task.pr_url) if task.pr_url else None,
        "branch": task.branch_name,
        "review_round": task.review_rounds + 1,
    }
    return "\n\n".join(
        [
            f"You are the {stage_label} gate for the following task. "
            "Inspect the work in the repository and judge whether it is done correctly.",
            _task_header(task),
            "Context JSON:\n" + json.dumps(context, ensure_ascii=False, indent=2),
            "Do not modify files. Finish with exactly one verdict line:\n"
            f'{VERDICT_MARKER}: {{"verdict": "approve", "remarks": "..."}}\n'
            f'or {VERDICT_MARKER}: {{"verdict": "reject", "remarks": "what must change"}}',
        ]
    )


def refinement_prompt(task: Task) -> str:
    return "\n\n".join(
        [
            "Refine the following board task so an autonomous engineer can execute it "
            "without further questions. Keep the intent, make the scope and acceptance "
            "criteria explicit.",
            _task_header(task),
            "Do not modify files. Reply with one line:\n"
            f'{REFINED_MARKER}: {{"title": "...", "description": "..."}}',
        ]
    )
