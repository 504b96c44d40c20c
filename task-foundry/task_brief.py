"""Render the brief a build agent reads from its workspace."""

import shlex

from models import Task


def _bullets(items) -> str:
    return "\n".join(f"- {item}" for item in items)


def build_brief(
    task: Task,
    completion_token: str,
    verification_commands: list[list[str]],
) -> str:
    """Return the markdown brief for *task*.

    Sections: objective, acceptance checklist, optional file ownership and
    interface contracts, verification commands, completion instruction.
    """
    sections = [f"# Task: {task.title}", f"## Objective\n\n{task.description.strip()}"]

    if task.acceptance_criteria:
        checklist = "\n".join(f"- [ ] {c}" for c in task.acceptance_criteria)
    else:
        checklist = "- [ ] The objective above is fully implemented"
    sections.append(f"## Acceptance Criteria\n\n{checklist}")

    ownership = task.file_ownership
    if ownership is not None and not ownership.empty:
        parts = [
            "This task uses spatial decomposition. Other workers are running in "
            "parallel on other files. You have exclusive ownership of the paths "
            "below and must not create or modify anything else."
        ]
        if ownership.create:
            parts.append(f"You may CREATE these files:\n{_bullets(ownership.create)}")
        if ownership.modify:
            parts.append(f"You may MODIFY these files:\n{_bullets(ownership.modify)}")
        sections.append("## File Ownership\n\n" + "\n\n".join(parts))

    if task.interface_contracts:
        contracts = "\n".join(f"- **{name}**: {note}" for name, note in task.interface_contracts)
        sections.append(f"## Interface Contracts\n\n{contracts}")

    commands = "\n".join(shlex.join(cmd) for cmd in verification_commands if cmd)
    sections.append(
        "## Verification\n\n"
        "Before signaling completion, run from the repository root:\n\n"
        f"```bash\n{commands}\n```\n\n"
        "Every command must exit with code 0."
    )

    sections.append(
        "## When Done\n\n"
        "Commit your work with git. When ALL acceptance criteria are met and every "
        "verification command succeeds, output:\n\n"
        f"```\n<promise>{completion_token}</promise>\n```\n\n"
        "Only output this when the task is TRULY complete. If tests fail or criteria "
        "are not met, fix the issues first. You are in an iteration loop that "
        "continues until you output it."
    )
    return "\n\n".join(sections) + "\n"
