from __future__ import annotations

import re

from automode.models import Feature, PlanningMode, PlanTask

PLAN_MARKER = "[PLAN_GENERATED]"
SPEC_MARKER = "[SPEC_GENERATED]"

READ_ONLY_TOOLS = ["Read", "Glob", "Grep"]
FULL_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash"]

TASKS_BLOCK_PATTERN = re.compile(r"```tasks\s*(.*?)```", re.DOTALL)
TASK_LINE_PATTERN = re.compile(r"^- \[ \] (T\d{3}):\s*([^|]+?)\s*(?:\|\s*File:\s*(.+?)\s*)?$")
SIMPLE_TASK_LINE_PATTERN = re.compile(r"^- \[ \] (T\d{3}):\s*(.+)$")
BARE_TASK_LINE_PATTERN = re.compile(r"^- \[ \] T\d{3}:.*$", re.MULTILINE)
PHASE_HEADER_PATTERN = re.compile(r"^##\s*(.+)$")

SYSTEM_PROMPT = """
You are an autonomous software engineer working inside a git checkout.
Implement exactly the feature you are given, keep changes focused,
and follow the conventions already present in the codebase.
""".strip()

LITE_PLANNING_PROMPT = """
## Planning Phase (Lite Mode)

Before writing any code, create a brief planning outline:

1. **Goal**: what are we accomplishing? (1 sentence)
2. **Approach**: how will we do it? (2-3 sentences)
3. **Files to touch**: list files and what changes
4. **Tasks**: numbered task list (3-7 items)
5. **Risks**: any gotchas to watch for

After the outline, output exactly "[PLAN_GENERATED] Planning outline complete." on its own line.
Do not modify any files during this phase.
""".strip()

SPEC_PLANNING_PROMPT = """
## Specification Phase (Spec Mode)

Generate a specification with an actionable task breakdown:

1. **Problem**: what problem are we solving?
2. **Solution**: brief approach (1-2 sentences)
3. **Acceptance criteria**: GIVEN-WHEN-THEN format
4. **Files to modify**: table of file, purpose and action
5. **Implementation tasks** in a fenced block:

```tasks
- [ ] T001: [Description] | File: [path/to/file]
- [ ] T002: [Description] | File: [path/to/file]
```

6. **Verification**: how to confirm the feature works

After the specification, output exactly "[SPEC_GENERATED] Please review the specification above."
on its own line. Do not modify any files during this phase.
""".strip()

FULL_PLANNING_PROMPT = """
## Full Specification Phase (Full SDD Mode)

Generate a comprehensive specification with a phased task breakdown:

1. **Problem statement** and user story
2. **Acceptance criteria** with happy path, edge cases and error handling
3. **Technical context**: affected files, dependencies, constraints, patterns to follow
4. **Non-goals**: what this feature explicitly does not include
5. **Implementation tasks** grouped by phase in a fenced block:

```tasks
## Phase 1: Foundation
- [ ] T001: [Description] | File: [path/to/file]

## Phase 2: Core Implementation
- [ ] T002: [Description] | File: [path/to/file]

## Phase 3: Integration & Testing
- [ ] T003: [Description] | File: [path/to/file]
```

6. **Success metrics** and **risks & mitigations**

After the specification, output exactly "[SPEC_GENERATED] Please review the comprehensive
specification above." on its own line. Do not modify any files during this phase.
""".strip()

PLANNING_PROMPTS: dict[str, str] = {
    "lite": LITE_PLANNING_PROMPT,
    "spec": SPEC_PLANNING_PROMPT,
    "full": FULL_PLANNING_PROMPT,
}


def marker_for_mode(mode: PlanningMode) -> str | None:
    if mode == "lite":
        return PLAN_MARKER
    if mode in {"spec", "full"}:
        return SPEC_MARKER
    return None


def feature_brief(feature: Feature) -> str:
    lines = [f"Feature ID: {feature.id}"]
    if feature.title:
        lines.append(f"Title: {feature.title}")
    if feature.category:
        lines.append(f"Category: {feature.category}")
    lines.append("")
    lines.append("Description:")
    lines.append(feature.description.strip() or "(no description provided)")
    return "\n".join(lines)


def build_planning_prompt(feature: Feature) -> str:
    planning = PLANNING_PROMPTS[feature.planning_mode]
    prompt = f"{planning}\n\n## Feature\n\n{feature_brief(feature)}"
    if feature.feedback:
        prompt += (
            "\n\n## Reviewer Feedback\n\n"
            "A previous plan was rejected. Address this feedback in the new plan:\n\n"
            f"{feature.feedback.strip()}"
        )
    return prompt


def build_implementation_prompt(
    feature: Feature,
    *,
    plan: str | None = None,
    previous_output: str | None = None,
    follow_up: str | None = None,
) -> str:
    parts: list[str] = []
    if plan:
        parts.append(
            "## Approved Plan\n\n"
            "Implement the feature following this plan. Work through the tasks in order.\n\n"
            f"{plan.strip()}"
        )
    parts.append(f"## Feature\n\n{feature_brief(feature)}")
    if previous_output:
        parts.append(
            "## Previous Work\n\n"
            "An earlier session already worked on this feature. Its output follows; "
            "continue from where it left off instead of starting over.\n\n"
            f"{previous_output.strip()}"
        )
    if follow_up:
        parts.append(f"## Follow-up Instructions\n\n{follow_up.strip()}")
    parts.append(
        "## Instructions\n\n"
        "Implement the feature in the current working directory. When you are done, "
        "summarize the files you changed and anything a reviewer should verify."
    )
    return "\n\n".join(parts)


def split_at_marker(text: str, marker: str) -> tuple[str, str] | None:
    index = text.find(marker)
    if index < 0:
        return None
    return text[:index].strip(), text[index + len(marker) :]


def parse_task_line(line: str, phase: str | None = None) -> PlanTask | None:
    match = TASK_LINE_PATTERN.match(line.strip())
    if not match:
        simple = SIMPLE_TASK_LINE_PATTERN.match(line.strip())
        if simple is None:
            return None
        return PlanTask(id=simple.group(1), description=simple.group(2).strip(), phase=phase)
    file_path = match.group(3).strip() if match.group(3) else None
    return PlanTask(
        id=match.group(1),
        description=match.group(2).strip(),
        file_path=file_path or None,
        phase=phase,
    )


def parse_tasks_from_spec(content: str) -> list[PlanTask]:
    tasks: list[PlanTask] = []
    block = TASKS_BLOCK_PATTERN.search(content)
    if block is None:
        for line in BARE_TASK_LINE_PATTERN.findall(content):
            parsed = parse_task_line(line)
            if parsed is not None:
                tasks.append(parsed)
        return tasks

    phase: str | None = None
    for raw_line in block.group(1).splitlines():
        line = raw_line.strip()
        header = PHASE_HEADER_PATTERN.match(line)
        if header:
            phase = header.group(1).strip()
            continue
        if line.startswith("- [ ]"):
            parsed = parse_task_line(line, phase)
            if parsed is not None:
                tasks.append(parsed)
    return tasks
