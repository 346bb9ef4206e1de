"""
Prompts - Prompt-Bausteine für Planung, Ausführung und Verifikation.

Key Features:
- Planungs-Prefix pro Modus (skip / lite / spec / full)
- Feature-Prompt aus Beschreibung, Spec, Bildern und Abhängigkeiten
- Task-, Revisions-, Continuation- und Verifikations-Prompts
"""

from .models import Feature, ParsedTask, PlanningMode


PLANNING_LITE = """## Planning Phase (Lite Mode)

IMPORTANT: Do NOT output exploration text, tool usage, or thinking before the plan. Start DIRECTLY with the planning outline format below. Silently analyze the codebase first, then output ONLY the structured plan.

Create a brief planning outline:

1. **Goal**: What are we accomplishing? (1 sentence)
2. **Approach**: How will we do it? (2-3 sentences)
3. **Files to Touch**: List files and what changes
4. **Tasks**: Numbered task list (3-7 items)
5. **Risks**: Any gotchas to watch for

After generating the outline, output:
"[PLAN_GENERATED] Planning outline complete."

Then proceed with implementation.
"""

PLANNING_LITE_WITH_APPROVAL = """## Planning Phase (Lite Mode)

IMPORTANT: Do NOT output exploration text, tool usage, or thinking before the plan. Start DIRECTLY with the planning outline format below. Silently analyze the codebase first, then output ONLY the structured plan.

Create a brief planning outline:

1. **Goal**: What are we accomplishing? (1 sentence)
2. **Approach**: How will we do it? (2-3 sentences)
3. **Files to Touch**: List files and what changes
4. **Tasks**: Numbered task list (3-7 items)
5. **Risks**: Any gotchas to watch for

After generating the outline, output:
"[SPEC_GENERATED] Please review the planning outline above. Reply with 'approved' to proceed or provide feedback for revisions."

DO NOT proceed with implementation until you receive explicit approval.
"""

PLANNING_SPEC = """## Specification Phase (Spec Mode)

IMPORTANT: Do NOT output exploration text, tool usage, or thinking before the spec. Start DIRECTLY with the specification format below. Silently analyze the codebase first, then output ONLY the structured specification.

Generate a specification with an actionable task breakdown. WAIT for approval before implementing.

### Specification Format

1. **Problem**: What problem are we solving? (user perspective)

2. **Solution**: Brief approach (1-2 sentences)

3. **Acceptance Criteria**: 3-5 items in GIVEN-WHEN-THEN format
   - GIVEN [context], WHEN [action], THEN [outcome]

4. **Files to Modify**:
   | File | Purpose | Action |
   |------|---------|--------|
   | path/to/file | description | create/modify/delete |

5. **Implementation Tasks**:
   Use this EXACT format for each task (the system will parse these):
   ```tasks
   - [ ] T001: [Description] | File: [path/to/file]
   - [ ] T002: [Description] | File: [path/to/file]
   - [ ] T003: [Description] | File: [path/to/file]
   ```

   Task ID rules:
   - Sequential: T001, T002, T003, etc.
   - Description: Clear action (e.g., "Create user model", "Add API endpoint")
   - File: Primary file affected (helps with context)
   - Order by dependencies (foundational tasks first)

6. **Verification**: How to confirm feature works

After generating the spec, output on its own line:
"[SPEC_GENERATED] Please review the specification above. Reply with 'approved' to proceed or provide feedback for revisions."

DO NOT proceed with implementation until you receive explicit approval.

When approved, execute tasks SEQUENTIALLY in order. For each task:
1. BEFORE starting, output: "[TASK_START] T###: Description"
2. Implement the task
3. AFTER completing, output: "[TASK_COMPLETE] T###: Brief summary"

This allows real-time progress tracking during implementation.
"""

PLANNING_FULL = """## Full Specification Phase (Full SDD Mode)

IMPORTANT: Do NOT output exploration text, tool usage, or thinking before the spec. Start DIRECTLY with the specification format below. Silently analyze the codebase first, then output ONLY the structured specification.

Generate a comprehensive specification with phased task breakdown. WAIT for approval before implementing.

### Specification Format

1. **Problem Statement**: 2-3 sentences from user perspective

2. **User Story**: As a [user], I want [goal], so that [benefit]

3. **Acceptance Criteria**: Multiple scenarios with GIVEN-WHEN-THEN
   - **Happy Path**: GIVEN [context], WHEN [action], THEN [expected outcome]
   - **Edge Cases**: GIVEN [edge condition], WHEN [action], THEN [handling]
   - **Error Handling**: GIVEN [error condition], WHEN [action], THEN [error response]

4. **Technical Context**:
   | Aspect | Value |
   |--------|-------|
   | Affected Files | list of files |
   | Dependencies | external libs if any |
   | Constraints | technical limitations |
   | Patterns to Follow | existing patterns in codebase |

5. **Non-Goals**: What this feature explicitly does NOT include

6. **Implementation Tasks**:
   Use this EXACT format for each task (the system will parse these):
   ```tasks
   ## Phase 1: Foundation
   - [ ] T001: [Description] | File: [path/to/file]
   - [ ] T002: [Description] | File: [path/to/file]

   ## Phase 2: Core Implementation
   - [ ] T003: [Description] | File: [path/to/file]
   - [ ] T004: [Description] | File: [path/to/file]

   ## Phase 3: Integration & Testing
   - [ ] T005: [Description] | File: [path/to/file]
   - [ ] T006: [Description] | File: [path/to/file]
   ```

   Task ID rules:
   - Sequential across all phases: T001, T002, T003, etc.
   - Description: Clear action verb + target
   - File: Primary file affected
   - Order by dependencies within each phase
   - Phase structure helps organize complex work

7. **Success Metrics**: How we know it's done (measurable criteria)

8. **Risks & Mitigations**:
   | Risk | Mitigation |
   |------|------------|
   | description | approach |

After generating the spec, output on its own line:
"[SPEC_GENERATED] Please review the comprehensive specification above. Reply with 'approved' to proceed or provide feedback for revisions."

DO NOT proceed with implementation until you receive explicit approval.

When approved, execute tasks SEQUENTIALLY by phase. For each task:
1. BEFORE starting, output: "[TASK_START] T###: Description"
2. Implement the task
3. AFTER completing, output: "[TASK_COMPLETE] T###: Brief summary"

After completing all tasks in a phase, output:
"[PHASE_COMPLETE] Phase N complete"

This allows real-time progress tracking during implementation.
"""

IMPLEMENTATION_INSTRUCTIONS = """## Instructions

Implement this feature by:
1. First, explore the codebase to understand the existing structure
2. Plan your implementation approach
3. Write the necessary code changes
4. Ensure the code follows existing patterns and conventions

When done, wrap your final summary in <summary> tags like this:

<summary>
## Summary: [Feature Title]

### Changes Implemented
- [List of changes made]

### Files Modified
- [List of files]

### Notes for Developer
- [Any important notes]
</summary>

This helps parse your summary correctly in the output logs."""

PLAYWRIGHT_VERIFICATION_INSTRUCTIONS = """## Verification with Playwright (REQUIRED)

After implementing the feature, you MUST verify it works correctly using Playwright:

1. **Create a temporary Playwright test** to verify the feature works as expected
2. **Run the test** to confirm the feature is working
3. **Delete the test file** after verification - this is a temporary verification test, not a permanent test suite addition

The test should verify the core functionality of the feature. If the test fails, fix the implementation and re-test.

When done, include in your summary:

### Verification Status
- [Describe how the feature was verified with Playwright]"""

VERIFICATION_PROMPT = """## Verification Pass

The implementation of the feature below is complete. Verify that it works.

{feature_prompt}

## Instructions

1. Review the changes made for this feature
2. Run the relevant build, lint and test commands of the project
3. Fix small problems you find along the way

When done, output exactly one of these lines:
"[VERIFICATION_PASSED]" if the feature works as described
"[VERIFICATION_FAILED] <reason>" if it does not"""

PLAN_REVISION_TEMPLATE = """The user has requested revisions to the plan/specification.

## Previous Plan (v{plan_version})
{previous_plan}

## User Feedback
{feedback}

## Instructions
Please regenerate the specification incorporating the user's feedback.
Keep the same format with the ```tasks block for task definitions.
After generating the revised spec, output:
"[SPEC_GENERATED] Please review the revised specification above.\""""

CONTINUATION_AFTER_APPROVAL_TEMPLATE = """The plan/specification has been approved. Now implement it.
{feedback_section}
## Approved Plan

{approved_plan}

## Instructions

Implement all the changes described in the plan above."""

RESUME_FEATURE_TEMPLATE = """## Continuing Feature Implementation

{feature_prompt}

## Previous Context
The following is the output from a previous implementation attempt. Continue from where you left off:

{previous_context}

## Instructions
Review the previous work and continue the implementation. If the feature appears complete, verify it works correctly."""

UNTITLED_FEATURE = "Untitled Feature"
MAX_TITLE_LENGTH = 60


def planning_prefix(mode: PlanningMode | str, require_approval: bool = False) -> str:
    """
    Prompt-Prefix für die Planungsphase.

    Skip liefert einen leeren String, alle anderen Modi ihr Template gefolgt
    vom Feature-Request Trenner.
    """
    mode = PlanningMode(mode)
    if mode == PlanningMode.SKIP:
        return ""

    if mode == PlanningMode.LITE:
        template = PLANNING_LITE_WITH_APPROVAL if require_approval else PLANNING_LITE
    elif mode == PlanningMode.SPEC:
        template = PLANNING_SPEC
    else:
        template = PLANNING_FULL

    return template + "\n\n---\n\n## Feature Request\n\n"


def extract_title(description: str) -> str:
    """Erste Zeile der Beschreibung, auf 60 Zeichen gekürzt."""
    if not description or not description.strip():
        return UNTITLED_FEATURE

    first_line = description.split("\n")[0].strip()
    if len(first_line) <= MAX_TITLE_LENGTH:
        return first_line
    return first_line[: MAX_TITLE_LENGTH - 3] + "..."


def build_feature_prompt(feature: Feature) -> str:
    """Beschreibung des Features, wie sie der Agent sieht."""
    title = feature.title or extract_title(feature.description)
    lines = [
        "## Feature Implementation Task",
        "",
        f"**Feature ID:** {feature.id}",
        f"**Title:** {title}",
        f"**Description:** {feature.description}",
    ]

    if feature.spec:
        lines += ["", "**Specification:**", feature.spec]

    if feature.image_paths:
        lines += ["", "**Context Images:**"]
        lines += [f"- {path}" for path in feature.image_paths]

    if feature.dependencies:
        lines += ["", "**Dependencies:**"]
        lines.append(f"This feature depends on: {', '.join(feature.dependencies)}")

    return "\n".join(lines)


def build_planning_prompt(feature: Feature) -> str:
    return planning_prefix(feature.planning_mode, feature.require_plan_approval) + build_feature_prompt(feature)


def build_implementation_prompt(feature: Feature, playwright: bool = False) -> str:
    """Prompt für direkte Umsetzung ohne Plan (Skip-Modus)."""
    parts = [build_feature_prompt(feature), "", IMPLEMENTATION_INSTRUCTIONS]
    if playwright:
        parts += ["", PLAYWRIGHT_VERIFICATION_INSTRUCTIONS]
    return "\n".join(parts)


def build_revision_prompt(previous_plan: str, plan_version: int, feedback: str) -> str:
    return PLAN_REVISION_TEMPLATE.format(
        plan_version=plan_version,
        previous_plan=previous_plan,
        feedback=feedback,
    )


def build_continuation_prompt(approved_plan: str, feedback: str | None = None) -> str:
    """Prompt nach Freigabe, wenn der Plan keine Task-Liste hat."""
    feedback_section = f"\n## User Feedback\n{feedback}\n" if feedback else ""
    return CONTINUATION_AFTER_APPROVAL_TEMPLATE.format(
        feedback_section=feedback_section,
        approved_plan=approved_plan,
    )


def build_task_prompt(
    task: ParsedTask,
    all_tasks: list[ParsedTask],
    task_index: int,
    plan_content: str,
    feedback: str | None = None,
) -> str:
    """
    Fokussierter Prompt für genau eine Task des freigegebenen Plans.

    Enthält die erledigten Tasks und bis zu drei der folgenden Tasks als Kontext.
    """
    completed = all_tasks[:task_index]
    remaining = all_tasks[task_index + 1:task_index + 4]

    lines = [
        f"# Task Execution: {task.task_id}",
        "",
        "You are executing a specific task as part of a larger feature implementation.",
        "",
        "## Your Current Task",
        "",
        f"**Task ID:** {task.task_id}",
        f"**Description:** {task.description}",
    ]
    if task.file_path:
        lines.append(f"**Primary File:** {task.file_path}")
    if task.phase:
        lines.append(f"**Phase:** {task.phase}")

    lines += ["", "## Context"]
    if completed:
        lines += ["", f"### Already Completed ({len(completed)} tasks)"]
        lines += [f"- [x] {t.task_id}: {t.description}" for t in completed]
    if remaining:
        lines += ["", f"### Remaining Tasks ({len(remaining)} tasks)"]
        lines += [f"- [ ] {t.task_id}: {t.description}" for t in remaining]

    lines += ["", "## Approved Plan", "", plan_content]

    if feedback:
        lines += ["", "## User Feedback", feedback]

    lines += [
        "",
        "## Instructions",
        "",
        f'1. Focus ONLY on completing task {task.task_id}: "{task.description}"',
        "2. Do not work on other tasks",
        "3. Use the existing codebase patterns",
        "4. When done, summarize what you implemented",
        "",
        f"Begin implementing task {task.task_id} now.",
    ]
    return "\n".join(lines)


def build_verification_prompt(feature: Feature) -> str:
    return VERIFICATION_PROMPT.format(feature_prompt=build_feature_prompt(feature))


def build_resume_prompt(feature: Feature, previous_context: str) -> str:
    """Prompt zum Fortsetzen mit dem Agent-Output des letzten Laufs."""
    return RESUME_FEATURE_TEMPLATE.format(
        feature_prompt=build_feature_prompt(feature),
        previous_context=previous_context,
    )
