"""Built-in reviewer prompts, selected with ``prompt_type = "reference"``."""

from __future__ import annotations

BUILTIN_PROMPTS: dict[str, str] = {
    "review:commit_quality": """Review the staged changes for:
1. Missing tests. If the diff adds or changes logic (conditionals, computations,
   state transitions, error handling), tests for it must be staged or already on disk.
   Declarative code such as configuration or framework wiring needs no tests.
2. Logic errors and unhandled edge cases.
3. Dead code.

Staged diff:
{{staged_diff}}

Recent commits:
{{recent_commits}}

Working tree status:
{{git_status}}""",
    "review:test_coverage": """Review the changes below for test coverage.

Any change that branches or computes could break if reverted, and a test must exist
that would catch the reversion. Bug fixes need regression tests. Plain declarations,
comments, log messages, non-code configuration and pure removals are exempt.

Read the test files on disk before failing. A test file that exists for the module
but does not exercise the changed behavior is a gap.

Changed files:
{{changed_files}}

Working diff:
{{working_diff}}

Recent commits:
{{recent_commits}}

Working tree status:
{{git_status}}""",
    "review:code_quality": """Review the recent changes for defects that would reach production:
1. Logic errors: wrong conditions, off-by-one, swapped arguments.
2. Dead code: unreachable branches, unused imports, orphaned functions.
3. Error handling gaps: swallowed errors, unchecked external data.
4. Names that mislead about what the code does.

If the tree is in the middle of a refactor, PASS and say so. Ignore style preferences.
FAIL only with a concrete finding: file, line and what goes wrong.

Changed files:
{{changed_files}}

Working diff:
{{working_diff}}

Working tree status:
{{git_status}}""",
    "review:test_investment": """Decide whether the recent changes come with adequate tests.

The agent is writing to: {{file_path}}
If that is a test file, PASS: the agent is working on coverage.

Changed files:
{{changed_files}}

Latest test output:
{{test_output}}""",
}


def resolve_prompt(name: str) -> str | None:
    return BUILTIN_PROMPTS.get(name)
