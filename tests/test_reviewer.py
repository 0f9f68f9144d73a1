import asyncio
import os
from pathlib import Path

import pytest

from taskgate.backends import (
    ClaudeReviewerBackend,
    CommandReviewerBackend,
    ReviewerBackend,
    ReviewerError,
    ReviewerReply,
    ReviewerUnavailableError,
    build_backend,
)
from taskgate.reviewer import (
    NO_RATIONALE,
    NUDGE_PROMPT,
    Reviewer,
    VerdictKind,
    parse_verdict,
    review,
    wrap_prompt,
)

CLAUDE_SHIM = """#!/bin/sh
echo "$@" >> "$CALLS"
cat > /dev/null
case "$*" in
  *--resume*)
    echo '{"type":"result","subtype":"success","result":"FAIL: missing tests","session_id":"abc"}'
    ;;
  *)
    echo '{"type":"result","subtype":"error_max_turns","session_id":"abc"}'
    ;;
esac
"""


class ScriptedBackend(ReviewerBackend):
    name = "scripted"

    def __init__(self, replies: list[ReviewerReply]) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.resumed: list[str] = []

    async def invoke(self, prompt: str, *, timeout_seconds: float) -> ReviewerReply:
        _ = timeout_seconds
        self.prompts.append(prompt)
        return self.replies.pop(0)

    async def resume(
        self,
        conversation_id: str,
        prompt: str,
        *,
        timeout_seconds: float,
    ) -> ReviewerReply:
        _ = timeout_seconds
        self.resumed.append(conversation_id)
        self.prompts.append(prompt)
        return self.replies.pop(0)


def _write_executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.mark.parametrize(
    ("output", "kind", "reason"),
    [
        ("PASS", VerdictKind.PASS, None),
        ("PASS: small, well-tested change", VerdictKind.PASS, "small, well-tested change"),
        ("  PASS  \n", VerdictKind.PASS, None),
        ("FAIL: x", VerdictKind.FAIL, "x"),
        ("FAIL\nNo tests cover the new branch", VerdictKind.FAIL, "No tests cover the new branch"),
        ("FAIL", VerdictKind.FAIL, NO_RATIONALE),
    ],
)
def test_parse_verdict_recognized_forms(output: str, kind: VerdictKind, reason: str | None) -> None:
    verdict = parse_verdict(output)

    assert verdict.kind is kind
    assert verdict.reason == reason


@pytest.mark.parametrize("output", ["banana", "", "PASSED", "I think this should PASS"])
def test_parse_verdict_unrecognized_is_distinct_error(output: str) -> None:
    verdict = parse_verdict(output)

    assert verdict.kind is VerdictKind.ERROR
    assert verdict.ambiguous is True
    assert verdict.passed is False


def test_wrap_prompt_prepends_format_instructions() -> None:
    wrapped = wrap_prompt("Review the staged diff.")

    assert wrapped.startswith("You are a code reviewer.")
    assert wrapped.endswith("Review the staged diff.")
    assert "FAIL: <one-line reason>" in wrapped


def test_claude_backend_flags() -> None:
    backend = ClaudeReviewerBackend(
        "claude -p", Path("."), max_turns=7, model="sonnet"
    )

    assert backend.build_command() == [
        "claude",
        "-p",
        "--model",
        "sonnet",
        "--max-turns",
        "7",
        "--output-format",
        "json",
    ]
    assert backend.build_resume_command("abc")[:4] == ["claude", "-p", "--resume", "abc"]


def test_build_backend_picks_claude_only_for_claude_binary() -> None:
    assert isinstance(build_backend("/usr/local/bin/claude -p", Path(".")), ClaudeReviewerBackend)
    plain = build_backend("llm -m local", Path("."))
    assert type(plain) is CommandReviewerBackend


def test_reviewer_resumes_exactly_once_on_turn_budget() -> None:
    backend = ScriptedBackend(
        [
            ReviewerReply(text="", truncated=True, conversation_id="conv-1"),
            ReviewerReply(text="", truncated=True, conversation_id="conv-1"),
        ]
    )
    verdict = asyncio.run(Reviewer(backend).review("prompt"))

    assert backend.resumed == ["conv-1"]
    assert backend.prompts == ["prompt", NUDGE_PROMPT]
    assert verdict.kind is VerdictKind.ERROR


def test_reviewer_truncated_without_conversation_is_error() -> None:
    backend = ScriptedBackend([ReviewerReply(text="", truncated=True)])
    verdict = asyncio.run(Reviewer(backend).review("prompt"))

    assert verdict.kind is VerdictKind.ERROR
    assert backend.resumed == []


def test_reviewer_emits_verdict_event() -> None:
    events: list[dict] = []
    backend = ScriptedBackend([ReviewerReply(text="PASS")])
    verdict = asyncio.run(Reviewer(backend, event_hook=events.append).review("prompt"))

    assert verdict.passed is True
    assert events == [
        {"event": "reviewer_verdict", "backend": "scripted", "verdict": "pass", "reason": None}
    ]


def test_claude_shim_resume_round_trip(tmp_path: Path) -> None:
    bin_dir = tmp_path / "bin"
    _write_executable(bin_dir / "claude", CLAUDE_SHIM)
    calls = tmp_path / "calls.txt"
    env = {"PATH": f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}", "CALLS": str(calls)}

    verdict = asyncio.run(
        review(
            "Review this.",
            "claude -p",
            working_directory=tmp_path,
            max_turns=3,
            env=env,
        )
    )

    assert verdict.kind is VerdictKind.FAIL
    assert verdict.reason == "missing tests"
    lines = calls.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert "--max-turns 3" in lines[0]
    assert "--resume abc" in lines[1]


def test_command_backend_reads_prompt_from_stdin(tmp_path: Path) -> None:
    judge = _write_executable(
        tmp_path / "judge",
        '#!/bin/sh\nif grep -q "approve me"; then echo PASS; else echo "FAIL: no"; fi\n',
    )
    backend = CommandReviewerBackend(str(judge), tmp_path)

    reply = asyncio.run(backend.invoke("please approve me", timeout_seconds=10))
    assert reply.text == "PASS"


def test_command_backend_nonzero_exit_raises(tmp_path: Path) -> None:
    judge = _write_executable(tmp_path / "judge", "#!/bin/sh\necho 'rate limited' >&2\nexit 3\n")
    backend = CommandReviewerBackend(str(judge), tmp_path)

    with pytest.raises(ReviewerError) as excinfo:
        asyncio.run(backend.invoke("prompt", timeout_seconds=10))
    assert excinfo.value.exit_code == 3
    assert "rate limited" in str(excinfo.value)


def test_command_backend_missing_binary(tmp_path: Path) -> None:
    backend = CommandReviewerBackend("definitely-not-a-real-judge --flag", tmp_path)

    assert backend.available() is False
    with pytest.raises(ReviewerUnavailableError):
        asyncio.run(backend.invoke("prompt", timeout_seconds=10))
