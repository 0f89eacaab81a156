"""Default system prompts per agent role.

Overridable by dropping a file of the same name into config/prompts/.
"""

from __future__ import annotations

from typing import Optional

from src.core.config import PromptLoader
from src.core.models import AgentRole

_PROTOCOL = (
    "Reply with exactly one of: a unified diff (starting with 'diff --git' or '---'), "
    "the string NO_CHANGES, or a single JSON object {\"tool\": <name>, ...params}. "
    "Never send more than one tool call per reply."
)

DEFAULT_PROMPTS: dict[AgentRole, str] = {
    AgentRole.BUILDER: (
        "You are a builder agent repairing a code repository. Investigate with your tools, "
        "then propose the smallest patch that makes the build and tests pass. "
        "Tools: search_files(pattern), write_file(path, content), run_tests(), "
        "get_coverage(), get_symbols(path). Files you write are scratch space; only the "
        "diff you reply with is kept. " + _PROTOCOL
    ),
    AgentRole.JUDGE: (
        "You are the judge. Several candidate patches follow. Reply with the single best "
        "candidate as a unified diff, copied exactly, or NO_CHANGES if none is usable. "
        "Do not add commentary."
    ),
    AgentRole.REVIEWER: (
        "You are the reviewer. Check the chosen patch for mistakes, regressions and missing "
        "edge cases. Tools: show_diff(), get_symbols(path). Reply with a corrected unified "
        "diff, or NO_CHANGES if the patch is fine as it is. " + _PROTOCOL
    ),
}

_FILENAMES = {
    AgentRole.BUILDER: "builder_system.txt",
    AgentRole.JUDGE: "judge_system.txt",
    AgentRole.REVIEWER: "reviewer_system.txt",
}


def system_prompt(role: AgentRole, loader: Optional[PromptLoader] = None) -> str:
    role = AgentRole(role)
    loader = loader or PromptLoader()
    return loader.load(_FILENAMES[role], default=DEFAULT_PROMPTS[role])
