"""Prompt builders for agent tasks.

Triage prompts ask the agent for a structured TriageResult without
implementing anything. PR prompts hand the triage assessment back to the
agent and ask it to open a pull request that closes the issue.
"""

from autotriage.agent.models import IssueItem, RepositoryRef
from autotriage.state.models import TriageResult


TRIAGE_OUTPUT_SCHEMA = """{
  "scope": "Brief description of what needs to be done",
  "complexity": "low" | "medium" | "high",
  "estimated_effort": "1-2 hours" | "2-4 hours" | "4-8 hours" | "8+ hours",
  "confidence_score": "low" | "medium" | "high",
  "confidence_reasoning": "Why you can or cannot handle this",
  "suggested_approach": "How you would solve this",
  "blockers": ["Potential blockers or missing info"],
  "requires_human_input": true | false
}"""


def _issue_header(item: IssueItem, repo: RepositoryRef) -> str:
    labels = ", ".join(item.labels) or "None"
    author = item.author or "Unknown"
    created = item.created_at or "Unknown"
    body = item.body.strip() or "No description provided"
    return (
        "## Issue\n"
        f"**Repo:** {repo.full_name} | **Issue #:** {item.number}\n"
        f"**Title:** {item.title}\n"
        f"**Labels:** {labels}\n"
        f"**Author:** {author} | **Created:** {created}\n"
        "\n"
        "**Description:**\n"
        f"{body}\n"
    )


def build_triage_prompt(item: IssueItem, repo: RepositoryRef) -> str:
    return (
        "Triage this GitHub issue and assess if you can work on it autonomously.\n"
        "\n"
        f"{_issue_header(item, repo)}"
        "\n"
        "## Instructions\n"
        "This is a TRIAGE-ONLY task - do NOT implement anything. Analyze the "
        "issue and update the structured output IMMEDIATELY with your "
        "assessment.\n"
        "\n"
        "Consider:\n"
        "- Are requirements clear and well-defined?\n"
        "- Is this a standard coding task you can handle autonomously?\n"
        "- Are there external dependencies or credentials needed?\n"
        "- What's the complexity and effort estimate?\n"
        "\n"
        "Update structured output with this JSON format:\n"
        f"{TRIAGE_OUTPUT_SCHEMA}\n"
        "\n"
        "Confidence: HIGH = clear requirements, standard task, no external deps "
        "| MEDIUM = mostly clear, moderate complexity "
        "| LOW = vague, needs external access, complex architecture\n"
        "\n"
        "Update structured output now and complete the task."
    )


def build_triage_title(item: IssueItem, repo: RepositoryRef) -> str:
    return f"Triage: {repo.full_name}#{item.number} - {item.title}".rstrip(" -")


def build_pr_prompt(
    item: IssueItem,
    repo: RepositoryRef,
    triage_result: TriageResult,
) -> str:
    blockers = "\n".join(f"- {b}" for b in triage_result.blockers) or "- None"
    return (
        "Resolve this GitHub issue and open a pull request.\n"
        "\n"
        f"{_issue_header(item, repo)}"
        "\n"
        "## Triage Assessment\n"
        f"**Scope:** {triage_result.scope}\n"
        f"**Complexity:** {triage_result.complexity.value} | "
        f"**Estimated Effort:** {triage_result.estimated_effort}\n"
        "\n"
        "**Suggested Approach:**\n"
        f"{triage_result.suggested_approach or 'Use your judgement.'}\n"
        "\n"
        "**Known Blockers:**\n"
        f"{blockers}\n"
        "\n"
        "## Instructions\n"
        f"- Clone {repo.full_name} and implement the change described above.\n"
        "- Add or update tests covering the change.\n"
        f"- Open a pull request whose description contains `Closes #{item.number}`.\n"
        "- If you need information only a human can provide, ask and wait."
    )


def build_pr_title(item: IssueItem, repo: RepositoryRef) -> str:
    return f"PR: {repo.full_name}#{item.number} - {item.title}".rstrip(" -")
