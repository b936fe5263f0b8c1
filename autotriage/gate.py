"""Confidence gate for automatic escalation from triage to PR generation.

The gate is a pure function of the user's automation settings and a
completed triage result. Confidence levels compare ordinally
(low=1, medium=2, high=3).
"""

from autotriage.state.models import Level, TriageResult, UserAutomationSettings


def meets_threshold(confidence: Level, threshold: Level) -> bool:
    """Return True when ``confidence`` is at least ``threshold``."""
    return confidence.ordinal >= threshold.ordinal


def should_auto_advance(
    settings: UserAutomationSettings,
    triage_result: TriageResult,
) -> bool:
    """Decide whether a completed triage starts a PR task on its own.

    Example:
        >>> settings = UserAutomationSettings(
        ...     auto_pr_enabled=True, pr_confidence_threshold=Level.MEDIUM
        ... )
        >>> result = TriageResult(
        ...     scope="Fix typo", complexity=Level.LOW, estimated_effort="1-2 hours",
        ...     confidence_score=Level.HIGH,
        ... )
        >>> should_auto_advance(settings, result)
        True
    """
    return (
        settings.auto_pr_enabled
        and meets_threshold(
            triage_result.confidence_score, settings.pr_confidence_threshold
        )
        and not triage_result.requires_human_input
    )
